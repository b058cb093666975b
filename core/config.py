"""
Configuration management for the Kling credit gateway.

Centralizes all configuration including:
- Provider (fal.ai queue) endpoints and timeouts
- Database pool settings
- Blob storage for uploaded inputs
- Access policy limits and reconciler tuning
"""

import os
from dataclasses import dataclass, field
from typing import Optional


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass
class ProviderConfig:
    """Video provider (fal.ai queue API) configuration."""

    queue_base: str = field(
        default_factory=lambda: os.getenv("FAL_QUEUE_BASE", "https://queue.fal.run").rstrip("/")
    )
    request_timeout: float = field(
        default_factory=lambda: float(os.getenv("FAL_REQUEST_TIMEOUT", "60"))
    )
    model_type: str = "kling"


@dataclass
class DatabaseConfig:
    """Database configuration."""
    url: str = field(default_factory=lambda: os.getenv("DATABASE_URL", ""))
    pool_min_size: int = 2
    pool_max_size: int = 10


@dataclass
class StorageConfig:
    """Blob storage for uploaded reference images and videos."""
    supabase_url: str = field(default_factory=lambda: os.getenv("SUPABASE_URL", "").rstrip("/"))
    service_role_key: str = field(default_factory=lambda: os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""))
    bucket: str = field(default_factory=lambda: os.getenv("UPLOAD_BUCKET", "images"))
    cache_control: str = "3600"


@dataclass
class PolicyConfig:
    """Limits applied to restricted (standard role) accounts."""

    max_processing_per_user: int = field(
        default_factory=lambda: _env_int("MAX_PROCESSING_PER_USER", 3)
    )

    # Motion-control input video limits, in seconds
    motion_max_duration_standard: int = 10
    motion_max_duration_elevated: int = 30
    motion_max_duration_image_orientation: int = 10

    # Attempts at re-selecting a funding source after losing a debit race
    max_reservation_attempts: int = 3


@dataclass
class ReconcilerConfig:
    """Job status sweep settings."""
    batch_size: int = field(default_factory=lambda: _env_int("RECONCILE_BATCH_SIZE", 50))
    max_concurrency: int = field(default_factory=lambda: _env_int("RECONCILE_CONCURRENCY", 5))
    interval_seconds: int = field(default_factory=lambda: _env_int("RECONCILE_INTERVAL", 30))

    # Records that never got a provider request id (crash between debit and submit)
    orphan_after_minutes: int = field(default_factory=lambda: _env_int("ORPHAN_AFTER_MINUTES", 15))

    # Force-fail and refund jobs stuck in processing; 0 disables
    stale_after_hours: int = field(default_factory=lambda: _env_int("STALE_AFTER_HOURS", 48))


@dataclass
class Config:
    """Main configuration class."""

    provider: ProviderConfig = field(default_factory=ProviderConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)

    history_page_size: int = 10

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        return cls()

    def validate(self) -> list[str]:
        """Validate configuration and return list of issues."""
        issues = []

        if not self.database.url:
            issues.append("DATABASE_URL not configured")

        if not self.storage.supabase_url or not self.storage.service_role_key:
            issues.append("SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY not configured (uploads disabled)")

        if self.policy.max_processing_per_user < 1:
            issues.append("MAX_PROCESSING_PER_USER must be at least 1")

        if self.reconciler.batch_size < 1:
            issues.append("RECONCILE_BATCH_SIZE must be at least 1")

        return issues


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reload_config():
    """Reload configuration from environment."""
    global _config
    _config = Config.from_env()

"""
Domain types for credit-settled video generation.

Accounts and grants mirror the `users` / `api_keys` tables; GenerationRecord
rows live in `generation_history`.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


PER_SECOND_MARKER = "motion-control"
AUDIO_KEYED_VARIANTS = ("text-to-video", "image-to-video")


class Role(str, Enum):
    """Account roles. Anything that is set and not elevated is restricted."""
    STANDARD = "user"
    PREMIUM = "premium"
    ADMIN = "admin"


ELEVATED_ROLES = frozenset({Role.PREMIUM.value, Role.ADMIN.value})


class RecordStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProviderStatus(str, Enum):
    """Job states reported by the fal.ai queue."""
    IN_QUEUE = "IN_QUEUE"
    QUEUED = "QUEUED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @classmethod
    def terminal_failures(cls) -> tuple[str, ...]:
        return (cls.FAILED.value, cls.CANCELLED.value)


class ErrorCode(str, Enum):
    INVALID_CONFIG = "INVALID_CONFIG"
    INVALID_REQUEST = "INVALID_REQUEST"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    ACCESS_DENIED = "ACCESS_DENIED"
    CONCURRENCY_LIMIT_EXCEEDED = "CONCURRENCY_LIMIT_EXCEEDED"
    UPLOAD_FAILED = "UPLOAD_FAILED"
    PROVIDER_REJECTED = "PROVIDER_REJECTED"
    PROVIDER_UNREACHABLE = "PROVIDER_UNREACHABLE"
    STORAGE_ERROR = "STORAGE_ERROR"


class GenerationError(Exception):
    """Raised inside the pipeline; converted to a SubmissionResult at the boundary."""

    def __init__(self, message: str, error_code: ErrorCode, provider: Optional[str] = None):
        self.error_code = error_code
        self.provider = provider
        super().__init__(message)


def _decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass
class Account:
    """A user with a legacy credit balance and provider credential."""
    id: str
    role: Optional[str] = Role.STANDARD.value
    credits: Decimal = Decimal("0")
    api_key: str = ""
    username: str = ""

    @property
    def is_restricted(self) -> bool:
        """Only a set, non-elevated role is subject to access overrides and caps."""
        return bool(self.role) and self.role not in ELEVATED_ROLES

    @property
    def pricing_role(self) -> str:
        return self.role or Role.STANDARD.value

    @classmethod
    def from_row(cls, row: dict) -> "Account":
        return cls(
            id=str(row["id"]),
            role=row.get("role"),
            credits=_decimal(row.get("credits")),
            api_key=row.get("api_key") or "",
            username=row.get("username") or "",
        )


@dataclass
class CreditGrant:
    """Per-key credit balance owned by one account."""
    id: str
    user_id: str
    credits: Decimal
    api_key: str = ""
    is_active: bool = True
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict) -> "CreditGrant":
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            credits=_decimal(row.get("credits")),
            api_key=row.get("api_key") or "",
            is_active=bool(row.get("is_active", True)),
            created_at=row.get("created_at"),
        )


@dataclass(frozen=True)
class ModelSelector:
    """Which provider model a request targets."""
    model_version: str
    variant: str
    model_type: str = "kling"

    @property
    def is_per_second(self) -> bool:
        return PER_SECOND_MARKER in self.variant

    @property
    def keys_audio(self) -> bool:
        return self.variant in AUDIO_KEYED_VARIANTS


@dataclass
class GenerationInputs:
    """
    User inputs for one generation.

    `*_file` fields are local paths that still need uploading; once uploaded
    the matching `*_url` field is filled in.
    """
    prompt: str = ""
    image_url: Optional[str] = None
    tail_image_url: Optional[str] = None  # End frame for start/end workflows
    video_url: Optional[str] = None
    aspect_ratio: Optional[str] = None
    duration: Optional[int] = None
    generate_audio: Optional[bool] = None
    character_orientation: Optional[str] = None
    keep_original_sound: Optional[bool] = None

    image_file: Optional[str] = None
    tail_image_file: Optional[str] = None
    video_file: Optional[str] = None

    @property
    def audio_enabled(self) -> bool:
        return bool(self.generate_audio)

    def pending_uploads(self) -> list[tuple[str, str]]:
        """(url attribute, local path) pairs still to upload."""
        pairs = [
            ("image_url", self.image_file),
            ("tail_image_url", self.tail_image_file),
            ("video_url", self.video_file),
        ]
        return [(attr, path) for attr, path in pairs if path]


@dataclass
class ProviderJobHandle:
    """Everything needed to poll or fetch a queued job without re-deriving URLs."""
    request_id: str
    status_url: Optional[str] = None
    response_url: Optional[str] = None
    cancel_url: Optional[str] = None


@dataclass
class SubmissionResult:
    """Outcome of one submit() call."""
    success: bool
    record_id: Optional[str] = None
    request_id: Optional[str] = None
    handle: Optional[ProviderJobHandle] = None
    credits_used: Optional[Decimal] = None
    funding_kind: Optional[str] = None  # "grant" | "legacy"
    grant_id: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    error_message: Optional[str] = None

    @classmethod
    def failure(
        cls,
        error: GenerationError,
        record_id: Optional[str] = None,
    ) -> "SubmissionResult":
        return cls(
            success=False,
            record_id=record_id,
            error_code=error.error_code,
            error_message=str(error),
        )

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "historyId": self.record_id,
            "requestId": self.request_id,
            "creditsUsed": str(self.credits_used) if self.credits_used is not None else None,
            "usedApiKeyId": self.grant_id,
            "usedLegacyCredit": self.funding_kind == "legacy",
            "error_code": self.error_code.value if self.error_code else None,
            "error": self.error_message,
        }


@dataclass
class ReconcileSummary:
    """Counts from one reconciler sweep."""
    total: int = 0
    updated: int = 0
    failed: int = 0
    still_processing: int = 0
    skipped: int = 0
    errors: int = 0
    expired: int = 0
    orphaned: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "success": True,
            "total": self.total,
            "updated": self.updated,
            "failed": self.failed,
            "stillProcessing": self.still_processing,
            "skipped": self.skipped,
            "errors": self.errors,
            "expired": self.expired,
            "orphaned": self.orphaned,
        }

"""
Configuration Tests

Run with:
    python -m pytest tests/test_config.py -v
"""

from core.config import Config, get_config, reload_config


class TestConfig:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("MAX_PROCESSING_PER_USER", "5")
        monkeypatch.setenv("STALE_AFTER_HOURS", "0")
        monkeypatch.setenv("FAL_QUEUE_BASE", "https://queue.example.com/")

        config = Config()

        assert config.policy.max_processing_per_user == 5
        assert config.reconciler.stale_after_hours == 0
        assert config.provider.queue_base == "https://queue.example.com"

    def test_defaults(self, monkeypatch):
        for name in ("MAX_PROCESSING_PER_USER", "RECONCILE_BATCH_SIZE", "ORPHAN_AFTER_MINUTES"):
            monkeypatch.delenv(name, raising=False)

        config = Config()

        assert config.policy.max_processing_per_user == 3
        assert config.reconciler.batch_size == 50
        assert config.reconciler.orphan_after_minutes == 15
        assert config.history_page_size == 10

    def test_validate_reports_missing_database(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)

        issues = Config().validate()

        assert any("DATABASE_URL" in issue for issue in issues)

    def test_reload_replaces_singleton(self, monkeypatch):
        first = get_config()
        monkeypatch.setenv("RECONCILE_INTERVAL", "7")

        reload_config()

        assert get_config() is not first
        assert get_config().reconciler.interval_seconds == 7
        monkeypatch.delenv("RECONCILE_INTERVAL")
        reload_config()

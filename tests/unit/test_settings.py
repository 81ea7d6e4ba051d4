"""
Unit Tests - Settings
"""
import pytest
from pydantic import ValidationError

from adsync.config.settings import (
    DatabaseSettings,
    FreshnessSettings,
    RateBudgetSettings,
    Settings,
)


class TestSubsystemSettings:
    """Tests for section-level validation"""

    def test_async_url_from_parts(self):
        settings = DatabaseSettings(host="db", port=5433, database="ads", user="sync", password="pw")

        assert settings.async_url == "postgresql+asyncpg://sync:pw@db:5433/ads"

    def test_url_overrides_parts(self):
        settings = DatabaseSettings(url="sqlite+aiosqlite:///adsync.db")

        assert settings.async_url == "sqlite+aiosqlite:///adsync.db"

    def test_thresholds_must_ascend(self):
        with pytest.raises(ValidationError):
            FreshnessSettings(fresh_threshold=60.0, aging_threshold=50.0)

    def test_daily_quota_covers_hourly(self):
        with pytest.raises(ValidationError):
            RateBudgetSettings(hourly_quota=300, daily_quota=200)

    def test_scope_normalized(self):
        assert RateBudgetSettings(scope="GLOBAL").scope == "global"

    def test_unknown_scope_rejected(self):
        with pytest.raises(ValidationError):
            RateBudgetSettings(scope="campaign")


class TestSettings:
    """Tests for top-level settings"""

    def test_environment_overrides(self, monkeypatch):
        """Test aliases and prefixed sections read the environment"""
        monkeypatch.setenv("APP_ENV", "Staging")
        monkeypatch.setenv("STORAGE_BACKEND", "memory")
        monkeypatch.setenv("BUDGET_HOURLY_QUOTA", "50")
        monkeypatch.setenv("CACHE_MEMORY_MAX_ENTRIES", "8")

        settings = Settings(_env_file=None)

        assert settings.app_env == "staging"
        assert settings.storage_backend == "memory"
        assert settings.rate_budget.hourly_quota == 50
        assert settings.cache.memory_max_entries == 8

    def test_unknown_timezone_rejected(self):
        with pytest.raises(ValidationError):
            Settings(REPORTING_TIMEZONE="Mars/Olympus_Mons", _env_file=None)

    def test_timezone_property(self):
        settings = Settings(REPORTING_TIMEZONE="America/Los_Angeles", _env_file=None)

        assert settings.timezone.key == "America/Los_Angeles"
        assert not settings.is_production

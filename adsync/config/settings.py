"""
Ad Insights Synchronization Engine
Centralized Configuration Management

Pydantic settings with environment variable support for every subsystem:
storage, upstream insights API, rate budgets, freshness, caching and analysis.
"""

from functools import lru_cache
from typing import Optional, List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator, model_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """PostgreSQL Database Configuration"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="ad_insights", alias="database", description="Database name")
    user: str = Field(default="adsync", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, description="Full async URL, e.g. sqlite+aiosqlite:///adsync.db; overrides the parts above")

    @property
    def async_url(self) -> str:
        """Async database URL for asyncpg"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class InsightsApiSettings(BaseSettings):
    """Upstream Ad Insights API Configuration"""

    model_config = SettingsConfigDict(env_prefix="META_")

    base_url: str = Field(default="https://graph.facebook.com", description="Graph API host")
    api_version: str = Field(default="v19.0", description="Graph API version")
    access_token: SecretStr = Field(default="", description="System user access token")
    page_size: int = Field(default=100, ge=1, le=500, description="Rows requested per page")
    timeout_seconds: float = Field(default=30.0, description="Per-request timeout")
    max_pages: int = Field(default=200, description="Hard cap on pages per session")
    fields: List[str] = Field(
        default=[
            "ad_id", "ad_name", "campaign_id", "adset_id", "date_start", "date_stop",
            "impressions", "clicks", "spend", "reach", "frequency", "actions",
        ],
        description="Insights fields requested",
    )
    conversion_action_types: List[str] = Field(
        default=["purchase", "offsite_conversion.fb_pixel_purchase", "lead", "complete_registration"],
        description="Action types counted as conversions",
    )


class RateBudgetSettings(BaseSettings):
    """Upstream call budget configuration"""

    model_config = SettingsConfigDict(env_prefix="BUDGET_")

    hourly_quota: int = Field(default=200, ge=1, description="Calls allowed per rolling hour")
    daily_quota: int = Field(default=4800, ge=1, description="Calls allowed per rolling day")
    rate_limit_backoff_factor: float = Field(default=0.5, gt=0, le=1, description="Allowance multiplier after a 429")
    failure_backoff_factor: float = Field(default=0.8, gt=0, le=1, description="Allowance multiplier after a failure")
    min_allowance_ratio: float = Field(default=0.1, gt=0, le=1, description="Floor for the reduced allowance")
    penalty_window_seconds: int = Field(default=3600, description="How long a reduction lasts")
    scope: str = Field(default="account", description="Budget key scope: account or global")

    @field_validator("scope")
    @classmethod
    def validate_scope(cls, v: str) -> str:
        """Validate budget scope"""
        allowed = ["account", "global"]
        if v.lower() not in allowed:
            raise ValueError(f"Budget scope must be one of: {allowed}")
        return v.lower()

    @model_validator(mode="after")
    def check_quotas(self) -> "RateBudgetSettings":
        if self.daily_quota < self.hourly_quota:
            raise ValueError("daily_quota must be at least hourly_quota")
        return self


class FreshnessSettings(BaseSettings):
    """Freshness scoring configuration"""

    model_config = SettingsConfigDict(env_prefix="FRESHNESS_")

    # Staleness decay scale (seconds) per finality class
    realtime_scale_seconds: float = Field(default=3600.0)
    neartime_scale_seconds: float = Field(default=3 * 3600.0)
    stabilizing_scale_seconds: float = Field(default=12 * 3600.0)
    finalized_scale_seconds: float = Field(default=7 * 86400.0)

    fresh_threshold: float = Field(default=25.0, description="Staleness below this is fresh")
    aging_threshold: float = Field(default=50.0, description="Staleness below this is aging")
    stale_threshold: float = Field(default=80.0, description="Staleness below this is stale")

    attribution_window_days: int = Field(default=3, description="Days after which data stops moving")
    history_size: int = Field(default=10, description="Transitions remembered per key")

    @model_validator(mode="after")
    def check_thresholds(self) -> "FreshnessSettings":
        # status bands are read in this order
        if not 0 < self.fresh_threshold < self.aging_threshold < self.stale_threshold <= 100:
            raise ValueError("Freshness thresholds must satisfy 0 < fresh < aging < stale <= 100")
        return self


class CacheSettings(BaseSettings):
    """Three-tier cache configuration"""

    model_config = SettingsConfigDict(env_prefix="CACHE_")

    realtime_ttl_seconds: int = Field(default=15 * 60)
    neartime_ttl_seconds: int = Field(default=60 * 60)
    stabilizing_ttl_seconds: int = Field(default=6 * 3600)
    finalized_ttl_seconds: int = Field(default=7 * 86400)
    memory_max_entries: int = Field(default=512, description="L1 capacity")
    background_refresh: bool = Field(default=True, description="Refresh stale L2 hits in background")


class AnalysisSettings(BaseSettings):
    """Delivery, gap and anomaly analysis configuration"""

    model_config = SettingsConfigDict(env_prefix="ANALYSIS_")

    min_gap_days: int = Field(default=2, ge=1, description="Shortest non-delivery run reported as a gap")
    preceding_window_days: int = Field(default=7, ge=1, description="Delivered days averaged before a gap")
    baseline_window_days: int = Field(default=14, ge=1, description="Trailing days used as anomaly baseline")
    min_baseline_samples: int = Field(default=4, ge=1, description="Delivered baseline days needed to detect")
    stable_band_pct: float = Field(default=10.0, description="Change band treated as stable")

    frequency_threshold: float = Field(default=0.5, description="Relative frequency increase")
    frequency_floor: float = Field(default=3.0, description="Absolute frequency below which no alert")
    ctr_drop_threshold: float = Field(default=0.5, description="Relative CTR decrease")
    spend_spike_threshold: float = Field(default=1.0, description="Relative spend increase")
    cpm_threshold: float = Field(default=0.5, description="Relative CPM increase")
    min_confidence: float = Field(default=0.5, description="Planner goes full below this confidence")
    volatile_tail_days: int = Field(default=3, description="Trailing days always re-fetched incrementally")
    default_ads_estimate: int = Field(default=25, description="Ads per day assumed when no data is held")
    seconds_per_call: float = Field(default=2.0, description="Estimated seconds per upstream call")


class SecuritySettings(BaseSettings):
    """HTTP surface security configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    rate_limit_requests: int = Field(default=100, alias="RATE_LIMIT_REQUESTS", description="Rate limit requests")
    rate_limit_window_seconds: int = Field(default=60, alias="RATE_LIMIT_WINDOW_SECONDS", description="Rate limit window")

    cors_origins: List[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins"
    )


class MonitoringSettings(BaseSettings):
    """Monitoring and Observability Configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or text")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="ad-insights-sync", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")
    reporting_timezone: str = Field(default="UTC", alias="REPORTING_TIMEZONE", description="Ad account timezone")
    storage_backend: str = Field(default="sql", alias="STORAGE_BACKEND", description="sql or memory")

    # API Server
    api_host: str = Field(default="0.0.0.0", alias="API_HOST", description="API host")
    api_port: int = Field(default=8000, alias="API_PORT", description="API port")

    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    insights_api: InsightsApiSettings = Field(default_factory=InsightsApiSettings)
    rate_budget: RateBudgetSettings = Field(default_factory=RateBudgetSettings)
    freshness: FreshnessSettings = Field(default_factory=FreshnessSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @field_validator("reporting_timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Reject unknown IANA zone names early"""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown reporting timezone: {v}") from e
        return v

    @field_validator("storage_backend")
    @classmethod
    def validate_storage_backend(cls, v: str) -> str:
        allowed = ["sql", "memory"]
        if v.lower() not in allowed:
            raise ValueError(f"Storage backend must be one of: {allowed}")
        return v.lower()

    @property
    def timezone(self) -> ZoneInfo:
        return ZoneInfo(self.reporting_timezone)

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.app_env == "development"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()

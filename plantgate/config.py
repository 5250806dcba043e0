"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (QuotaConfig, PlansConfig, IdentificationConfig,
HistoryConfig, SupabaseTables) are env-overridable via the double-underscore
delimiter, e.g.:
    QUOTA__TIMEZONE=Africa/Lagos
    PLANS__FREE__DAILY_SCAN_LIMIT=3
    IDENTIFICATION__TIMEOUT_SECONDS=45
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from plantgate.exceptions import ConfigurationError
from plantgate.models.entitlements import PlanTier, TierLimits


class QuotaConfig(BaseModel):
    """Daily quota behaviour."""

    # IANA zone used to derive day keys; quotas reset at local midnight
    timezone: str = "UTC"
    # Rewarded ads that can be credited per day (one bonus scan each)
    daily_ad_cap: int = Field(default=2, ge=0)
    # Seconds between rollover checks for long-lived sessions
    rollover_check_interval_seconds: float = Field(default=60.0, gt=0)
    # On-device counter file for guests
    guest_store_path: str = ".plantgate/guest_counters.json"


class PlansConfig(BaseModel):
    """Per-tier scan and garden limits."""

    free: TierLimits = Field(
        default_factory=lambda: TierLimits(
            daily_scan_limit=2, monthly_scan_limit=60, garden_capacity=3
        )
    )
    basic: TierLimits = Field(
        default_factory=lambda: TierLimits(
            daily_scan_limit=10, monthly_scan_limit=150, garden_capacity=5
        )
    )
    premium: TierLimits = Field(
        default_factory=lambda: TierLimits(
            daily_scan_limit=50, monthly_scan_limit=600, garden_capacity=50
        )
    )

    def for_tier(self, tier: PlanTier) -> TierLimits:
        if tier == PlanTier.FREE:
            return self.free
        if tier == PlanTier.BASIC:
            return self.basic
        if tier == PlanTier.PREMIUM:
            return self.premium
        raise ConfigurationError(f"No limits configured for tier '{tier}'")

    def validate_tiers(self) -> None:
        """Raise ConfigurationError when a paid tier grants less than free."""
        for tier in (PlanTier.BASIC, PlanTier.PREMIUM):
            limits = self.for_tier(tier)
            if limits.daily_scan_limit < self.free.daily_scan_limit:
                raise ConfigurationError(
                    f"Tier '{tier.value}' daily limit is below the free tier"
                )
            if limits.garden_capacity < self.free.garden_capacity:
                raise ConfigurationError(
                    f"Tier '{tier.value}' garden capacity is below the free tier"
                )


class IdentificationConfig(BaseModel):
    """Plant identification provider parameters."""

    api_url: str = "https://my-api.plantnet.org/v2/identify/all"
    timeout_seconds: float = Field(default=30.0, gt=0)
    organs: str = "auto"
    max_results: int = Field(default=5, ge=1)


class HistoryConfig(BaseModel):
    """Scan history retention."""

    # Newest entries kept per subject; older ones are pruned on write
    max_entries: int = Field(default=50, ge=1)


class SupabaseTables(BaseModel):
    """Table and function names used by the remote stores."""

    daily_counters: str = "daily_counters"
    counter_days: str = "counter_days"
    subscriptions: str = "subscriptions"
    garden_plants: str = "garden_plants"
    scan_history: str = "scan_history"
    scan_stats: str = "scan_stats"
    increment_fn: str = "increment_daily_counter"
    bonus_fn: str = "credit_daily_bonus"
    begin_day_fn: str = "begin_counter_day"
    scan_total_fn: str = "increment_scan_total"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Secrets
    plantnet_api_key: str = ""
    payment_webhook_secret: str = ""

    # Supabase
    supabase_url: str = ""
    supabase_secret_key: str = ""

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:8081", "http://localhost:19006"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    plans: PlansConfig = Field(default_factory=PlansConfig)
    identification: IdentificationConfig = Field(default_factory=IdentificationConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    supabase_tables: SupabaseTables = Field(default_factory=SupabaseTables)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

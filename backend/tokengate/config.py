"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups are env-overridable via the double-underscore delimiter, e.g.:
    TOKENS__MAX_OPERATION_COST=500
    RATE_LIMIT__WINDOW_SECONDS=120
    STORE__TIMEOUT_SECONDS=2.5
"""

from functools import lru_cache

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tokengate.constants import (
    DEFAULT_LANGUAGE_COSTS,
    DEFAULT_MODE_MULTIPLIERS,
    DEFAULT_PLAN_ATTRIBUTES,
)
from tokengate.models.plans import Plan, PlanAttributes


class TokenConfig(BaseModel):
    """Token cost table and purchase bounds."""

    language_costs: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_LANGUAGE_COSTS))
    mode_multipliers: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_MODE_MULTIPLIERS))
    max_operation_cost: int = 1000
    min_purchase: int = 1
    max_purchase: int = 10000
    # Largest page the usage history endpoint returns
    history_page_max: int = Field(default=100, gt=0)


class PlanConfig(BaseModel):
    """Per-plan allowances. Every plan must be present."""

    plans: dict[Plan, PlanAttributes] = Field(
        default_factory=lambda: {plan: attrs.model_copy() for plan, attrs in DEFAULT_PLAN_ATTRIBUTES.items()}
    )


class RateLimitConfig(BaseModel):
    """Fixed-window admission limits.

    Env-overridable via RATE_LIMIT__KEY format, e.g.:
        RATE_LIMIT__WINDOW_SECONDS=60
        RATE_LIMIT__ANONYMOUS_REQUESTS_PER_WINDOW=5

    Overriding ``requests_per_window`` from the environment must name every plan:
        RATE_LIMIT__REQUESTS_PER_WINDOW='{"free": 3, "standard": 20, "plus": 40, "premium": 60}'
    """

    enabled: bool = True
    # Admit requests when the window store is unreachable
    fail_open: bool = True
    window_seconds: int = Field(default=60, gt=0)
    requests_per_window: dict[Plan, int] = Field(
        default_factory=lambda: {
            Plan.FREE: 10,
            Plan.STANDARD: 20,
            Plan.PLUS: 40,
            Plan.PREMIUM: 60,
        }
    )
    # Anonymous sessions are always on the free plan but get a tighter budget
    anonymous_requests_per_window: int = 5

    @field_validator("requests_per_window")
    @classmethod
    def _every_plan_has_a_limit(cls, value: dict[Plan, int]) -> dict[Plan, int]:
        # A partial env override replaces the whole mapping
        missing = [plan.value for plan in Plan if plan not in value]
        if missing:
            raise ValueError(f"requests_per_window missing for: {', '.join(missing)}")
        return value


class VoiceUsageConfig(BaseModel):
    """Monthly voice conversation counters."""

    # Months kept behind the current one; older rows are swept by the monthly job
    retention_months: int = Field(default=3, ge=1)


class StoreConfig(BaseModel):
    """Backing store tables and call bounds."""

    timeout_seconds: float = Field(default=5.0, gt=0)
    daily_tokens_table: str = "daily_token_balances"
    rate_limit_table: str = "rate_limit_windows"
    feature_flags_table: str = "feature_flags"
    subscriptions_table: str = "subscriptions"
    voice_usage_table: str = "monthly_voice_usage"
    voice_archive_table: str = "monthly_voice_usage_archive"
    token_usage_table: str = "token_usage_history"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Supabase
    supabase_url: str = ""
    supabase_secret_key: str = ""

    # Seconds between background reloads of the feature flag snapshot
    feature_flag_refresh_seconds: int = Field(default=300, gt=0)

    # Shared secret presented by the scheduler that triggers the monthly job
    cron_secret: str = ""

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:3000"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    tokens: TokenConfig = Field(default_factory=TokenConfig)
    plans: PlanConfig = Field(default_factory=PlanConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    voice_usage: VoiceUsageConfig = Field(default_factory=VoiceUsageConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

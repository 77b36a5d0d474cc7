"""Application configuration."""
from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # App
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_debug: bool = False
    log_level: str = "INFO"

    # CORS
    cors_origins: str = "http://localhost:3000"

    # Database
    database_url: str = Field(
        ...,
        description="Database connection URL (required)",
    )
    db_pool_size: int = Field(
        default=20,
        description="DB connection pool size (ignored for SQLite)",
    )
    db_max_overflow: int = Field(
        default=10,
        description="Max overflow connections (ignored for SQLite)",
    )

    # Redis (per-tournament lock backend)
    redis_url: str = Field(
        ...,
        description="Redis connection URL (required)",
    )
    redis_socket_timeout: float = 5.0
    redis_socket_connect_timeout: float = 5.0

    # Payment gateway
    stripe_secret_key: str | None = Field(
        default=None,
        description="Stripe secret API key",
    )
    stripe_webhook_secret: str | None = Field(
        default=None,
        description="Signing secret for payment event webhooks",
    )
    app_url: str = Field(
        default="http://localhost:3000",
        description="Public base URL used for checkout success/cancel links",
    )
    gateway_max_retries: int = Field(
        default=3,
        description="Retries for transient gateway connection errors",
    )
    membership_price_refs: dict[str, str] = Field(
        default_factory=dict,
        description="Gateway price id per membership tier (JSON object)",
    )

    # Admin
    admin_api_key: str = Field(
        ...,
        description="Value expected in the X-Admin-Key header (required)",
    )

    # Tournament capacity & fees
    tournament_default_cap: int = Field(default=32, gt=0)
    tournament_basic_fee_cents: int = Field(default=2500, ge=0)
    tournament_nonmember_fee_cents: int = Field(default=3000, ge=0)
    entry_currency: str = "usd"

    # Slot holds & waitlist offers
    checkout_hold_minutes: int = Field(
        default=60,
        ge=30,
        le=24 * 60,
        description="Lifetime of an unpaid slot hold (gateway allows 30 min - 24 h)",
    )
    hold_grace_minutes: int = Field(
        default=5,
        ge=0,
        description="Extra time before a lapsed hold is reclaimed",
    )
    waitlist_offer_ttl_hours: int = Field(default=12, gt=0, le=24)
    waitlist_max_offers: int = Field(
        default=2,
        ge=1,
        description="Offers a waitlist row may receive before it is superseded",
    )

    # Reporting
    operator_revenue_split_pct: float = Field(default=0.5, ge=0.0, le=1.0)

    # Locking
    lock_timeout_ms: int = 10000
    lock_acquire_timeout_ms: int = 5000

    # Sentry
    sentry_dsn: str | None = None
    sentry_traces_sample_rate: float = 0.05

    @field_validator("admin_api_key")
    @classmethod
    def validate_admin_api_key(cls, v: str) -> str:
        """Validate admin API key strength."""
        if len(v) < 16:
            raise ValueError("admin_api_key must be at least 16 characters long")
        return v

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Validate settings for production environment."""
        if self.app_env == "production":
            if self.app_debug:
                raise ValueError(
                    "app_debug must be False in production environment"
                )

            origins = [o.strip() for o in self.cors_origins.split(",")]
            if "*" in origins:
                raise ValueError(
                    "CORS wildcard '*' is not allowed in production environment. "
                    "Specify explicit allowed origins."
                )

            if not self.stripe_secret_key or not self.stripe_webhook_secret:
                raise ValueError(
                    "stripe_secret_key and stripe_webhook_secret are required "
                    "in production environment"
                )

        return self

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

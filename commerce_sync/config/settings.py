"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class WebhookEndpointConfig(BaseModel):
    """One logical webhook endpoint (channel) and its routing rule."""

    secret: Optional[str] = Field(default=None, description="Webhook signing secret (whsec_...)")
    routing_mode: Literal["all", "allow_list", "deny_list"] = Field(
        default="all", description="How payer identities are routed to this endpoint"
    )
    identities: List[str] = Field(
        default_factory=list, description="Payer identities the routing mode applies to"
    )
    signature_tolerance_seconds: int = Field(
        default=300, description="Maximum age of a signed payload (seconds)"
    )


class MarketplaceChannelConfig(BaseModel):
    """Connection and sync policy for one marketplace account."""

    kind: Literal["ebay", "fake"] = Field(..., description="Adapter implementation")
    base_url: str = Field(default="https://api.sandbox.ebay.com", description="API base URL")
    access_token: Optional[str] = Field(default=None, description="OAuth access token")
    marketplace_id: str = Field(default="EBAY_GB", description="Marketplace identifier")
    currency: str = Field(default="GBP", description="Listing currency")
    order_number_prefix: str = Field(default="EB", description="Prefix for imported order numbers")
    max_concurrency: int = Field(
        default=4, ge=1, description="Concurrent adapter calls within one run"
    )
    default_lookback_hours: int = Field(
        default=24, ge=1, description="Oldest window an order pull will request"
    )
    sync_interval_seconds: int = Field(
        default=3600, ge=60, description="Seconds between scheduled runs"
    )
    page_size: int = Field(default=200, ge=1, le=200, description="Orders per page")
    request_timeout_seconds: float = Field(default=30.0, description="HTTP request timeout")
    catalog_push_enabled: bool = Field(default=True, description="Schedule catalog pushes")
    order_pull_enabled: bool = Field(default=True, description="Schedule order pulls")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    stripe_webhook_secret: Optional[str] = Field(
        default=None, description="Signing secret of the general webhook endpoint"
    )
    stripe_webhook_secret_live: Optional[str] = Field(
        default=None, description="Signing secret of the production webhook endpoint"
    )
    stripe_webhook_secret_test: Optional[str] = Field(
        default=None, description="Signing secret of the restricted test webhook endpoint"
    )
    webhook_test_identities: List[str] = Field(
        default_factory=list,
        description="Payer emails routed to the test endpoint and excluded from production",
    )
    webhook_endpoints: Dict[str, WebhookEndpointConfig] = Field(
        default_factory=dict,
        description="Webhook endpoints by path key (defaults built from the secrets above)",
    )

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    redis_lock_timeout: int = Field(
        default=1800, description="Lifetime of a sync run lock (seconds)"
    )

    # Marketplace Channels
    marketplace_channels: Dict[str, MarketplaceChannelConfig] = Field(
        default_factory=dict, description="Marketplace channels by key"
    )

    # Sync Policy
    sync_retry_max_attempts: int = Field(default=5, ge=1, description="Attempts per adapter call")
    sync_retry_base_delay: float = Field(
        default=1.0, ge=0, description="Base delay for retry backoff (seconds)"
    )
    sync_retry_max_delay: float = Field(default=16.0, description="Retry backoff cap (seconds)")
    sync_run_timeout_seconds: float = Field(
        default=900.0, description="Deadline for a single sync run (seconds)"
    )
    adapter_call_timeout_seconds: float = Field(
        default=30.0, description="Timeout for one adapter call (seconds)"
    )
    sync_log_history_limit: int = Field(default=20, description="SyncLogs returned by status")

    # Loyalty
    loyalty_points_per_unit: int = Field(
        default=100, ge=0, description="Points credited per major currency unit"
    )

    # Outbox
    outbox_batch_size: int = Field(default=100, description="Outbox rows per publish batch")
    outbox_poll_interval_seconds: float = Field(default=1.0, description="Outbox poll interval")
    notification_webhook_url: Optional[str] = Field(
        default=None, description="Endpoint notification events are POSTed to (logged if unset)"
    )
    notification_timeout_seconds: float = Field(
        default=10.0, description="Notification POST timeout"
    )

    # Application Configuration
    app_name: str = Field(default="commerce-sync", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    admin_api_key: Optional[str] = Field(
        default=None, description="Key required on operator endpoints (X-API-Key)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that the Stripe secret key has a test or live prefix."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @model_validator(mode="after")
    def default_webhook_endpoints(self) -> "Settings":
        """Build the stripe/production/test endpoints when none are configured."""
        if not self.webhook_endpoints:
            self.webhook_endpoints = {
                "stripe": WebhookEndpointConfig(
                    secret=self.stripe_webhook_secret, routing_mode="all"
                ),
                "production": WebhookEndpointConfig(
                    secret=self.stripe_webhook_secret_live,
                    routing_mode="deny_list",
                    identities=list(self.webhook_test_identities),
                ),
                "test": WebhookEndpointConfig(
                    secret=self.stripe_webhook_secret_test,
                    routing_mode="allow_list",
                    identities=list(self.webhook_test_identities),
                ),
            }
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()

"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "TrueValidator Billing Core"
    api_version: str = "0.1.0"
    api_description: str = "Validation job lifecycle and credit ledger for TrueValidator"
    cors_origins: str = "*"  # Comma-separated

    # Authentication
    jwt_secret: str = ""  # generate with: openssl rand -hex 32
    jwt_algorithm: str = "HS256"
    jwt_expire_hours: int = 24
    api_key_prefix: str = "tv"
    api_key_environment: str = "live"

    # Billing
    unit_cost: int = 1  # Credits per checked address
    default_currency: str = "USD"
    free_plan_name: str = "free"
    free_plan_slug: str = "free"
    free_plan_credits: int = 100
    plan_period_days: int = 30
    coupon_hold_minutes: int = 30  # Unpaid coupon orders count as a use this long

    # Validation pipeline
    max_emails_per_job: int = 100_000
    check_timeout_seconds: float = 15.0
    worker_concurrency: int = 8
    worker_poll_interval_seconds: float = 2.0
    job_lease_seconds: int = 120
    job_max_duration_seconds: int = 6 * 3600  # Watchdog ceiling
    stale_reservation_seconds: int = 300
    estimated_checks_per_second: float = 10.0

    # Rate limiting
    default_rate_limit_per_minute: int = 60

    # Webhooks
    webhook_timeout_seconds: float = 10.0
    webhook_max_attempts: int = 2

    # Validation server pool
    server_check_timeout_seconds: float = 5.0
    server_pool_cache_seconds: int = 30

    # Payment collaborator
    payment_key_id: str = ""
    payment_key_secret: str = ""

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "truevalidator-billing-core"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        This prevents silent failures that only manifest at runtime.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if len(self.jwt_secret) < 32:
            errors.append("JWT_SECRET must be at least 32 characters")

        if self.unit_cost < 1:
            errors.append(f"UNIT_COST must be >= 1, got: {self.unit_cost}")

        if self.worker_concurrency < 1:
            errors.append(f"WORKER_CONCURRENCY must be >= 1, got: {self.worker_concurrency}")

        if self.check_timeout_seconds <= 0:
            errors.append("CHECK_TIMEOUT_SECONDS must be positive")

        # If we have errors, fail immediately with clear messaging
        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    @property
    def allowed_origins(self) -> list[str]:
        """CORS origins as a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings

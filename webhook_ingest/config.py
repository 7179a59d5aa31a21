"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis (worker heartbeats + readiness)
    redis_url: str = "redis://localhost:6379/0"

    # Stripe signing secrets - one per inbound channel
    stripe_webhook_secret: str = ""          # main channel: payments, charges, checkout
    stripe_connect_webhook_secret: str = ""  # connect channel: accounts, payouts, transfers
    stripe_webhook_tolerance_seconds: int = 300

    # Retry policy defaults (stamped onto each record at ingestion)
    webhook_max_retries: int = 3
    webhook_retry_base_delay_ms: int = 1000
    webhook_retry_max_delay_ms: int = 300000
    webhook_retry_backoff_multiplier: float = 2.0
    webhook_retry_jitter_enabled: bool = True

    # Retry worker
    retry_worker_enabled: bool = True
    retry_poll_interval_seconds: int = 30
    retry_batch_size: int = 50
    retry_claim_lease_seconds: int = 300
    pending_recovery_seconds: int = 900
    webhook_handler_timeout_seconds: float = 120.0  # 0 disables; a timeout counts as a failed attempt

    # Business handler plugins: comma-separated dotted module paths,
    # each exposing register_handlers(registry)
    webhook_handler_modules: str = ""

    # Admin API (stats endpoint)
    admin_jwt_secret: str = ""

    # Sentry
    sentry_dsn: str = ""

    allowed_origins: str = ""  # Comma-separated CORS origins

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()

"""
Application configuration.
All settings are loaded from environment variables.
Use env.example as a reference for required variables.
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    IMPORTANT: Credentials have no defaults - they MUST be set in .env file.
    """

    # ===========================================
    # APPLICATION
    # ===========================================
    app_env: str = "local"
    # Comma-separated CORS origins. Empty = built-in defaults.
    cors_origins: str = ""

    # ===========================================
    # DATABASE
    # ===========================================
    database_url: str  # Required, no default
    database_connect_timeout: int = 5

    # ===========================================
    # REDIS & CELERY
    # ===========================================
    redis_url: str  # Required, no default
    celery_broker_url: str  # Required, no default
    celery_result_backend: str  # Required, no default

    # ===========================================
    # PAYMENT WORKER
    # ===========================================
    payment_worker_lock_name: str = "payment_worker"
    payment_worker_batch_size: int = 100
    # Stale lease threshold used by the janitor
    payment_worker_lock_max_age_minutes: int = 10
    # PROCESSING rows older than this are requeued by the orphan sweep
    payment_worker_orphan_minutes: int = 15
    # 0 = unbounded retries
    payment_worker_max_attempts: int = 0
    payment_worker_interval_minutes: int = 2
    payment_worker_retry_hour: int = 14
    # Reconnect only once the account owes nothing (balance >= 0)
    payment_worker_reconnect_requires_settled_balance: bool = True

    # ===========================================
    # RECONNECTION API
    # ===========================================
    reconnect_api_base: str = ""  # Empty = reconnection disabled
    reconnect_api_key: str = ""
    reconnect_timeout: float = 10.0

    # ===========================================
    # ADMIN API
    # ===========================================
    admin_api_key: str | None = None  # Optional, but recommended

    # ===========================================
    # CIRCUIT BREAKER
    # ===========================================
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30
    cb_storage: str = "redis"  # redis, memory

    # ===========================================
    # LOGGING
    # ===========================================
    log_level: str = "INFO"
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    @field_validator("payment_worker_batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        """Batch must be bounded so a run finishes well inside the trigger interval."""
        if v < 1 or v > 1000:
            raise ValueError("payment_worker_batch_size must be between 1 and 1000")
        return v

    @field_validator("cb_storage")
    @classmethod
    def validate_cb_storage(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in ("redis", "memory"):
            raise ValueError("cb_storage must be 'redis' or 'memory'")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()

"""
Worker Configuration

Database, Stripe and ledger settings are shared with the API through
``graymall.core.config``; only worker concerns live here.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class WorkerSettings(BaseSettings):
    # Redis (locks)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Celery
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/1"

    # Withdrawal batch: runs on the last day of each month at this hour (UTC)
    WITHDRAWAL_BATCH_HOUR: int = 15
    WITHDRAWAL_BATCH_LOCK_TTL_SECONDS: int = 6 * 60 * 60

    # Stuck-request report
    STUCK_REPORT_INTERVAL_SECONDS: float = 3600.0

    # Prometheus
    METRICS_PORT: int = 9090

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache()
def get_settings() -> WorkerSettings:
    return WorkerSettings()


settings = get_settings()

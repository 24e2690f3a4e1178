"""
Withdrawal Settlement Tasks

- Monthly withdrawal batch (last day of the month)
- Report of requests stuck in processing

The Redis lock only stops two beat ticks from running the batch at the
same time. Double payment is prevented by the queued -> processing claim
and the transfer idempotency key inside graymall.services.payout_batch.
"""
from calendar import monthrange
from datetime import datetime, timezone
from typing import Dict, Optional

import redis
import structlog

from celery_app import app
from config import settings
from db import run_async, task_session_factory
from metrics import BATCH_RUNS, LOCKS_ACQUIRED, LOCKS_FAILED, STUCK_WITHDRAWALS

from graymall.services.payments import StripeService
from graymall.services.payout_batch import WithdrawalBatchProcessor, find_stuck_withdrawals

logger = structlog.get_logger()

BATCH_LOCK_NAME = "withdrawal_batch"

# Redis client for run locks
_redis_client = None


def get_redis_client() -> redis.Redis:
    """Get or create Redis client for run locks."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.Redis.from_url(
            settings.REDIS_URL,
            decode_responses=True
        )
    return _redis_client


def acquire_run_lock(key: str, ttl_seconds: int) -> bool:
    """
    Acquire a run lock using Redis SETNX.

    Returns True if the lock was acquired, False if another run holds it.
    If Redis is unreachable the run proceeds: skipping a payout run is
    worse than overlapping one, and overlap is already safe.
    """
    try:
        result = get_redis_client().set(f"lock:{key}", "1", nx=True, ex=ttl_seconds)
    except redis.RedisError as e:
        LOCKS_FAILED.labels(lock_name=BATCH_LOCK_NAME, reason="redis_error").inc()
        logger.warning("Failed to acquire run lock, proceeding", key=key, error=str(e))
        return True

    if result is True:
        LOCKS_ACQUIRED.labels(lock_name=BATCH_LOCK_NAME).inc()
        return True

    LOCKS_FAILED.labels(lock_name=BATCH_LOCK_NAME, reason="already_held").inc()
    return False


def release_run_lock(key: str) -> None:
    try:
        get_redis_client().delete(f"lock:{key}")
    except redis.RedisError as e:
        # The TTL clears it eventually
        logger.warning("Failed to release run lock", key=key, error=str(e))


def is_last_day_of_month(now: datetime) -> bool:
    return now.day == monthrange(now.year, now.month)[1]


async def _run_withdrawal_batch(year: Optional[int], month: Optional[int]) -> Dict:
    async with task_session_factory() as session_factory:
        processor = WithdrawalBatchProcessor(session_factory, StripeService())
        summary = await processor.run(year=year, month=month)
    return summary.to_dict()


@app.task(bind=True, max_retries=3, default_retry_delay=300)
def process_withdrawal_batch(
    self,
    year: Optional[int] = None,
    month: Optional[int] = None,
    force: bool = False,
) -> Dict:
    """
    Settle queued withdrawal requests.

    Beat fires this on days 28-31; only the last day of the month runs
    unless ``force`` is set or an explicit period is given.
    """
    now = datetime.now(timezone.utc)
    explicit = force or year is not None or month is not None
    if not explicit and not is_last_day_of_month(now):
        BATCH_RUNS.labels(result="not_scheduled").inc()
        return {"success": True, "message": "Not the last day of the month", "processed": 0}

    lock_key = f"{BATCH_LOCK_NAME}:{now.strftime('%Y-%m')}"
    if not acquire_run_lock(lock_key, ttl_seconds=settings.WITHDRAWAL_BATCH_LOCK_TTL_SECONDS):
        BATCH_RUNS.labels(result="locked").inc()
        logger.warning("Withdrawal batch already running", lock_key=lock_key)
        return {"success": True, "message": "Already running", "processed": 0}

    try:
        summary = run_async(_run_withdrawal_batch(year, month))
    except Exception as e:
        BATCH_RUNS.labels(result="error").inc()
        logger.error("Withdrawal batch failed", error=str(e), error_type=type(e).__name__)
        raise self.retry(exc=e, countdown=300 * (2 ** self.request.retries))
    finally:
        release_run_lock(lock_key)

    BATCH_RUNS.labels(result="completed").inc()
    logger.info(
        "Withdrawal batch completed",
        processed=summary["processed"],
        failed=summary["failed"],
        skipped=summary["skipped"],
        reconciliation_required=summary["reconciliation_required"],
        total_amount=summary["total_amount"],
    )
    return {"success": True, **summary}


async def _find_stuck(older_than_hours: Optional[int]) -> Dict:
    async with task_session_factory() as session_factory:
        async with session_factory() as db:
            stuck = await find_stuck_withdrawals(db, older_than_hours=older_than_hours)
            return {
                "count": len(stuck),
                "requests": [
                    {
                        "request_id": str(request.id),
                        "user_id": str(request.user_id),
                        "amount": request.amount,
                        "processing_started_at": (
                            request.processing_started_at.isoformat()
                            if request.processing_started_at else None
                        ),
                    }
                    for request in stuck
                ],
            }


@app.task
def report_stuck_withdrawals(older_than_hours: Optional[int] = None) -> Dict:
    """Log requests that need a manual reconcile."""
    result = run_async(_find_stuck(older_than_hours))
    STUCK_WITHDRAWALS.set(result["count"])

    for request in result["requests"]:
        logger.error("Withdrawal stuck in processing", **request)

    if result["count"]:
        logger.error("Stuck withdrawals need reconciliation", count=result["count"])
    return result

"""
Celery Application Configuration

Runs the monthly withdrawal batch and the stuck-request report, with
Prometheus metrics for monitoring and alerting.
"""
import time
import structlog
from celery import Celery
from celery.schedules import crontab
from celery.signals import (
    task_prerun,
    task_postrun,
    task_failure,
    task_retry,
    worker_ready,
    worker_shutting_down,
)

from config import settings

logger = structlog.get_logger()

# Task start times keyed by task id, for duration metrics
_task_start_times = {}

app = Celery(
    'graymall_worker',
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        'tasks.payouts',
    ]
)


# =============================================================================
# Celery Signal Handlers for Metrics & Logging
# =============================================================================

@worker_ready.connect
def init_worker_metrics(sender, **kwargs):
    """Initialize Prometheus metrics when worker is ready."""
    from graymall.core.config import settings as api_settings
    from metrics import start_metrics_server, init_worker_info
    import socket

    try:
        start_metrics_server(port=settings.METRICS_PORT)
    except OSError as e:
        logger.warning("Failed to start metrics server", error=str(e))
        return

    hostname = socket.gethostname()
    concurrency = sender.concurrency if hasattr(sender, 'concurrency') else 1
    init_worker_info(hostname, concurrency, api_settings.APP_VERSION)

    logger.info("Worker metrics initialized", hostname=hostname)


@worker_shutting_down.connect
def worker_shutdown_handler(**kwargs):
    logger.info("Worker shutting down")


@task_prerun.connect
def task_prerun_handler(task_id, task, args, kwargs, **rest):
    """Log task start and record metrics."""
    from metrics import record_task_start

    _task_start_times[task_id] = time.time()
    record_task_start(task.name, _get_queue_for_task(task.name))

    logger.bind(task_id=task_id, task_name=task.name).info("Task starting")


@task_postrun.connect
def task_postrun_handler(task_id, task, args, kwargs, retval, state, **rest):
    """Log task completion and record metrics."""
    from metrics import record_task_complete

    start_time = _task_start_times.pop(task_id, None)
    duration = time.time() - start_time if start_time else 0

    status = 'success' if state == 'SUCCESS' else 'failure'
    record_task_complete(task.name, _get_queue_for_task(task.name), status, duration)

    logger.bind(
        task_id=task_id,
        task_name=task.name,
        state=state,
        duration_seconds=round(duration, 3),
    ).info("Task completed")


@task_failure.connect
def task_failure_handler(task_id, exception, args, kwargs, traceback, einfo, sender=None, **rest):
    """Log task failure with full context and record metrics."""
    from metrics import record_task_failure

    error_type = type(exception).__name__
    task_name = sender.name if sender else 'unknown'
    record_task_failure(task_name, _get_queue_for_task(task_name), error_type)

    logger.bind(task_id=task_id, task_name=task_name).error(
        "Task failed",
        error=str(exception),
        error_type=error_type,
    )


@task_retry.connect
def task_retry_handler(request, reason, einfo, **rest):
    """Log task retry and record metrics."""
    from metrics import record_task_retry

    record_task_retry(request.task, _get_queue_for_task(request.task), str(reason)[:50])

    logger.bind(
        task_id=request.id,
        task_name=request.task,
        retry_count=request.retries,
    ).warning("Task retrying", reason=str(reason))


def _get_queue_for_task(task_name: str) -> str:
    """Get queue name for a task based on routing rules."""
    if 'payouts' in task_name:
        return 'payouts'
    return 'default'


app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_track_started=True,
    task_time_limit=3600,  # 1 hour max
    task_soft_time_limit=3300,  # 55 minutes soft limit
    worker_prefetch_multiplier=1,
    # A payout task must not be redelivered mid-run
    task_acks_late=False,
    result_expires=86400,  # 24 hours
    broker_connection_retry_on_startup=True,
)

# Task routing
app.conf.task_routes = {
    'tasks.payouts.*': {'queue': 'payouts'},
}

# Periodic tasks
app.conf.beat_schedule = {
    # Fires on days 28-31; the task itself only runs on the last day
    'process-withdrawal-batch': {
        'task': 'tasks.payouts.process_withdrawal_batch',
        'schedule': crontab(minute=0, hour=settings.WITHDRAWAL_BATCH_HOUR, day_of_month='28-31'),
    },
    'report-stuck-withdrawals': {
        'task': 'tasks.payouts.report_stuck_withdrawals',
        'schedule': settings.STUCK_REPORT_INTERVAL_SECONDS,
    },
}

if __name__ == '__main__':
    app.start()

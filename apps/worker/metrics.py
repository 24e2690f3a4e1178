"""
Prometheus Metrics for the GrayMall Worker

Task execution metrics, plus the withdrawal batch and lock counters.
Settlement counters themselves are recorded by graymall.services.
"""
from prometheus_client import Counter, Histogram, Gauge, Info
import structlog

logger = structlog.get_logger()

# ==============================================================================
# Task Execution Metrics
# ==============================================================================

TASK_STARTED = Counter(
    'celery_task_started_total',
    'Total number of tasks started',
    ['task_name', 'queue']
)

TASK_COMPLETED = Counter(
    'celery_task_completed_total',
    'Total number of tasks completed',
    ['task_name', 'queue', 'status']  # status: success, failure
)

TASK_DURATION = Histogram(
    'celery_task_duration_seconds',
    'Task execution duration in seconds',
    ['task_name', 'queue'],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0)
)

TASK_RETRIES = Counter(
    'celery_task_retries_total',
    'Total number of task retries',
    ['task_name', 'queue', 'reason']
)

TASK_FAILURES = Counter(
    'celery_task_failures_total',
    'Total number of task failures after max retries',
    ['task_name', 'queue', 'error_type']
)

ACTIVE_TASKS = Gauge(
    'celery_active_tasks',
    'Number of currently executing tasks',
    ['task_name', 'queue']
)

# ==============================================================================
# Withdrawal Batch Metrics
# ==============================================================================

BATCH_RUNS = Counter(
    'withdrawal_batch_runs_total',
    'Withdrawal batch runs started by the worker',
    ['result']  # completed, locked, not_scheduled, error
)

STUCK_WITHDRAWALS = Gauge(
    'withdrawal_stuck_processing',
    'Withdrawal requests in processing longer than the alert threshold'
)

# ==============================================================================
# Distributed Locking Metrics
# ==============================================================================

LOCKS_ACQUIRED = Counter(
    'distributed_locks_acquired_total',
    'Number of distributed locks acquired',
    ['lock_name']
)

LOCKS_FAILED = Counter(
    'distributed_locks_failed_total',
    'Number of distributed lock acquisition failures',
    ['lock_name', 'reason']  # already_held, redis_error
)

# ==============================================================================
# Worker Info
# ==============================================================================

WORKER_INFO = Info(
    'celery_worker',
    'Celery worker information'
)


# ==============================================================================
# Metric Recording Helpers
# ==============================================================================

def record_task_start(task_name: str, queue: str = 'default'):
    TASK_STARTED.labels(task_name=task_name, queue=queue).inc()
    ACTIVE_TASKS.labels(task_name=task_name, queue=queue).inc()


def record_task_complete(task_name: str, queue: str = 'default',
                        status: str = 'success', duration: float = 0):
    TASK_COMPLETED.labels(task_name=task_name, queue=queue, status=status).inc()
    TASK_DURATION.labels(task_name=task_name, queue=queue).observe(duration)
    ACTIVE_TASKS.labels(task_name=task_name, queue=queue).dec()


def record_task_retry(task_name: str, queue: str = 'default', reason: str = 'unknown'):
    TASK_RETRIES.labels(task_name=task_name, queue=queue, reason=reason).inc()


def record_task_failure(task_name: str, queue: str = 'default', error_type: str = 'unknown'):
    TASK_FAILURES.labels(task_name=task_name, queue=queue, error_type=error_type).inc()


# ==============================================================================
# Prometheus HTTP Server
# ==============================================================================

_metrics_server_started = False


def start_metrics_server(port: int = 9090):
    """Start Prometheus metrics HTTP server."""
    global _metrics_server_started
    if _metrics_server_started:
        return

    from prometheus_client import start_http_server
    start_http_server(port)
    _metrics_server_started = True
    logger.info("Prometheus metrics server started", port=port)


def init_worker_info(hostname: str, concurrency: int, version: str):
    WORKER_INFO.info({
        'hostname': hostname,
        'concurrency': str(concurrency),
        'version': version,
    })

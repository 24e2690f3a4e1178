"""
Monitoring and Observability
Sentry, Prometheus metrics, and circuit breaker status
"""

import time

import structlog
from fastapi import FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

from graymall.core.config import settings

logger = structlog.get_logger()

# ===========================================
# Prometheus Metrics
# ===========================================

# Request metrics
REQUEST_COUNT = Counter(
    "http_requests_total", "Total HTTP requests", ["method", "endpoint", "status"]
)

REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# Authentication metrics
AUTH_FAILURES = Counter(
    "auth_failures_total",
    "Total authentication failures",
    ["type", "reason"]  # type: jwt, api_key; reason: missing, invalid, user_not_found
)

AUTH_SUCCESS = Counter(
    "auth_success_total",
    "Total successful authentications",
    ["type"]
)

# Ledger metrics
WITHDRAWAL_REQUESTS = Counter(
    "withdrawal_requests_total",
    "Withdrawal request attempts by outcome",
    ["result"]  # queued or a rejection reason code
)

WITHDRAWAL_SETTLEMENTS = Counter(
    "withdrawal_settlements_total",
    "Withdrawal settlement outcomes",
    ["status"]  # paid, failed, skipped, unknown
)

WITHDRAWAL_SETTLED_AMOUNT = Counter(
    "withdrawal_settled_amount_total",
    "Total amount transferred to creators (smallest currency unit)",
)

SETTLEMENT_INVARIANT_VIOLATIONS = Counter(
    "settlement_invariant_violations_total",
    "Fee splits that did not balance to the order amount",
)

WEBHOOK_EVENTS = Counter(
    "webhook_events_total",
    "Payment provider webhook events",
    ["event_type", "result"]  # applied, duplicate, skipped, ignored, failed
)

# ===========================================
# Resilience Metrics
# ===========================================

CIRCUIT_BREAKER_STATE = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["service"],
)

CIRCUIT_BREAKER_FAILURES = Counter(
    "circuit_breaker_failures_total",
    "Total circuit breaker failures",
    ["service"],
)

CIRCUIT_BREAKER_SUCCESSES = Counter(
    "circuit_breaker_successes_total",
    "Total circuit breaker successes",
    ["service"],
)

CIRCUIT_BREAKER_REJECTIONS = Counter(
    "circuit_breaker_rejections_total",
    "Total requests rejected by open circuit breaker",
    ["service"],
)

RETRY_ATTEMPTS = Counter(
    "retry_attempts_total",
    "Total retry attempts",
    ["service", "operation"],
)

RETRY_SUCCESSES = Counter(
    "retry_successes_total",
    "Total successful retries (after initial failure)",
    ["service", "operation"],
)

RETRY_EXHAUSTED = Counter(
    "retry_exhausted_total",
    "Total operations that exhausted all retries",
    ["service", "operation"],
)

OPERATION_TIMEOUTS = Counter(
    "operation_timeouts_total",
    "Total operation timeouts",
    ["service", "operation"],
)

EXTERNAL_CALL_DURATION = Histogram(
    "external_call_duration_seconds",
    "Duration of external API calls (Stripe, etc.)",
    ["service", "operation", "status"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)


# ===========================================
# Sentry Setup
# ===========================================


def setup_sentry() -> None:
    """Initialize Sentry error tracking"""
    if not settings.SENTRY_DSN:
        logger.info("Sentry DSN not configured, error tracking disabled")
        return

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        release=f"graymall-api@{settings.APP_VERSION}",
        traces_sample_rate=0.1 if settings.ENVIRONMENT == "production" else 1.0,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        send_default_pii=False,
        before_send=filter_sensitive_data,
    )

    logger.info("Sentry initialized", environment=settings.ENVIRONMENT)


def filter_sensitive_data(event, hint):
    """Filter sensitive data before sending to Sentry"""
    if "request" in event and "headers" in event["request"]:
        headers = event["request"]["headers"]
        for sensitive in ["authorization", "x-api-key", "cookie", "stripe-signature"]:
            if sensitive in headers:
                headers[sensitive] = "[FILTERED]"

    return event


async def get_circuit_breaker_status() -> dict:
    """Get status of all circuit breakers for resilience observability"""
    from graymall.services.payments import StripeService

    circuit_breakers = {"stripe": StripeService._circuit_breaker}

    status = {}
    for name, cb in circuit_breakers.items():
        status[name] = {
            "state": cb.state.name,
            "is_open": cb.is_open,
            "failure_count": cb._failure_count,
        }

    return status


# ===========================================
# Metrics Endpoint
# ===========================================


def setup_metrics_endpoint(app: FastAPI) -> None:
    """Add Prometheus metrics endpoint"""

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


class MetricsMiddleware:
    """Middleware to collect request metrics"""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        path = request.url.path
        method = request.method

        # Probes and scrapes are not counted
        if path == "/metrics" or path.startswith("/api/v1/health"):
            await self.app(scope, receive, send)
            return

        start_time = time.time()
        status_code = 500

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration = time.time() - start_time
            # Route template keeps label cardinality bounded (no raw ids)
            route = scope.get("route")
            endpoint = getattr(route, "path", path)
            REQUEST_COUNT.labels(method=method, endpoint=endpoint, status=status_code).inc()
            REQUEST_LATENCY.labels(method=method, endpoint=endpoint).observe(duration)

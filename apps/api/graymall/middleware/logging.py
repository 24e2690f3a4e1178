"""
Request Logging Middleware
Structured logging for all API requests with PII filtering

Only request metadata is logged. Bodies carry payout and payment data
and are never written to the log.
"""

import re
import time
import uuid
from typing import Any, Callable, Dict

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger()


# PII patterns to redact from logs
PII_PATTERNS = {
    # Email addresses
    "email": re.compile(r'[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}'),
    # JWT tokens
    "jwt": re.compile(r'eyJ[a-zA-Z0-9_-]*\.eyJ[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*'),
    # Stripe keys
    "api_key": re.compile(r'\b(sk_live_|pk_live_|sk_test_|pk_test_|rk_live_|rk_test_)[a-zA-Z0-9]{20,}\b'),
    # Stripe webhook secrets
    "webhook_secret": re.compile(r'\bwhsec_[a-zA-Z0-9]{20,}\b'),
    # Bearer tokens
    "bearer": re.compile(r'Bearer\s+[a-zA-Z0-9._-]+', re.IGNORECASE),
}

# Fields to completely redact
SENSITIVE_FIELDS = {
    'password', 'secret', 'token', 'api_key', 'apikey', 'x-api-key',
    'authorization', 'credential', 'bank_account', 'account_number',
    'routing_number', 'guest_email', 'email',
}


def sanitize_value(value: Any) -> Any:
    """Sanitize a single value, redacting PII"""
    if not isinstance(value, str):
        return value

    sanitized = value
    for pattern_name, pattern in PII_PATTERNS.items():
        sanitized = pattern.sub(f'[REDACTED_{pattern_name.upper()}]', sanitized)

    return sanitized


def sanitize_dict(data: Dict[str, Any], depth: int = 0) -> Dict[str, Any]:
    """Recursively sanitize a dictionary, redacting sensitive fields and PII"""
    if depth > 5:  # Prevent infinite recursion
        return {"_truncated": True}

    sanitized = {}
    for key, value in data.items():
        if isinstance(key, str) and key.lower() in SENSITIVE_FIELDS:
            sanitized[key] = '[REDACTED]'
        elif isinstance(value, dict):
            sanitized[key] = sanitize_dict(value, depth + 1)
        elif isinstance(value, list):
            sanitized[key] = [
                sanitize_dict(item, depth + 1) if isinstance(item, dict)
                else sanitize_value(item)
                for item in value
            ]
        else:
            sanitized[key] = sanitize_value(value)

    return sanitized


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs all API requests with structured data.

    Logged data:
    - Request ID (for tracing, bound to the structlog context)
    - Method and path
    - Client IP
    - Response status
    - Response time
    """

    # Paths to exclude from logging
    EXCLUDE_PATHS = {"/health", "/metrics", "/favicon.ico"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.EXCLUDE_PATHS:
            return await call_next(request)

        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        structlog.contextvars.bind_contextvars(request_id=request_id)

        forwarded = request.headers.get("X-Forwarded-For")
        client_ip = (
            forwarded.split(",")[0].strip()
            if forwarded
            else (request.client.host if request.client else "unknown")
        )

        start_time = time.perf_counter()

        try:
            try:
                response = await call_next(request)
            except Exception as e:
                duration = time.perf_counter() - start_time
                logger.error(
                    "Request error",
                    method=request.method,
                    path=request.url.path,
                    client_ip=client_ip,
                    duration_ms=round(duration * 1000, 2),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            duration = time.perf_counter() - start_time
            log_level = (
                "info"
                if response.status_code < 400
                else ("warning" if response.status_code < 500 else "error")
            )
            getattr(logger, log_level)(
                "Request completed",
                method=request.method,
                path=request.url.path,
                query=str(request.query_params) if request.query_params else None,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2),
                client_ip=client_ip,
            )

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Response-Time"] = f"{round(duration * 1000, 2)}ms"
            return response
        finally:
            structlog.contextvars.unbind_contextvars("request_id")


def pii_filter_processor(logger, method_name, event_dict):
    """
    Structlog processor that filters PII from log events.
    Should be added to the processor chain.
    """
    return sanitize_dict(event_dict)


def setup_structlog(json_logs: bool = True):
    """Configure structured logging with PII filtering"""
    import logging

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            pii_filter_processor,  # Filter PII before rendering
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

"""
Resilience for outbound Stripe calls

- a circuit breaker that stops calling Stripe after repeated transport failures
- exponential backoff retry, used only for calls that are safe to repeat
- a hard deadline per call

Timeouts are reported as TimeoutError and left for the caller to interpret:
for a transfer, a timeout means "outcome unknown", not "failed".
"""

import asyncio
import random
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

import structlog

from graymall.core.monitoring import (
    CIRCUIT_BREAKER_FAILURES,
    CIRCUIT_BREAKER_REJECTIONS,
    CIRCUIT_BREAKER_STATE,
    CIRCUIT_BREAKER_SUCCESSES,
    OPERATION_TIMEOUTS,
    RETRY_ATTEMPTS,
    RETRY_EXHAUSTED,
    RETRY_SUCCESSES,
)

logger = structlog.get_logger()

T = TypeVar("T")

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")


def sanitize_log_message(message, max_length: int = 500) -> str:
    """Strip control characters from provider error text and cap its length."""
    sanitized = _CONTROL_CHARS.sub(" ", str(message))
    if len(sanitized) > max_length:
        return sanitized[:max_length] + "...[truncated]"
    return sanitized


# ===========================================
# Circuit Breaker
# ===========================================


class CircuitState(Enum):
    CLOSED = 0
    OPEN = 1
    HALF_OPEN = 2


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5  # consecutive failures before opening
    success_threshold: int = 2  # half-open successes before closing
    timeout: float = 60.0  # seconds open before a half-open probe


class CircuitBreaker:
    """
    Breaker shared by every StripeService instance in the process.

    CLOSED lets calls through, OPEN rejects them until ``timeout`` has
    passed, HALF_OPEN lets probes through and closes again after
    ``success_threshold`` successes. Any failure while half-open reopens it.
    """

    def __init__(self, name: str, config: CircuitBreakerConfig):
        self.name = name
        self.config = config
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: Optional[float] = None
        self._lock = asyncio.Lock()

        CIRCUIT_BREAKER_STATE.labels(service=name).set(CircuitState.CLOSED.value)

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    def _set_state(self, state: CircuitState) -> None:
        self._state = state
        CIRCUIT_BREAKER_STATE.labels(service=self.name).set(state.value)

    async def _check_state(self) -> bool:
        """True when a call may go out."""
        async with self._lock:
            if self._state != CircuitState.OPEN:
                return True

            if self._opened_at is not None and time.time() - self._opened_at >= self.config.timeout:
                self._success_count = 0
                self._set_state(CircuitState.HALF_OPEN)
                logger.info("Circuit breaker half-open", service=self.name)
                return True

            CIRCUIT_BREAKER_REJECTIONS.labels(service=self.name).inc()
            return False

    async def _record_success(self) -> None:
        async with self._lock:
            CIRCUIT_BREAKER_SUCCESSES.labels(service=self.name).inc()
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._failure_count = 0
                    self._set_state(CircuitState.CLOSED)
                    logger.info("Circuit breaker closed", service=self.name)
            else:
                self._failure_count = 0

    async def _record_failure(self, exception: Exception) -> None:
        async with self._lock:
            CIRCUIT_BREAKER_FAILURES.labels(service=self.name).inc()
            self._failure_count += 1

            if self._state == CircuitState.HALF_OPEN or (
                self._state == CircuitState.CLOSED and self._failure_count >= self.config.failure_threshold
            ):
                self._opened_at = time.time()
                self._set_state(CircuitState.OPEN)
                logger.warning(
                    "Circuit breaker opened",
                    service=self.name,
                    failures=self._failure_count,
                    error_type=type(exception).__name__,
                )

    def reset(self) -> None:
        """Force the breaker closed (tests and manual recovery)."""
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = None
        self._set_state(CircuitState.CLOSED)


# ===========================================
# Retry
# ===========================================


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    retryable_exceptions: Tuple[Type[BaseException], ...] = (ConnectionError, TimeoutError, asyncio.TimeoutError)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Exponential backoff with +/-25% jitter."""
    delay = min(config.base_delay * (2 ** (attempt - 1)), config.max_delay)
    return delay * (0.75 + random.random() * 0.5)


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args,
    config: RetryConfig,
    service_name: str,
    operation: str,
    **kwargs,
) -> T:
    """
    Await ``func`` until it succeeds, raises a non-retryable error, or
    ``config.max_attempts`` is used up. The last error is re-raised.
    """
    for attempt in range(1, config.max_attempts + 1):
        if attempt > 1:
            RETRY_ATTEMPTS.labels(service=service_name, operation=operation).inc()
        try:
            result = await func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt == config.max_attempts:
                RETRY_EXHAUSTED.labels(service=service_name, operation=operation).inc()
                logger.error(
                    "Retries exhausted",
                    service=service_name,
                    operation=operation,
                    attempts=attempt,
                    error=sanitize_log_message(e),
                )
                raise

            delay = calculate_delay(attempt, config)
            logger.warning(
                "Retrying after transient error",
                service=service_name,
                operation=operation,
                attempt=attempt,
                delay=round(delay, 2),
                error=sanitize_log_message(e),
            )
            await asyncio.sleep(delay)
        else:
            if attempt > 1:
                RETRY_SUCCESSES.labels(service=service_name, operation=operation).inc()
            return result

    raise RuntimeError("retry_async called with max_attempts < 1")


# ===========================================
# Deadline
# ===========================================


async def with_timeout(
    func: Callable[..., Awaitable[T]],
    *args,
    timeout: float,
    service_name: str,
    operation: str,
    **kwargs,
) -> T:
    """Await ``func`` for at most ``timeout`` seconds, then raise TimeoutError."""
    try:
        return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout)
    except asyncio.TimeoutError:
        OPERATION_TIMEOUTS.labels(service=service_name, operation=operation).inc()
        logger.error("External call timed out", service=service_name, operation=operation, timeout=timeout)
        raise TimeoutError(f"{service_name}.{operation} timed out after {timeout}s")


STRIPE_CIRCUIT_CONFIG = CircuitBreakerConfig(failure_threshold=5, success_threshold=2, timeout=60.0)

STRIPE_RETRY_CONFIG = RetryConfig(max_attempts=3, base_delay=1.0, max_delay=10.0)

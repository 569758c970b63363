"""Circuit breakers and retry for the broker and the database.

Each external dependency gets one process-wide breaker. A breaker only
counts errors that say something about the dependency's health: a broker
answering "no such connection" is a healthy broker, so a breaker can be
given an ``expected`` classifier whose matches count as successes.
"""

import asyncio
import contextlib
import enum
import functools
import logging
import random
import threading
import time
from collections.abc import Awaitable, Callable, Iterator
from typing import Any, ParamSpec, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")
P = ParamSpec("P")


def is_not_found(exc: BaseException) -> bool:
    """Whether an error reports a missing resource rather than an outage."""
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "response", None), "status_code", None)
    if status == 404:
        return True
    return "not found" in str(exc).lower()


# ---------------------------------------------------------------------------
# Circuit Breaker
# ---------------------------------------------------------------------------


class CircuitState(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """A call was refused because the dependency is considered down."""

    def __init__(self, service_name: str, retry_after: float = 0.0) -> None:
        self.service_name = service_name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker is open for {service_name}")


_breakers: dict[str, "CircuitBreaker"] = {}
_breakers_lock = threading.Lock()


def get_all_circuit_breakers() -> dict[str, "CircuitBreaker"]:
    """Snapshot of every breaker, keyed by service name, for /health."""
    with _breakers_lock:
        return dict(_breakers)


class CircuitBreaker:
    """Consecutive-failure breaker for one external dependency.

    CLOSED until ``failure_threshold`` unexpected errors in a row, then OPEN
    for ``recovery_timeout`` seconds. After that it is HALF_OPEN and needs
    ``success_threshold`` successes in a row to close; one failure reopens it.

    Args:
        service_name: Name used in logs and in the /health snapshot.
        failure_threshold: Consecutive failures that open the circuit.
        recovery_timeout: Seconds spent OPEN before probing again.
        success_threshold: Consecutive HALF_OPEN successes that close it.
        expected: Errors for which this returns True are the dependency
            answering normally and count as successes.
    """

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        success_threshold: int = 3,
        expected: Callable[[BaseException], bool] | None = None,
    ) -> None:
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self._expected = expected

        self._failures = 0
        self._half_open_successes = 0
        self._opened_at = 0.0
        self._state = CircuitState.CLOSED
        self._lock = threading.Lock()

        with _breakers_lock:
            _breakers[service_name] = self

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if self._state == CircuitState.OPEN and self._opened_at > 0:
                waited = time.monotonic() - self._opened_at
                if waited >= self.recovery_timeout:
                    self._state = CircuitState.HALF_OPEN
                    self._half_open_successes = 0
                    logger.warning(
                        "Circuit breaker HALF_OPEN for %s after %.1fs", self.service_name, waited
                    )
            return self._state

    def check(self) -> None:
        """Raise ``CircuitBreakerOpen`` while the circuit is open."""
        if self.state == CircuitState.OPEN:
            remaining = self.recovery_timeout - (time.monotonic() - self._opened_at)
            raise CircuitBreakerOpen(self.service_name, retry_after=max(0.0, remaining))

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.HALF_OPEN:
                self._failures = 0
                return
            self._half_open_successes += 1
            if self._half_open_successes >= self.success_threshold:
                logger.warning("Circuit breaker CLOSED for %s", self.service_name)
                self._state = CircuitState.CLOSED
                self._failures = 0
                self._half_open_successes = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._opened_at = time.monotonic()
            if self._state == CircuitState.HALF_OPEN:
                logger.warning("Circuit breaker re-OPENED for %s", self.service_name)
                self._state = CircuitState.OPEN
                self._half_open_successes = 0
            elif self._failures >= self.failure_threshold and self._state != CircuitState.OPEN:
                logger.warning(
                    "Circuit breaker OPEN for %s after %d consecutive failures",
                    self.service_name,
                    self._failures,
                )
                self._state = CircuitState.OPEN

    def record_outcome(self, exc: BaseException | None) -> None:
        """Count a finished call; expected errors count as successes."""
        if exc is None or (self._expected is not None and self._expected(exc)):
            self.record_success()
        else:
            self.record_failure()

    @contextlib.contextmanager
    def protect(self) -> Iterator[None]:
        """Guard one call: refuse it while open, then record how it ended.

        Raises:
            CircuitBreakerOpen: The circuit is open; the call is not made.
        """
        self.check()
        try:
            yield
        except Exception as exc:
            self.record_outcome(exc)
            raise
        self.record_outcome(None)

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._half_open_successes = 0
            self._opened_at = 0.0
        logger.info("Circuit breaker RESET for %s", self.service_name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "service": self.service_name,
            "state": self.state.value,
            "failure_count": self._failures,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
        }


composio_circuit_breaker = CircuitBreaker(
    "composio",
    failure_threshold=5,
    recovery_timeout=60.0,
    success_threshold=3,
    expected=is_not_found,
)
supabase_circuit_breaker = CircuitBreaker(
    "supabase", failure_threshold=10, recovery_timeout=30.0, success_threshold=3,
)


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

# Transport errors worth another attempt. Broker "not found" is never here.
RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    ConnectionError,
    TimeoutError,
)


def _backoff(attempt: int, factor: float, cap: float) -> float:
    """Full-jitter delay for the given zero-based attempt."""
    return random.uniform(0, min(factor**attempt, cap))  # noqa: S311


def retry(
    max_retries: int = 3,
    backoff_factor: float = 2.0,
    retry_on: tuple[type[BaseException], ...] = RETRYABLE_EXCEPTIONS,
    max_delay: float = 30.0,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Retry an async function on transport errors with jittered backoff.

    ``max_retries`` counts attempts after the first one. Errors outside
    ``retry_on`` propagate immediately.
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if attempt >= max_retries:
                        logger.error(
                            "%s failed after %d retries: %s", func.__qualname__, max_retries, exc
                        )
                        raise
                    delay = _backoff(attempt, backoff_factor, max_delay)
                    attempt += 1
                    logger.warning(
                        "Retrying %s (%d/%d) after %s in %.2fs",
                        func.__qualname__,
                        attempt,
                        max_retries,
                        type(exc).__name__,
                        delay,
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator

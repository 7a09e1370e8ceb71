"""
Royalty Engine - Transfer Retry Policy

Ledger transfers are retried only when the failure is transient: a timeout,
a dropped connection, or an engine error whose ``retryable`` flag is set.
Balance and validation failures surface on the first attempt.

Waits grow exponentially from ``base_delay`` up to ``max_delay`` with a
symmetric jitter band. A per-collaborator circuit breaker stops new transfers
once the ledger has failed ``failure_threshold`` times in a row and lets a
single probe through after ``recovery_timeout`` seconds.

Usage:
    from retry_policy import RetryConfig, retry_call

    receipt = retry_call(ledger.transfer, args=(pool, author, amount, ref),
                         config=RetryConfig(max_attempts=3))

Environment Variables:
    ROYALTY_RETRY_MAX_ATTEMPTS=3
    ROYALTY_RETRY_BASE_DELAY=1.0
    ROYALTY_RETRY_MAX_DELAY=30.0
    ROYALTY_RETRY_EXPONENTIAL_BASE=2.0
    ROYALTY_RETRY_JITTER=0.1
"""

import logging
import os
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from errors import LedgerTransferError, RoyaltyEngineError

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS: tuple[type[Exception], ...] = (ConnectionError, TimeoutError)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class RetryConfig:
    """Backoff settings for one kind of collaborator call."""

    # Includes the first call
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: float = 0.1
    retryable_exceptions: tuple = TRANSIENT_ERRORS
    log_level: int = logging.WARNING

    @classmethod
    def from_env(cls) -> "RetryConfig":
        env = os.getenv
        return cls(
            max_attempts=int(env("ROYALTY_RETRY_MAX_ATTEMPTS", "3")),
            base_delay=float(env("ROYALTY_RETRY_BASE_DELAY", "1.0")),
            max_delay=float(env("ROYALTY_RETRY_MAX_DELAY", "30.0")),
            exponential_base=float(env("ROYALTY_RETRY_EXPONENTIAL_BASE", "2.0")),
            jitter=float(env("ROYALTY_RETRY_JITTER", "0.1")),
        )

    def delay_for(self, attempt: int) -> float:
        return calculate_delay(
            attempt, self.base_delay, self.exponential_base, self.max_delay, self.jitter
        )


@dataclass
class RetryStats:
    attempts: int = 0
    retries: int = 0
    total_delay: float = 0.0
    last_error: str | None = None

    def record_failure(self, error: Exception, delay: float | None = None):
        """Note a failed attempt. ``delay`` is given when another attempt follows."""
        self.last_error = str(error)
        if delay is None:
            return
        self.retries += 1
        self.total_delay += delay

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "retries": self.retries,
            "totalDelay": round(self.total_delay, 3),
            "lastError": self.last_error,
        }


class CircuitOpenError(LedgerTransferError):
    """The collaborator's breaker is open; the call was not attempted."""
    code = "CIRCUIT_OPEN"


class CircuitBreaker:
    """
    Consecutive-failure breaker for a single collaborator.

    CLOSED lets every call through. ``failure_threshold`` failures in a row
    move it to OPEN, which rejects calls until ``recovery_timeout`` has
    elapsed since the last failure. The breaker then reports HALF_OPEN: the
    next success closes it, the next failure opens it again.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0

    def _move_to(self, state: CircuitState, reason: str) -> None:
        log = logger.info if state is not CircuitState.OPEN else logger.warning
        log(f"Ledger circuit '{self.name}' {self._state.value} -> {state.value}: {reason}")
        self._state = state

    @property
    def state(self) -> CircuitState:
        with self._lock:
            cooled_down = self._clock() - self._opened_at >= self.recovery_timeout
            if self._state is CircuitState.OPEN and cooled_down:
                self._move_to(CircuitState.HALF_OPEN, "recovery timeout elapsed")
            return self._state

    def is_allowed(self) -> bool:
        return self.state is not CircuitState.OPEN

    def record_success(self):
        with self._lock:
            if self._state is not CircuitState.CLOSED:
                self._move_to(CircuitState.CLOSED, "probe succeeded")
            self._consecutive_failures = 0

    def record_failure(self):
        with self._lock:
            self._consecutive_failures += 1
            self._opened_at = self._clock()
            if self._state is CircuitState.HALF_OPEN:
                self._move_to(CircuitState.OPEN, "probe failed")
            elif (
                self._state is CircuitState.CLOSED
                and self._consecutive_failures >= self.failure_threshold
            ):
                self._move_to(
                    CircuitState.OPEN, f"{self._consecutive_failures} consecutive failures"
                )

    def reset(self):
        with self._lock:
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._opened_at = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failureCount": self._consecutive_failures,
        }


def calculate_delay(
    attempt: int,
    base_delay: float,
    exponential_base: float,
    max_delay: float,
    jitter: float,
) -> float:
    """
    Wait before retry number ``attempt + 1`` (attempt is 0-indexed).

    The capped exponential delay is moved by up to ``jitter`` of itself in
    either direction and never goes below zero.
    """
    delay = min(max_delay, base_delay * exponential_base**attempt)
    if jitter > 0:
        delay *= 1 + jitter * random.uniform(-1.0, 1.0)
    return max(0.0, delay)


def is_retryable_exception(exception: Exception, retryable_types: tuple) -> bool:
    if isinstance(exception, RoyaltyEngineError):
        return bool(exception.retryable)
    return isinstance(exception, retryable_types)


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict | None = None,
    config: RetryConfig | None = None,
    circuit_breaker: CircuitBreaker | None = None,
    sleep: Callable[[float], None] = time.sleep,
    stats: RetryStats | None = None,
    on_retry: Callable[[int, Exception, float], None] | None = None,
) -> Any:
    """
    Call ``func`` until it succeeds, fails terminally, or runs out of attempts.

    Raises the non-retryable error straight away, the last transient error
    once ``max_attempts`` is reached, or CircuitOpenError without calling
    ``func`` when the breaker is open. ``on_retry(attempt, error, delay)``
    runs before each wait; ``sleep`` is injectable so tests never block.
    """
    config = config or RetryConfig()
    kwargs = kwargs or {}
    stats = stats if stats is not None else RetryStats()
    label = getattr(func, "__name__", "call")
    attempts = max(1, config.max_attempts)

    attempt = 0
    while True:
        if circuit_breaker is not None and not circuit_breaker.is_allowed():
            raise CircuitOpenError(
                f"Ledger circuit '{circuit_breaker.name}' is open",
                transient=False,
                details={"circuit": circuit_breaker.name},
            )

        stats.attempts += 1
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_exception(e, config.retryable_exceptions):
                stats.record_failure(e)
                logger.log(config.log_level, f"{label} failed terminally: {e}")
                raise
            if circuit_breaker is not None:
                circuit_breaker.record_failure()
            if attempt + 1 >= attempts:
                stats.record_failure(e)
                logger.log(config.log_level, f"{label} failed after {attempts} attempts: {e}")
                raise

            delay = config.delay_for(attempt)
            stats.record_failure(e, delay)
            attempt += 1
            logger.log(
                config.log_level,
                f"{label} attempt {attempt}/{attempts} failed ({e}); retrying in {delay:.2f}s",
            )
            if on_retry:
                on_retry(attempt, e, delay)
            sleep(delay)
            continue

        if circuit_breaker is not None:
            circuit_breaker.record_success()
        return result

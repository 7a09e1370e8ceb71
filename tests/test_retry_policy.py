"""
Tests for retry with backoff and the circuit breaker.
"""

import pytest

from errors import InsufficientBalanceError, LedgerTransferError
from retry_policy import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    RetryConfig,
    RetryStats,
    calculate_delay,
    retry_call,
)


class Flaky:
    """Callable failing a set number of times before succeeding."""

    def __init__(self, failures, error=None):
        self.failures = failures
        self.error = error or ConnectionError("connection reset")
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def config():
    return RetryConfig(max_attempts=3, base_delay=1.0, max_delay=10.0, jitter=0.0)


class TestCalculateDelay:
    """Tests for backoff delays."""

    def test_exponential_growth(self):
        delays = [calculate_delay(a, 1.0, 2.0, 100.0, 0.0) for a in range(4)]
        assert delays == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        assert calculate_delay(10, 1.0, 2.0, 5.0, 0.0) == 5.0

    def test_jitter_stays_in_band(self):
        """Jitter moves the delay by at most the jitter fraction."""
        for _ in range(50):
            delay = calculate_delay(2, 1.0, 2.0, 100.0, 0.1)
            assert 3.6 <= delay <= 4.4


class TestRetryCall:
    """Tests for retry_call."""

    def test_succeeds_after_transient_failures(self, config, sleeps):
        func = Flaky(2)
        stats = RetryStats()

        assert retry_call(func, config=config, sleep=sleeps.append, stats=stats) == "ok"
        assert func.calls == 3
        assert sleeps == [1.0, 2.0]
        assert stats.attempts == 3
        assert stats.retries == 2

    def test_gives_up_after_max_attempts(self, config, sleeps):
        func = Flaky(5)
        with pytest.raises(ConnectionError):
            retry_call(func, config=config, sleep=sleeps.append)
        assert func.calls == 3
        assert len(sleeps) == 2

    def test_non_retryable_error_is_raised_immediately(self, config, sleeps):
        """Business errors are never retried."""
        func = Flaky(1, InsufficientBalanceError("too low"))
        with pytest.raises(InsufficientBalanceError):
            retry_call(func, config=config, sleep=sleeps.append)
        assert func.calls == 1
        assert sleeps == []

    def test_transient_ledger_error_is_retried(self, config, sleeps):
        func = Flaky(1, LedgerTransferError("timeout", transient=True))
        assert retry_call(func, config=config, sleep=sleeps.append) == "ok"
        assert func.calls == 2

    def test_terminal_ledger_error_is_not_retried(self, config, sleeps):
        func = Flaky(1, LedgerTransferError("rejected", transient=False))
        with pytest.raises(LedgerTransferError):
            retry_call(func, config=config, sleep=sleeps.append)
        assert func.calls == 1

    def test_on_retry_callback(self, config, sleeps):
        seen = []
        retry_call(
            Flaky(1),
            config=config,
            sleep=sleeps.append,
            on_retry=lambda attempt, error, delay: seen.append((attempt, delay)),
        )
        assert seen == [(1, 1.0)]

    def test_passes_arguments(self, config):
        assert retry_call(lambda a, b=0: a + b, args=(1,), kwargs={"b": 2}, config=config) == 3


class TestCircuitBreaker:
    """Tests for circuit breaker state transitions."""

    def test_opens_after_threshold(self, clock):
        breaker = CircuitBreaker("ledger", failure_threshold=2, recovery_timeout=30, clock=clock)
        breaker.record_failure()
        assert breaker.state is CircuitState.CLOSED
        breaker.record_failure()
        assert breaker.state is CircuitState.OPEN
        assert breaker.is_allowed() is False

    def test_half_open_after_recovery_timeout(self, clock):
        breaker = CircuitBreaker("ledger", failure_threshold=1, recovery_timeout=30, clock=clock)
        breaker.record_failure()
        clock.advance(30)
        assert breaker.state is CircuitState.HALF_OPEN
        breaker.record_success()
        assert breaker.state is CircuitState.CLOSED

    def test_half_open_failure_reopens(self, clock):
        breaker = CircuitBreaker("ledger", failure_threshold=1, recovery_timeout=30, clock=clock)
        breaker.record_failure()
        clock.advance(30)
        assert breaker.state is CircuitState.HALF_OPEN
        breaker.record_failure()
        assert breaker.state is CircuitState.OPEN

    def test_open_circuit_blocks_calls(self, clock, config):
        breaker = CircuitBreaker("ledger", failure_threshold=1, clock=clock)
        breaker.record_failure()
        func = Flaky(0)
        with pytest.raises(CircuitOpenError):
            retry_call(func, config=config, circuit_breaker=breaker)
        assert func.calls == 0

    def test_retry_failures_trip_the_breaker(self, clock, config, sleeps):
        breaker = CircuitBreaker("ledger", failure_threshold=3, clock=clock)
        with pytest.raises(ConnectionError):
            retry_call(Flaky(10), config=config, circuit_breaker=breaker, sleep=sleeps.append)
        assert breaker.state is CircuitState.OPEN
        assert breaker.to_dict()["failureCount"] == 3

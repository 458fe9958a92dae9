"""
Tests for SealedGallery Retry Logic with Exponential Backoff.

Tests:
- RetryConfig configuration
- CircuitBreaker state management
- calculate_delay function
- retry_call function
- retry_with_backoff decorator
- Gallery errors that are (and are not) retryable
"""

import os
import sys
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from errors import (
    AuthorityUnavailableError,
    BlobStoreUnavailableError,
    IntegrityError,
    NotAuthorizedError,
)
from retry import (
    CircuitBreaker,
    CircuitState,
    NonRetryableError,
    RetryableError,
    RetryConfig,
    calculate_delay,
    get_circuit_breaker,
    is_retryable_exception,
    retry_call,
    retry_with_backoff,
)

NO_JITTER = RetryConfig(max_retries=3, base_delay=1.0, jitter=0)


class TestRetryConfig:
    """Tests for RetryConfig dataclass."""

    def test_default_config(self):
        config = RetryConfig()
        assert config.max_retries == 3
        assert config.base_delay == 0.5
        assert config.max_delay == 10.0
        assert config.exponential_base == 2.0

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("RETRY_BASE_DELAY", "0.25")
        config = RetryConfig.from_env()
        assert config.max_retries == 5
        assert config.base_delay == 0.25


class TestRetryableClassification:
    """Which gallery errors trigger retries."""

    def test_transient_collaborator_errors_retryable(self):
        config = RetryConfig()
        assert is_retryable_exception(AuthorityUnavailableError("down"), config.retryable_exceptions)
        assert is_retryable_exception(BlobStoreUnavailableError("down"), config.retryable_exceptions)
        assert is_retryable_exception(ConnectionError(), config.retryable_exceptions)

    def test_decisions_not_retryable(self):
        config = RetryConfig()
        assert not is_retryable_exception(NotAuthorizedError("no"), config.retryable_exceptions)
        assert not is_retryable_exception(IntegrityError("bad tag"), config.retryable_exceptions)

    def test_non_retryable_marker_wins(self):
        class Both(RetryableError, NonRetryableError):
            pass

        assert not is_retryable_exception(Both(), (RetryableError,))


class TestCalculateDelay:
    """Tests for calculate_delay."""

    def test_exponential_growth(self):
        delays = [calculate_delay(n, 1.0, 2.0, 100.0, 0) for n in range(4)]
        assert delays == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        assert calculate_delay(10, 1.0, 2.0, 5.0, 0) == 5.0

    def test_jitter_bounds(self):
        for _ in range(50):
            delay = calculate_delay(0, 1.0, 2.0, 10.0, 0.1)
            assert 0.9 <= delay <= 1.1


class TestCircuitBreaker:
    """Tests for CircuitBreaker."""

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker("test-open", failure_threshold=2, recovery_timeout=60)
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert not breaker.is_allowed()

    def test_half_open_after_timeout(self):
        breaker = CircuitBreaker("test-half", failure_threshold=1, recovery_timeout=0)
        breaker.record_failure()
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_registry_returns_same_instance(self):
        assert get_circuit_breaker("registry-test") is get_circuit_breaker("registry-test")


class TestRetryCall:
    """Tests for retry_call."""

    def test_success_first_try(self):
        sleeps = []
        assert retry_call(lambda: 42, config=NO_JITTER, sleep=sleeps.append) == 42
        assert sleeps == []

    def test_retries_then_succeeds(self):
        attempts = []
        sleeps = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise AuthorityUnavailableError("try again")
            return "ok"

        assert retry_call(flaky, config=NO_JITTER, sleep=sleeps.append) == "ok"
        assert len(attempts) == 3
        assert sleeps == [1.0, 2.0]

    def test_reraises_last_error(self):
        sleeps = []

        def always_down():
            raise BlobStoreUnavailableError("down")

        with pytest.raises(BlobStoreUnavailableError):
            retry_call(always_down, config=NO_JITTER, sleep=sleeps.append)
        assert len(sleeps) == 3

    def test_non_retryable_propagates_immediately(self):
        calls = []

        def refused():
            calls.append(1)
            raise NotAuthorizedError("no")

        with pytest.raises(NotAuthorizedError):
            retry_call(refused, config=NO_JITTER, sleep=lambda _: None)
        assert len(calls) == 1

    def test_open_circuit_fails_fast(self):
        breaker = get_circuit_breaker("fail-fast-test")
        for _ in range(breaker.failure_threshold):
            breaker.record_failure()

        with pytest.raises(ConnectionError):
            retry_call(lambda: "never", circuit_breaker_name="fail-fast-test", sleep=lambda _: None)
        breaker.reset()

    def test_args_and_kwargs(self):
        assert retry_call(lambda a, b=0: a + b, args=(1,), kwargs={"b": 2}) == 3


class TestRetryWithBackoff:
    """Tests for the decorator form."""

    def test_decorator(self):
        attempts = []

        @retry_with_backoff(RetryConfig(max_retries=2, base_delay=0, jitter=0))
        def fetch(handle):
            attempts.append(handle)
            if len(attempts) == 1:
                raise BlobStoreUnavailableError("blip")
            return b"data"

        with patch("retry.time.sleep"):
            assert fetch("h") == b"data"
        assert attempts == ["h", "h"]
        assert fetch.__name__ == "fetch"

"""
SealedGallery - Retry Logic with Exponential Backoff

Two steps of the protocol talk to something that can be briefly
unreachable: the decrypt call to a remote authority and the ciphertext
fetch from a blob store. Both go through retry_call, each behind a named
circuit breaker ("authority", "blob_store") so a dead collaborator fails
fast instead of stalling every unlock.

Ledger mutations are never retried here. A purchase whose confirmation
was lost is resolved by re-checking access, not by paying again.

Usage:
    from retry import retry_call, RetryConfig

    package = retry_call(blob_store.fetch, args=(handle,),
                         config=RetryConfig.from_env(),
                         circuit_breaker_name="blob_store")

Environment Variables:
    RETRY_MAX_ATTEMPTS=3
    RETRY_BASE_DELAY=0.5
    RETRY_MAX_DELAY=10.0
    RETRY_EXPONENTIAL_BASE=2.0
    RETRY_JITTER=0.1
"""

import logging
import os
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from functools import wraps
from typing import Any, Callable

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """Marker for transient failures worth another attempt."""


class NonRetryableError(Exception):
    """Marker that wins over RetryableError when a class carries both."""


class CircuitOpenError(ConnectionError):
    """Raised without calling out while a circuit is open."""

    def __init__(self, name: str):
        super().__init__(f"Circuit breaker {name} is open")
        self.circuit = name


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class RetryConfig:
    """Backoff schedule: base_delay * exponential_base**attempt, capped, +/- jitter."""

    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0
    exponential_base: float = 2.0
    jitter: float = 0.1

    retryable_exceptions: tuple = (RetryableError, ConnectionError, TimeoutError)

    @classmethod
    def from_env(cls) -> "RetryConfig":
        """
        Read the RETRY_* variables.

        Raises:
            ValueError: If a variable is not a number
        """
        defaults = cls()
        return cls(
            max_retries=int(os.getenv("RETRY_MAX_ATTEMPTS", defaults.max_retries)),
            base_delay=float(os.getenv("RETRY_BASE_DELAY", defaults.base_delay)),
            max_delay=float(os.getenv("RETRY_MAX_DELAY", defaults.max_delay)),
            exponential_base=float(os.getenv("RETRY_EXPONENTIAL_BASE", defaults.exponential_base)),
            jitter=float(os.getenv("RETRY_JITTER", defaults.jitter)),
        )


class CircuitBreaker:
    """
    Fail-fast guard for one remote collaborator.

    `failure_threshold` consecutive retryable failures open the circuit.
    After `recovery_timeout` seconds it lets a probe through (HALF_OPEN);
    a success closes it, another failure reopens it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0

    def _transition(self, new_state: CircuitState) -> None:
        if new_state is not self._state:
            log = logger.warning if new_state is CircuitState.OPEN else logger.info
            log("Circuit %s: %s -> %s", self.name, self._state.name, new_state.name)
            self._state = new_state

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if (
                self._state is CircuitState.OPEN
                and self._clock() - self._opened_at >= self.recovery_timeout
            ):
                self._transition(CircuitState.HALF_OPEN)
            return self._state

    def is_allowed(self) -> bool:
        return self.state is not CircuitState.OPEN

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            self._consecutive_failures += 1
            probing = self._state is CircuitState.HALF_OPEN
            if probing or self._consecutive_failures >= self.failure_threshold:
                self._opened_at = self._clock()
                self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._opened_at = 0.0


_circuit_breakers: dict[str, CircuitBreaker] = {}
_registry_lock = threading.Lock()


def get_circuit_breaker(name: str, **kwargs) -> CircuitBreaker:
    """The process-wide breaker called `name`, created on first use."""
    with _registry_lock:
        breaker = _circuit_breakers.get(name)
        if breaker is None:
            breaker = _circuit_breakers[name] = CircuitBreaker(name, **kwargs)
        return breaker


def reset_circuit_breakers() -> None:
    """Close every registered breaker."""
    with _registry_lock:
        for breaker in _circuit_breakers.values():
            breaker.reset()


def calculate_delay(
    attempt: int,
    base_delay: float,
    exponential_base: float,
    max_delay: float,
    jitter: float,
) -> float:
    """Seconds to wait before retry number `attempt` (0-indexed)."""
    delay = min(base_delay * exponential_base ** attempt, max_delay)
    if jitter > 0:
        delay *= 1 + random.uniform(-jitter, jitter)
    return max(0.0, delay)


def is_retryable_exception(exception: Exception, retryable_types: tuple) -> bool:
    return not isinstance(exception, NonRetryableError) and isinstance(exception, retryable_types)


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict | None = None,
    config: RetryConfig | None = None,
    circuit_breaker_name: str | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Call `func`, retrying transient failures with exponential backoff.

    Exceptions that are not retryable propagate from the first attempt.
    After `config.max_retries` retries the last error is re-raised.

    Args:
        func: Callable to invoke
        args: Positional arguments for func
        kwargs: Keyword arguments for func
        config: Backoff schedule; defaults to RetryConfig()
        circuit_breaker_name: Guard the call with this named breaker
        sleep: Called with each delay

    Raises:
        CircuitOpenError: The named circuit is open
    """
    config = config or RetryConfig()
    kwargs = kwargs or {}
    breaker = get_circuit_breaker(circuit_breaker_name) if circuit_breaker_name else None
    label = getattr(func, "__qualname__", None) or repr(func)

    attempt = 0
    while True:
        if breaker is not None and not breaker.is_allowed():
            raise CircuitOpenError(breaker.name)
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_exception(e, config.retryable_exceptions):
                raise
            if breaker is not None:
                breaker.record_failure()
            if attempt >= config.max_retries:
                logger.error("Giving up on %s after %d attempts: %s", label, attempt + 1, e)
                raise
            delay = calculate_delay(
                attempt, config.base_delay, config.exponential_base, config.max_delay, config.jitter
            )
            attempt += 1
            logger.warning(
                "%s failed (%s); retry %d/%d in %.2fs", label, e, attempt, config.max_retries, delay
            )
            sleep(delay)
        else:
            if breaker is not None:
                breaker.record_success()
            return result


def retry_with_backoff(config: RetryConfig | None = None, circuit_breaker_name: str | None = None):
    """
    Decorator form of retry_call.

    Usage:
        @retry_with_backoff(RetryConfig(max_retries=2), circuit_breaker_name="blob_store")
        def fetch(handle): ...
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return retry_call(
                func, args=args, kwargs=kwargs, config=config, circuit_breaker_name=circuit_breaker_name
            )

        return wrapper

    return decorator

"""Backoff helpers shared by the sync coordinator and the auth refresh."""

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

__all__ = [
    "RetryConfig",
    "RetryExhausted",
    "PassBackoff",
    "NetworkReachabilityCache",
    "calculate_delay",
    "retry_with_backoff",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 60.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = True


class RetryExhausted(Exception):
    """All retry attempts exhausted."""

    def __init__(self, attempts: int, last_error: Optional[Exception] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Retry exhausted after {attempts} attempts")


def calculate_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
) -> float:
    """Calculate delay for a retry attempt with exponential backoff.

    Args:
        attempt: Current attempt number (0-indexed)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap
        exponential_base: Base for exponential calculation
        jitter: Whether to add +/- 25% random jitter

    Returns:
        Delay in seconds
    """
    delay = min(base_delay * (exponential_base ** attempt), max_delay)

    if jitter:
        spread = delay * 0.25
        delay += random.uniform(-spread, spread)

    return max(0.0, delay)


def retry_with_backoff(
    func: Callable[[], T],
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    retryable_exceptions: tuple = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Execute a function with exponential backoff retry.

    Args:
        func: Function to execute
        config: Retry configuration
        on_retry: Callback called before each retry (attempt, error, delay)
        retryable_exceptions: Exceptions that trigger another attempt
        sleep: Sleep function (replaced in tests)

    Raises:
        RetryExhausted: If all attempts fail
        Exception: Any non-retryable exception, unchanged
    """
    if config is None:
        config = RetryConfig()

    last_error: Optional[Exception] = None

    for attempt in range(config.max_retries + 1):
        try:
            return func()
        except retryable_exceptions as e:
            last_error = e
            if attempt >= config.max_retries:
                break

            delay = calculate_delay(
                attempt,
                config.base_delay,
                config.max_delay,
                config.exponential_base,
                config.jitter,
            )
            if on_retry:
                on_retry(attempt, e, delay)
            else:
                logger.warning(f"Attempt {attempt + 1} failed: {e}. Retrying in {delay:.1f}s...")
            sleep(delay)

    raise RetryExhausted(config.max_retries + 1, last_error)


class PassBackoff:
    """Tracks consecutive failed sync passes and the delay before the next one.

    The delay starts at the regular interval and doubles per failure up to
    ``max_delay``; one success resets it.
    """

    def __init__(self, base_delay: float, max_delay: float = 600.0, jitter: bool = True):
        self.base_delay = base_delay
        self.max_delay = max(max_delay, base_delay)
        self.jitter = jitter
        self._failures = 0
        self._lock = threading.Lock()

    @property
    def failures(self) -> int:
        return self._failures

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0

    def record_failure(self) -> float:
        """Count a failure and return the delay before the next pass."""
        with self._lock:
            self._failures += 1
            return calculate_delay(
                self._failures,
                base_delay=self.base_delay,
                max_delay=self.max_delay,
                jitter=self.jitter,
            )

    def next_delay(self) -> float:
        with self._lock:
            if self._failures == 0:
                return self.base_delay
            return calculate_delay(
                self._failures,
                base_delay=self.base_delay,
                max_delay=self.max_delay,
                jitter=self.jitter,
            )


class NetworkReachabilityCache:
    """Caches backend reachability to avoid probing on every pass."""

    def __init__(self, ttl_seconds: float = 30.0):
        self.ttl = ttl_seconds
        self._cache: dict[str, tuple[bool, float]] = {}

    def get(self, key: str) -> Optional[bool]:
        """Get cached reachability status.

        Returns:
            Cached status, or None if expired/missing
        """
        if key not in self._cache:
            return None

        status, timestamp = self._cache[key]
        if time.monotonic() - timestamp > self.ttl:
            del self._cache[key]
            return None
        return status

    def set(self, key: str, status: bool) -> None:
        self._cache[key] = (status, time.monotonic())

    def invalidate(self, key: Optional[str] = None) -> None:
        """Invalidate one key, or everything."""
        if key:
            self._cache.pop(key, None)
        else:
            self._cache.clear()

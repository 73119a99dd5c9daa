"""
Token-bucket rate limiting for outbound chat platform calls.

Every platform call goes through ``RateLimiter.call``. State is
process-local: each process bounds its own call volume and treats the
platform's aggregate limit as under-subscribed.
"""

import time
import logging
import threading
from dataclasses import dataclass, asdict
from typing import Callable, Dict, Any, Optional, TypeVar

from .exceptions import ShutdownError, ThrottledError
from .metrics import metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Refill arithmetic can land a hair under a whole token
TOKEN_EPSILON = 1e-6


@dataclass
class RateLimiterMetrics:
    """Point-in-time snapshot of the limiter."""
    total_requests: int
    total_throttled: int
    total_errors: int
    current_tokens: int
    is_backing_off: bool
    backoff_remaining_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RateLimiter:
    """
    Token bucket with automatic backoff and retry on throttling.

    One limiter is shared by the poller thread and foreground callers, so
    token and backoff bookkeeping happen under a lock. Waits happen outside
    the lock and the admission check is repeated after every wait.

    Args:
        burst: Bucket capacity (calls allowed without waiting)
        per_minute: Refill rate in tokens per minute
        backoff_base_ms: First backoff window after a throttle
        backoff_max_ms: Cap on any single backoff window
        max_retries: Retries after a throttled attempt before giving up
        clock: Monotonic clock returning seconds (injectable for tests)
        sleep: Sleep function taking seconds (injectable for tests);
            defaults to an interruptible wait on ``stop_event``
        stop_event: Set on shutdown; a pending wait then raises ShutdownError
    """

    def __init__(
        self,
        burst: int = 10,
        per_minute: float = 45,
        backoff_base_ms: int = 2000,
        backoff_max_ms: int = 60000,
        max_retries: int = 3,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Any]] = None,
        stop_event: Optional[threading.Event] = None
    ):
        self.burst = burst
        self.tokens_per_ms = per_minute / 60000.0
        self.backoff_base_ms = backoff_base_ms
        self.backoff_max_ms = backoff_max_ms
        self.max_retries = max_retries
        self._clock = clock
        self._sleep = sleep
        self.stop_event = stop_event
        self._lock = threading.Lock()

        self.tokens = float(burst)
        self.last_refill = self._now_ms()
        self.backoff_until = 0.0
        self.consecutive_errors = 0

        self.total_requests = 0
        self.total_throttled = 0
        self.total_errors = 0

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _refill(self):
        now = self._now_ms()
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(self.burst, self.tokens + elapsed * self.tokens_per_ms)
            self.last_refill = now

    def _stopping(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()

    def _pause(self, seconds: float, operation: str):
        if self._stopping():
            raise ShutdownError(f"{operation} abandoned: shutting down", operation=operation)
        if self._sleep is not None:
            self._sleep(seconds)
        elif self.stop_event is not None:
            self.stop_event.wait(seconds)
        else:
            time.sleep(seconds)
        if self._stopping():
            raise ShutdownError(f"{operation} abandoned: shutting down", operation=operation)

    def _try_take_token(self) -> float:
        """Take a token and return 0, or return the ms to wait for one."""
        with self._lock:
            self._refill()
            if self.tokens >= 1 - TOKEN_EPSILON:
                self.tokens = max(0.0, self.tokens - 1)
                metrics.set_tokens(self.tokens)
                return 0.0
            return (1 - self.tokens) / self.tokens_per_ms

    def _wait_for_token(self, operation: str):
        while True:
            wait_ms = self._try_take_token()
            if wait_ms <= 0:
                return
            logger.debug(f"Rate limiter out of tokens, waiting {wait_ms:.0f}ms")
            self._pause(wait_ms / 1000.0, operation)

    def _wait_for_backoff(self, operation: str):
        while True:
            with self._lock:
                remaining = self.backoff_until - self._now_ms()
            if remaining <= 0:
                return
            logger.info(f"Backing off for {remaining:.0f}ms ({operation})")
            self._pause(remaining / 1000.0, operation)

    def backoff_for(self, retry_after: Optional[float]) -> float:
        """Backoff window in ms for the current consecutive error count."""
        exponential = self.backoff_base_ms * (2 ** (self.consecutive_errors - 1))
        hinted = retry_after * 1000.0 if retry_after else 0.0
        return min(max(hinted, exponential), self.backoff_max_ms)

    def call(self, operation: str, fn: Callable[[], T]) -> T:
        """
        Execute ``fn`` once a token is available, retrying on throttling.

        Raises:
            ThrottledError: The retry budget was exhausted
            ShutdownError: The stop event was set during a wait
            Exception: Any non-throttling error from ``fn``, unchanged
        """
        with self._lock:
            self.total_requests += 1
        metrics.record_request(operation)

        attempt = 0
        while True:
            self._wait_for_backoff(operation)
            self._wait_for_token(operation)

            try:
                result = fn()
            except ThrottledError as e:
                with self._lock:
                    self.total_throttled += 1
                    self.consecutive_errors += 1
                    backoff_ms = self.backoff_for(e.retry_after)
                    self.backoff_until = max(self.backoff_until, self._now_ms() + backoff_ms)
                    exhausted = attempt >= self.max_retries
                    if exhausted:
                        self.total_errors += 1
                metrics.record_throttled(operation)

                if exhausted:
                    metrics.record_error(operation)
                    logger.warning(
                        f"Rate limited ({operation}), retry budget of "
                        f"{self.max_retries} exhausted"
                    )
                    raise

                attempt += 1
                logger.warning(
                    f"Rate limited ({operation}), retry {attempt}/{self.max_retries} "
                    f"after {backoff_ms:.0f}ms"
                )
                continue
            except Exception:
                with self._lock:
                    self.total_errors += 1
                metrics.record_error(operation)
                raise

            with self._lock:
                self.consecutive_errors = 0
            return result

    def metrics(self) -> RateLimiterMetrics:
        """Current counters, token level, and backoff state."""
        with self._lock:
            self._refill()
            remaining = max(0.0, self.backoff_until - self._now_ms())
            return RateLimiterMetrics(
                total_requests=self.total_requests,
                total_throttled=self.total_throttled,
                total_errors=self.total_errors,
                current_tokens=int(self.tokens),
                is_backing_off=remaining > 0,
                backoff_remaining_ms=int(remaining)
            )

    def reset_metrics(self):
        """Reset counters (diagnostics only)."""
        with self._lock:
            self.total_requests = 0
            self.total_throttled = 0
            self.total_errors = 0
            self.consecutive_errors = 0

"""
Backoff Delay Manager - retry delays and rate-limit hints for ESI requests

Computes the linear retry backoff used after 5xx/transport failures,
turns rate-limit response headers into a wait time, and keeps counters
of rate-limit events for the status endpoints.
"""
import threading
import time
from typing import Callable, Dict, Mapping, Optional

from ...utils.logger import get_logger

logger = get_logger('delay_manager')

# Reset hints are checked in this order
RATE_LIMIT_HEADERS = ('Retry-After', 'X-Ratelimit-Reset', 'X-ESI-Error-Limit-Reset')

# Header values above this are absolute epoch seconds, not relative waits
EPOCH_THRESHOLD = 1e9


class BackoffDelayManager:
    """Retry delay policy with rate-limit bookkeeping.

    Strategies:
    1. Linear backoff: attempt N waits ``base_delay * N`` seconds
    2. Rate limits: wait exactly as long as the server's reset hint says,
       or ``default_rate_limit_wait`` when no hint is present

    Example:
        >>> manager = BackoffDelayManager(base_delay=1.0)
        >>> manager.retry_delay(2)
        2.0
        >>> manager.rate_limit_wait({'Retry-After': '7'})
        7.0
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        default_rate_limit_wait: float = 60.0,
        clock: Callable[[], float] = time.time
    ):
        """Initialize the delay manager.

        Args:
            base_delay: Backoff unit in seconds
            max_delay: Upper bound for the retry backoff, reset hints are never shortened
            default_rate_limit_wait: Wait used when a rate limit has no reset hint
            clock: Wall clock in epoch seconds (injected by tests)
        """
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.default_rate_limit_wait = default_rate_limit_wait
        self._clock = clock

        self._rate_limit_count = 0
        self._retry_count = 0
        self._consecutive_success = 0
        self._last_rate_limit_wait: Optional[float] = None
        self._lock = threading.Lock()

    def retry_delay(self, attempt: int) -> float:
        """Backoff before retrying after the given (1-based) failed attempt."""
        with self._lock:
            self._retry_count += 1
            self._consecutive_success = 0
        return min(self.base_delay * attempt, self.max_delay)

    def rate_limit_wait(self, headers: Mapping[str, str]) -> float:
        """Seconds to wait after a rate-limited response.

        Args:
            headers: Response headers (case-insensitive mapping)

        Returns:
            Wait in seconds, never negative
        """
        wait = None
        for name in RATE_LIMIT_HEADERS:
            raw = headers.get(name)
            if raw is None:
                continue
            try:
                value = float(raw)
            except (TypeError, ValueError):
                logger.debug(f"[Backoff] Unparseable {name} header: {raw!r}")
                continue
            if value > EPOCH_THRESHOLD:
                value = value - self._clock()
            wait = max(value, 0.0)
            break

        if wait is None:
            wait = self.default_rate_limit_wait

        return wait

    def record_rate_limit(self, wait: float) -> None:
        """Record a rate limit event."""
        with self._lock:
            self._rate_limit_count += 1
            self._consecutive_success = 0
            self._last_rate_limit_wait = wait
            count = self._rate_limit_count
        logger.warning(f"[Backoff] Rate limit #{count}: waiting {wait:.1f}s")

    def record_success(self) -> None:
        """Record a successful request."""
        with self._lock:
            self._consecutive_success += 1

    def reset(self) -> None:
        """Reset counters."""
        with self._lock:
            self._rate_limit_count = 0
            self._retry_count = 0
            self._consecutive_success = 0
            self._last_rate_limit_wait = None
            logger.info("[Backoff] Counters reset")

    def get_stats(self) -> Dict:
        """Get current statistics.

        Returns:
            Dictionary with rate limit, retry and success counters
        """
        with self._lock:
            return {
                'rate_limit_count': self._rate_limit_count,
                'retry_count': self._retry_count,
                'consecutive_success': self._consecutive_success,
                'last_rate_limit_wait': self._last_rate_limit_wait,
            }

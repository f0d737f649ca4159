import time
from collections import defaultdict, deque
from typing import Any, Deque, Dict, Optional

from .logging import get_logger

logger = get_logger(__name__)


class RateLimiter:
    """Sliding window limiter for endpoints that trigger outbound probes.

    Each detection can issue up to three requests against a third-party
    server, so callers are throttled per client address.
    """

    def __init__(self, max_requests: int = 30, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.requests: Dict[str, Deque[float]] = defaultdict(deque)

    def _prune(self, identifier: str, now: float) -> Deque[float]:
        window_start = now - self.window_seconds
        request_times = self.requests[identifier]
        while request_times and request_times[0] < window_start:
            request_times.popleft()
        return request_times

    def is_allowed(self, identifier: str, now: Optional[float] = None) -> bool:
        """Record a request for `identifier` unless its window is full."""
        now = time.monotonic() if now is None else now
        request_times = self._prune(identifier, now)

        if len(request_times) >= self.max_requests:
            logger.warning("Rate limit exceeded", extra={'client': identifier})
            return False

        request_times.append(now)
        return True

    def reset(self) -> None:
        self.requests.clear()

    def get_stats(self, identifier: str) -> Dict[str, Any]:
        request_times = self._prune(identifier, time.monotonic())
        return {
            'current_requests': len(request_times),
            'max_requests': self.max_requests,
            'window_seconds': self.window_seconds,
            'remaining': max(0, self.max_requests - len(request_times)),
        }


_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter(max_requests: int = 30, window_seconds: int = 60) -> RateLimiter:
    """Get the process-wide rate limiter."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(max_requests=max_requests, window_seconds=window_seconds)
        logger.info(f"Initialized rate limiter: {max_requests} requests per {window_seconds}s")
    return _rate_limiter

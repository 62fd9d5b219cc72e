import time
from dataclasses import dataclass, field
from typing import Callable, Dict

from facesearch.core.config import settings
from facesearch.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class _Bucket:
    tokens: float
    updated_at: float


@dataclass
class TokenBucketLimiter:
    """
    Per-client token bucket.

    `capacity` requests are allowed in a burst and the bucket refills
    continuously at `capacity / window_seconds` tokens per second, so a
    client can never exceed `capacity` requests in any window.
    """
    name: str
    capacity: int
    window_seconds: float
    clock: Callable[[], float] = time.monotonic
    _buckets: Dict[str, _Bucket] = field(default_factory=dict)

    @property
    def refill_rate(self) -> float:
        return self.capacity / self.window_seconds

    def try_acquire(self, client_key: str) -> bool:
        now = self.clock()
        bucket = self._buckets.get(client_key)

        if bucket is None:
            bucket = _Bucket(tokens=float(self.capacity), updated_at=now)
            self._buckets[client_key] = bucket
        else:
            elapsed = max(0.0, now - bucket.updated_at)
            bucket.tokens = min(float(self.capacity), bucket.tokens + elapsed * self.refill_rate)
            bucket.updated_at = now

        if bucket.tokens >= 1.0:
            bucket.tokens -= 1.0
            return True

        logger.warning(
            f"Rate limit '{self.name}' exceeded",
            extra={"client_ip": client_key}
        )
        return False

    def prune(self) -> int:
        """Drops buckets that have fully refilled. Returns how many were removed."""
        now = self.clock()
        stale = [
            key for key, bucket in self._buckets.items()
            if bucket.tokens + (now - bucket.updated_at) * self.refill_rate >= self.capacity
        ]
        for key in stale:
            del self._buckets[key]
        return len(stale)

    def reset(self) -> None:
        self._buckets.clear()


# Process-wide limiters. The API dependencies consult these before dispatch.
global_limiter = TokenBucketLimiter(
    name="global",
    capacity=settings.RATE_LIMIT_MAX_REQUESTS,
    window_seconds=settings.RATE_LIMIT_WINDOW_MINUTES * 60,
)

face_limiter = TokenBucketLimiter(
    name="face_detection",
    capacity=settings.FACE_RATE_LIMIT_PER_MINUTE,
    window_seconds=60,
)

search_limiter = TokenBucketLimiter(
    name="video_search",
    capacity=settings.SEARCH_RATE_LIMIT_PER_5_MINUTES,
    window_seconds=5 * 60,
)


def reset_all_limiters() -> None:
    for limiter in (global_limiter, face_limiter, search_limiter):
        limiter.reset()


def prune_all_limiters() -> int:
    """Drops idle client buckets from every limiter. Returns how many were removed."""
    return sum(limiter.prune() for limiter in (global_limiter, face_limiter, search_limiter))

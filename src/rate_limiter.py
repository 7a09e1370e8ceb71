"""
Royalty Engine - Fixed Window Rate Limiting

Rate limiting for claims, notifications and detection suggestions with:
- Fixed windows keyed by (subject, action), e.g. "claim:0xabc..."
- In-memory store for single-instance deployments
- Redis-backed store for multi-instance deployments
- Peek (no side effects) separated from hit (consumes quota)
- Rate limit headers (X-RateLimit-*)

Usage:
    from rate_limiter import FixedWindowRateLimiter, MemoryRateLimitStore

    limiter = FixedWindowRateLimiter(MemoryRateLimitStore(), limit=10, window_seconds=3600)

    result = limiter.check_and_hit("claim:0xabc")
    if result.exceeded:
        return 429, {"retry_after": result.retry_after}

Environment Variables:
    ROYALTY_RATE_LIMIT_BACKEND=memory|redis
    ROYALTY_REDIS_URL=redis://localhost:6379/0
    ROYALTY_RATE_LIMIT_PREFIX=royalty:ratelimit:
    ROYALTY_CLAIMS_PER_HOUR=10
    ROYALTY_NOTIFICATIONS_PER_HOUR=10
"""

import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

import redis

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Configuration for rate limiting."""

    backend: str = "memory"

    claims_per_window: int = 10
    notifications_per_window: int = 10
    window_seconds: int = 3600

    redis_url: str = "redis://localhost:6379/0"
    redis_prefix: str = "royalty:ratelimit:"
    redis_timeout: float = 1.0

    @classmethod
    def from_env(cls) -> "RateLimitConfig":
        """Create configuration from environment variables."""
        return cls(
            backend=os.getenv("ROYALTY_RATE_LIMIT_BACKEND", "memory"),
            claims_per_window=int(os.getenv("ROYALTY_CLAIMS_PER_HOUR", "10")),
            notifications_per_window=int(os.getenv("ROYALTY_NOTIFICATIONS_PER_HOUR", "10")),
            window_seconds=int(os.getenv("ROYALTY_RATE_LIMIT_WINDOW", "3600")),
            redis_url=os.getenv("ROYALTY_REDIS_URL", "redis://localhost:6379/0"),
            redis_prefix=os.getenv("ROYALTY_RATE_LIMIT_PREFIX", "royalty:ratelimit:"),
            redis_timeout=float(os.getenv("ROYALTY_REDIS_TIMEOUT", "1.0")),
        )

    def create_store(self) -> "RateLimitStore":
        """Build the store selected by ``backend``."""
        if self.backend.lower() == "redis":
            logger.info("Rate limiter: Redis store")
            return RedisRateLimitStore(self.redis_url, self.redis_prefix, self.redis_timeout)
        logger.info("Rate limiter: Memory store")
        return MemoryRateLimitStore()


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    exceeded: bool
    count: int
    remaining: int
    limit: int
    reset_at: float  # Unix timestamp when window resets
    retry_after: int  # Seconds until retry allowed (0 if not exceeded)

    def to_headers(self) -> dict[str, str]:
        """Convert to rate limit response headers."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }
        if self.exceeded:
            headers["Retry-After"] = str(self.retry_after)
        return headers


@dataclass
class RateLimitCounter:
    """Counter for one key: count and the time its window resets."""

    count: int
    reset_at: float


class RateLimitStore(ABC):
    """Abstract base class for rate limit storage backends."""

    @abstractmethod
    def increment(self, key: str, window_seconds: int, now: float) -> RateLimitCounter:
        """
        Increment the counter for key, starting a new window if the old one expired.

        Args:
            key: The rate limit key (e.g., "claim:0xabc...")
            window_seconds: Window duration in seconds
            now: Current Unix time

        Returns:
            The counter after incrementing
        """
        pass

    @abstractmethod
    def increment_if_below(
        self, key: str, limit: int, window_seconds: int, now: float
    ) -> tuple[RateLimitCounter, bool]:
        """
        Atomically increment the counter only while it is below limit.

        Returns:
            Tuple of (counter, incremented)
        """
        pass

    @abstractmethod
    def get(self, key: str, now: float) -> RateLimitCounter | None:
        """Get the live counter for key, or None if no window is active."""
        pass

    @abstractmethod
    def reset(self, key: str) -> None:
        """Drop the counter for key."""
        pass

    @abstractmethod
    def cleanup_expired(self, now: float) -> int:
        """Remove expired counters. Returns the number removed."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the store is available."""
        pass


class MemoryRateLimitStore(RateLimitStore):
    """In-memory rate limit storage (single instance only)."""

    def __init__(self):
        self._counters: dict[str, RateLimitCounter] = {}
        self._lock = threading.Lock()

    def increment(self, key: str, window_seconds: int, now: float) -> RateLimitCounter:
        with self._lock:
            counter = self._counters.get(key)
            # Window resets once now passes reset_at
            if counter is None or now > counter.reset_at:
                counter = RateLimitCounter(count=0, reset_at=now + window_seconds)
                self._counters[key] = counter
            counter.count += 1
            return RateLimitCounter(counter.count, counter.reset_at)

    def increment_if_below(
        self, key: str, limit: int, window_seconds: int, now: float
    ) -> tuple[RateLimitCounter, bool]:
        with self._lock:
            counter = self._counters.get(key)
            if counter is None or now > counter.reset_at:
                counter = RateLimitCounter(count=0, reset_at=now + window_seconds)
                self._counters[key] = counter
            if counter.count >= limit:
                return RateLimitCounter(counter.count, counter.reset_at), False
            counter.count += 1
            return RateLimitCounter(counter.count, counter.reset_at), True

    def get(self, key: str, now: float) -> RateLimitCounter | None:
        with self._lock:
            counter = self._counters.get(key)
            if counter is None or now > counter.reset_at:
                return None
            return RateLimitCounter(counter.count, counter.reset_at)

    def reset(self, key: str) -> None:
        with self._lock:
            self._counters.pop(key, None)

    def cleanup_expired(self, now: float) -> int:
        with self._lock:
            expired = [k for k, c in self._counters.items() if now > c.reset_at]
            for k in expired:
                del self._counters[k]
            return len(expired)

    def is_available(self) -> bool:
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)


class RedisRateLimitStore(RateLimitStore):
    """
    Redis-backed rate limit storage for distributed deployments.

    Window expiry is delegated to Redis key TTLs, so cleanup is a no-op.
    """

    def __init__(self, url: str, prefix: str = "", timeout: float = 1.0, client=None):
        self.url = url
        self.prefix = prefix
        self.timeout = timeout
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = redis.from_url(
                self.url,
                socket_timeout=self.timeout,
                socket_connect_timeout=self.timeout,
                decode_responses=True,
            )
            logger.info(f"Rate limiter connected to Redis at {self.url}")
        return self._client

    def _full_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def increment(self, key: str, window_seconds: int, now: float) -> RateLimitCounter:
        """Atomic INCR with an expiry set only by the first hit of a window."""
        pipe = self._get_client().pipeline()
        full_key = self._full_key(key)
        pipe.incr(full_key)
        pipe.expire(full_key, window_seconds, nx=True)
        pipe.ttl(full_key)
        count, _, ttl = pipe.execute()

        reset_at = now + ttl if ttl and ttl > 0 else now + window_seconds
        return RateLimitCounter(count=int(count), reset_at=reset_at)

    def increment_if_below(
        self, key: str, limit: int, window_seconds: int, now: float
    ) -> tuple[RateLimitCounter, bool]:
        """Check-and-increment as one Lua script so concurrent callers cannot overshoot."""
        script = """
        local current = tonumber(redis.call("get", KEYS[1]) or "0")
        if current >= tonumber(ARGV[1]) then
            return {current, redis.call("ttl", KEYS[1]), 0}
        end
        current = redis.call("incr", KEYS[1])
        if current == 1 then
            redis.call("expire", KEYS[1], ARGV[2])
        end
        return {current, redis.call("ttl", KEYS[1]), 1}
        """
        count, ttl, incremented = self._get_client().eval(
            script, 1, self._full_key(key), limit, window_seconds
        )
        reset_at = now + ttl if ttl and ttl > 0 else now + window_seconds
        return RateLimitCounter(count=int(count), reset_at=reset_at), bool(incremented)

    def get(self, key: str, now: float) -> RateLimitCounter | None:
        pipe = self._get_client().pipeline()
        full_key = self._full_key(key)
        pipe.get(full_key)
        pipe.ttl(full_key)
        value, ttl = pipe.execute()
        if value is None or ttl is None or ttl < 0:
            return None
        return RateLimitCounter(count=int(value), reset_at=now + ttl)

    def reset(self, key: str) -> None:
        self._get_client().delete(self._full_key(key))

    def cleanup_expired(self, now: float) -> int:
        return 0

    def is_available(self) -> bool:
        try:
            return bool(self._get_client().ping())
        except redis.RedisError as e:
            logger.warning(f"Redis rate limit store unavailable: {e}")
            return False


class FixedWindowRateLimiter:
    """
    Fixed-window rate limiter.

    The (limit+1)-th hit inside one window is rejected; once the window's
    reset time has passed, the next hit starts a fresh window at count 1.
    """

    def __init__(
        self,
        store: RateLimitStore,
        limit: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
        name: str = "default",
    ):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window_seconds < 1:
            raise ValueError("window_seconds must be at least 1")
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self.name = name

    def _result(self, count: int, reset_at: float, exceeded: bool, now: float) -> RateLimitResult:
        return RateLimitResult(
            exceeded=exceeded,
            count=count,
            remaining=max(0, self.limit - count),
            limit=self.limit,
            reset_at=reset_at,
            retry_after=max(1, int(reset_at - now + 0.999)) if exceeded else 0,
        )

    def peek(self, key: str) -> RateLimitResult:
        """Report whether the next hit would be rejected, without consuming quota."""
        now = self.clock()
        counter = self.store.get(key, now)
        if counter is None:
            return self._result(0, now + self.window_seconds, False, now)
        return self._result(counter.count, counter.reset_at, counter.count >= self.limit, now)

    def hit(self, key: str) -> RateLimitResult:
        """Consume one unit of quota for key."""
        now = self.clock()
        counter = self.store.increment(key, self.window_seconds, now)
        return self._result(counter.count, counter.reset_at, counter.count > self.limit, now)

    def check_and_hit(self, key: str) -> RateLimitResult:
        """Consume quota only if the key is under its limit; a rejection changes nothing."""
        now = self.clock()
        counter, incremented = self.store.increment_if_below(
            key, self.limit, self.window_seconds, now
        )
        if not incremented:
            logger.warning(f"Rate limit '{self.name}' exceeded for {key}")
        return self._result(counter.count, counter.reset_at, not incremented, now)

    def reset(self, key: str) -> None:
        self.store.reset(key)

    def cleanup_expired(self) -> int:
        removed = self.store.cleanup_expired(self.clock())
        if removed:
            logger.debug(f"Rate limiter '{self.name}' dropped {removed} expired counters")
        return removed

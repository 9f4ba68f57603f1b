"""Fixed-window rate limiting and the sync-in-progress lock (Redis).

Rate limit: INCR-first per (policy, key, window) with EXPIRE on the first hit,
so every counter disappears with its window and memory stays bounded no matter
how many distinct callers appear.

Sync lock: SET NX EX with a random token; released only by the holder
(compare-and-delete). Best effort: it saves upstream API traffic, it does
not make concurrent runs correct (idempotent upserts do).
"""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Optional, Protocol

import redis

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    policy_id: str
    quota: int
    window: int
    remaining: int
    reset: int  # seconds until the window resets


class RateLimiter(Protocol):
    def check_rate_limit(self, key: str, policy_id: str) -> RateLimitResult: ...


class RedisRateLimiter:
    """Fixed-window limiter backed by Redis INCR/EXPIRE."""

    def __init__(self, redis_client: redis.Redis, quota: int = 10, window: int = 60):
        self.redis = redis_client
        self.quota = quota
        self.window = window

    def check_rate_limit(self, key: str, policy_id: str = "default") -> RateLimitResult:
        now = int(time.time())
        window_index = now // self.window
        redis_key = f"ratelimit:{policy_id}:{key}:{window_index}"

        # INCR-first (atomic)
        count = self.redis.incr(redis_key)
        if count == 1:
            self.redis.expire(redis_key, self.window)

        reset = self.window - (now % self.window)
        allowed = count <= self.quota
        if not allowed:
            logger.warning(
                "RATE_LIMITED",
                extra={"policy_id": policy_id, "count": count, "quota": self.quota},
            )

        return RateLimitResult(
            allowed=allowed,
            policy_id=policy_id,
            quota=self.quota,
            window=self.window,
            remaining=max(0, self.quota - count),
            reset=max(1, reset),
        )


class NoOpRateLimiter:
    """Always allows. Used in tests and when Redis is not configured."""

    def __init__(self, quota: int = 60, window: int = 60):
        self.quota = quota
        self.window = window

    def check_rate_limit(self, key: str, policy_id: str = "default") -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            policy_id=policy_id,
            quota=self.quota,
            window=self.window,
            remaining=self.quota,
            reset=self.window,
        )


# ============================================================================
# Sync-in-progress lock
# ============================================================================

_RELEASE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


class SyncLock(Protocol):
    def acquire(self) -> Optional[str]: ...

    def release(self, token: str) -> None: ...


class RedisSyncLock:
    """SET NX EX lock; the TTL frees it if the holder dies mid-run."""

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int = 600, key: str = "payments:sync:lock"):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.key = key

    def acquire(self) -> Optional[str]:
        token = uuid.uuid4().hex
        if self.redis.set(self.key, token, nx=True, ex=self.ttl_seconds):
            return token
        return None

    def release(self, token: str) -> None:
        try:
            self.redis.eval(_RELEASE_SCRIPT, 1, self.key, token)
        except redis.RedisError as exc:
            # TTL still bounds the lock lifetime
            logger.warning("SYNC_LOCK_RELEASE_FAILED", extra={"error_type": type(exc).__name__})


class NoOpSyncLock:
    """Always grants the lock (tests, single-process deployments)."""

    def acquire(self) -> Optional[str]:
        return "noop"

    def release(self, token: str) -> None:
        return None

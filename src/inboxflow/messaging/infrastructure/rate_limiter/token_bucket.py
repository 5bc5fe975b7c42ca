"""
Token Bucket Rate Limiter
Per-tenant send limits shared by every dispatcher worker
"""
from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol
from uuid import UUID

from redis.asyncio import Redis
from redis.exceptions import RedisError

from inboxflow.shared.infrastructure.observability.logger import get_logger

logger = get_logger(__name__)

Clock = Callable[[], float]

# Lua script for atomic token bucket operation
_TAKE_LUA = """
local key = KEYS[1]
local max_tokens = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local tokens_requested = tonumber(ARGV[3])
local now = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])

local bucket = redis.call('HMGET', key, 'tokens', 'last_refill')
local tokens = max_tokens
local last_refill = now
if bucket[1] and bucket[2] then
    tokens = tonumber(bucket[1])
    last_refill = tonumber(bucket[2])
end

-- Refill tokens based on elapsed time
local elapsed = math.max(0, now - last_refill)
tokens = math.min(max_tokens, tokens + elapsed * refill_rate)

local allowed = 0
if tokens >= tokens_requested then
    tokens = tokens - tokens_requested
    allowed = 1
end
redis.call('HSET', key, 'tokens', tostring(tokens), 'last_refill', tostring(now))
redis.call('EXPIRE', key, ttl)
return {allowed, tostring(tokens)}
"""


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: float
    # whole seconds until ``requested`` tokens are available again (0 when allowed)
    retry_after: int = 0


class BucketStore(Protocol):
    async def take(
        self, key: str, capacity: float, refill_rate: float, requested: float, now: float, ttl: int,
    ) -> tuple[bool, float]:
        """Refill, then subtract ``requested`` if available; returns (allowed, tokens left)."""

    async def read(self, key: str) -> Optional[tuple[float, float]]:
        """Stored (tokens, last_refill) or None."""

    async def delete(self, key: str) -> None: ...


class RedisBucketStore:
    def __init__(self, redis: Redis) -> None:
        self.redis = redis

    async def take(
        self, key: str, capacity: float, refill_rate: float, requested: float, now: float, ttl: int,
    ) -> tuple[bool, float]:
        allowed, tokens = await self.redis.eval(_TAKE_LUA, 1, key, capacity, refill_rate, requested, now, ttl)
        return int(allowed) == 1, float(tokens)

    async def read(self, key: str) -> Optional[tuple[float, float]]:
        tokens, last_refill = await self.redis.hmget(key, "tokens", "last_refill")
        if tokens is None or last_refill is None:
            return None
        return float(tokens), float(last_refill)

    async def delete(self, key: str) -> None:
        await self.redis.delete(key)


class InMemoryBucketStore:
    """
    Process-local store with the same refill arithmetic as the Lua script.

    Used for the queue-worker throughput caps and wherever Redis is not
    configured. TTL expiry is applied lazily on access.
    """

    def __init__(self) -> None:
        self._buckets: dict[str, tuple[float, float, float]] = {}
        self._lock = asyncio.Lock()

    async def take(
        self, key: str, capacity: float, refill_rate: float, requested: float, now: float, ttl: int,
    ) -> tuple[bool, float]:
        async with self._lock:
            tokens, last_refill, expires_at = self._buckets.get(key, (capacity, now, now + ttl))
            if expires_at <= now:
                tokens, last_refill = capacity, now
            elapsed = max(0.0, now - last_refill)
            tokens = min(capacity, tokens + elapsed * refill_rate)
            allowed = tokens >= requested
            if allowed:
                tokens -= requested
            self._buckets[key] = (tokens, now, now + ttl)
            return allowed, tokens

    async def read(self, key: str) -> Optional[tuple[float, float]]:
        entry = self._buckets.get(key)
        if entry is None:
            return None
        return entry[0], entry[1]

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._buckets.pop(key, None)


class TokenBucketRateLimiter:
    """
    Token bucket rate limiter.

    Algorithm:
    1. Bucket starts with ``capacity`` tokens
    2. Each consume takes ``n`` tokens
    3. Tokens refill lazily at ``refill_rate`` per second, capped at capacity
    4. If the bucket lacks ``n`` tokens, deny with the wait until it has them

    Storage errors fail open: sending is never blocked because the limiter
    backend is down.
    """

    def __init__(
        self,
        store: BucketStore,
        capacity: float,
        refill_rate: float,
        ttl_seconds: int = 300,
        clock: Clock = time.time,
    ) -> None:
        if capacity <= 0 or refill_rate <= 0:
            raise ValueError("capacity and refill_rate must be > 0")
        self.store = store
        self.capacity = float(capacity)
        self.refill_rate = float(refill_rate)
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def retry_after_for(self, tokens: float, requested: float = 1) -> int:
        return max(1, math.ceil((requested - tokens) / self.refill_rate))

    async def consume(self, key: str, tokens: float = 1) -> RateLimitDecision:
        try:
            allowed, remaining = await self.store.take(
                key, self.capacity, self.refill_rate, tokens, self.clock(), self.ttl_seconds,
            )
        except (RedisError, OSError) as e:
            logger.warning("rate_limiter_unavailable_fail_open", key=key, error=str(e))
            return RateLimitDecision(allowed=True, remaining=self.capacity)

        if allowed:
            return RateLimitDecision(allowed=True, remaining=remaining)

        retry_after = self.retry_after_for(remaining, tokens)
        logger.info("rate_limit_exceeded", key=key, tokens_requested=tokens, retry_after=retry_after)
        return RateLimitDecision(allowed=False, remaining=remaining, retry_after=retry_after)

    async def peek(self, key: str) -> float:
        """Tokens available right now, without consuming."""
        try:
            state = await self.store.read(key)
        except (RedisError, OSError) as e:
            logger.warning("rate_limiter_unavailable", key=key, error=str(e))
            return self.capacity
        if state is None:
            return self.capacity
        tokens, last_refill = state
        elapsed = max(0.0, self.clock() - last_refill)
        return min(self.capacity, tokens + elapsed * self.refill_rate)

    async def reset(self, key: str) -> None:
        await self.store.delete(key)

    async def wait_for_token(self, key: str) -> None:
        """Block until one token is consumed; used to cap worker throughput."""
        while True:
            decision = await self.consume(key)
            if decision.allowed:
                return
            await asyncio.sleep((1 - decision.remaining) / self.refill_rate)


def tenant_bucket_key(tenant_id: UUID | str) -> str:
    return f"rate-limit:tenant:{tenant_id}"


class TenantRateLimiter:
    """Resolves a per-tenant bucket (capacity = messages per minute, refill = capacity / 60 per second)."""

    def __init__(self, store: BucketStore, default_messages_per_minute: int = 60, ttl_seconds: int = 300, clock: Clock = time.time) -> None:
        self.store = store
        self.default_messages_per_minute = default_messages_per_minute
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def for_tenant(self, messages_per_minute: Optional[int] = None) -> TokenBucketRateLimiter:
        per_minute = messages_per_minute or self.default_messages_per_minute
        return TokenBucketRateLimiter(
            self.store,
            capacity=per_minute,
            refill_rate=per_minute / 60.0,
            ttl_seconds=self.ttl_seconds,
            clock=self.clock,
        )

    async def consume(self, tenant_id: UUID | str, messages_per_minute: Optional[int] = None, tokens: float = 1) -> RateLimitDecision:
        return await self.for_tenant(messages_per_minute).consume(tenant_bucket_key(tenant_id), tokens)

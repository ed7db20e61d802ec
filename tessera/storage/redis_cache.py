from __future__ import annotations

import hashlib
import time
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

REVOKED_REFRESH_KEY = "auth:revoked:refresh"
REVOKED_SESSION_KEY = "auth:revoked:session"


def _epoch(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


class RedisCache:
    """Thin Redis wrapper for revocation sets and rate limits.

    Revoked refresh-token hashes and session ids live in sorted sets scored
    by the time the entry stops mattering (the token or session expiry), so
    a single ``ZREMRANGEBYSCORE`` evicts everything stale.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Lua token bucket: atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def mark_refresh_revoked(self, token_hash: str, expires_at: datetime) -> None:
        await self.client.zadd(REVOKED_REFRESH_KEY, {token_hash: _epoch(expires_at)})

    async def is_refresh_revoked(self, token_hash: str, now: Optional[float] = None) -> bool:
        score = await self.client.zscore(REVOKED_REFRESH_KEY, token_hash)
        return score is not None and float(score) > (now if now is not None else time.time())

    async def revoke_session(self, session_id: str, expires_at: datetime) -> None:
        await self.client.zadd(REVOKED_SESSION_KEY, {session_id: _epoch(expires_at)})

    async def is_session_revoked(self, session_id: str, now: Optional[float] = None) -> bool:
        score = await self.client.zscore(REVOKED_SESSION_KEY, session_id)
        return score is not None and float(score) > (now if now is not None else time.time())

    async def sweep(self, now: Optional[float] = None) -> int:
        """Drop revocation entries whose underlying token or session has expired."""
        cutoff = now if now is not None else time.time()
        removed = 0
        for key in (REVOKED_REFRESH_KEY, REVOKED_SESSION_KEY):
            removed += int(await self.client.zremrangebyscore(key, "-inf", cutoff))
        return removed

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so client-controlled parts cannot collide on delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check rate limit using a Redis-backed token bucket.

        The Lua script refills and consumes atomically, so concurrent
        requests cannot overdraw the bucket.
        """

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def close(self) -> None:
        """Close the Redis connection pool on shutdown or runtime reset."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()

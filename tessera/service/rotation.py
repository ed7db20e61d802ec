from __future__ import annotations

import time
from datetime import datetime
from typing import Optional, Protocol

from redis.exceptions import RedisError

from tessera.logging import get_logger
from tessera.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class RotationManager(Protocol):
    """Fast-path revocation tracking in front of the relational store.

    Answers are advisory: a negative answer falls through to the database,
    which stays authoritative. Implementations must never raise on cache
    failure.
    """

    async def revoke_refresh_token(self, token_hash: str, expires_at: datetime) -> None: ...

    async def is_refresh_token_revoked(self, token_hash: str) -> bool: ...

    async def revoke_session(self, session_id: str, expires_at: datetime) -> None: ...

    async def is_session_revoked(self, session_id: str) -> bool: ...

    async def sweep(self) -> int: ...


class NullRotationManager:
    """Database-only revocation; every lookup defers to the store."""

    async def revoke_refresh_token(self, token_hash: str, expires_at: datetime) -> None:
        return None

    async def is_refresh_token_revoked(self, token_hash: str) -> bool:
        return False

    async def revoke_session(self, session_id: str, expires_at: datetime) -> None:
        return None

    async def is_session_revoked(self, session_id: str) -> bool:
        return False

    async def sweep(self) -> int:
        return 0


class RedisRotationManager:
    """Revocation sets kept in Redis sorted sets, swept by expiry score."""

    def __init__(self, cache: RedisCache) -> None:
        self.cache = cache

    async def revoke_refresh_token(self, token_hash: str, expires_at: datetime) -> None:
        try:
            await self.cache.mark_refresh_revoked(token_hash, expires_at)
        except (RedisError, OSError) as exc:
            logger.warning("rotation_cache_write_failed", kind="refresh", error=str(exc))

    async def is_refresh_token_revoked(self, token_hash: str) -> bool:
        try:
            return await self.cache.is_refresh_revoked(token_hash)
        except (RedisError, OSError) as exc:
            logger.warning("rotation_cache_read_failed", kind="refresh", error=str(exc))
            return False

    async def revoke_session(self, session_id: str, expires_at: datetime) -> None:
        try:
            await self.cache.revoke_session(session_id, expires_at)
        except (RedisError, OSError) as exc:
            logger.warning("rotation_cache_write_failed", kind="session", error=str(exc))

    async def is_session_revoked(self, session_id: str) -> bool:
        try:
            return await self.cache.is_session_revoked(session_id)
        except (RedisError, OSError) as exc:
            logger.warning("rotation_cache_read_failed", kind="session", error=str(exc))
            return False

    async def sweep(self, now: Optional[float] = None) -> int:
        try:
            removed = await self.cache.sweep(now if now is not None else time.time())
        except (RedisError, OSError) as exc:
            logger.warning("rotation_cache_sweep_failed", error=str(exc))
            return 0
        if removed:
            logger.info("rotation_cache_swept", removed=removed)
        return removed

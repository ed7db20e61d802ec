"""Tests for the revocation cache in front of the relational store."""

import time
from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tessera.service.errors import InvalidRefreshTokenError, SessionRevokedError
from tessera.service.rotation import NullRotationManager, RedisRotationManager
from tessera.service.sessions import SessionEngine
from tessera.storage.redis_cache import REVOKED_REFRESH_KEY, REVOKED_SESSION_KEY, RedisCache

ALICE_EMAIL = "alice@example.com"
ALICE_PASSWORD = "Str0ng!Pass1"


class FakeRedis:
    """Sorted-set subset of the redis.asyncio client."""

    def __init__(self):
        self.zsets = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("redis down")

    async def zadd(self, key, mapping):
        self._check()
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def zscore(self, key, member):
        self._check()
        return self.zsets.get(key, {}).get(member)

    async def zremrangebyscore(self, key, low, high):
        self._check()
        members = self.zsets.get(key, {})
        stale = [m for m, score in members.items() if score <= float(high)]
        for member in stale:
            del members[member]
        return len(stale)


def _cache(client) -> RedisCache:
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://unit-test"
    cache.socket_timeout = 1.0
    cache.client = client
    return cache


def _future(minutes=30):
    return datetime.now(timezone.utc) + timedelta(minutes=minutes)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def rotation(fake_redis):
    return RedisRotationManager(_cache(fake_redis))


class TestNullRotationManager:
    """Database-only mode answers every lookup negatively."""

    async def test_lookups_are_negative(self):
        manager = NullRotationManager()
        await manager.revoke_session("s", _future())
        await manager.revoke_refresh_token("h", _future())

        assert await manager.is_session_revoked("s") is False
        assert await manager.is_refresh_token_revoked("h") is False
        assert await manager.sweep() == 0


class TestRedisRotationManager:
    """Tests for the Redis-backed revocation sets."""

    async def test_revoked_entries_are_reported(self, rotation, fake_redis):
        await rotation.revoke_session("s-1", _future())
        await rotation.revoke_refresh_token("hash-1", _future())

        assert await rotation.is_session_revoked("s-1") is True
        assert await rotation.is_refresh_token_revoked("hash-1") is True
        assert await rotation.is_session_revoked("s-2") is False
        assert "s-1" in fake_redis.zsets[REVOKED_SESSION_KEY]
        assert "hash-1" in fake_redis.zsets[REVOKED_REFRESH_KEY]

    async def test_entries_past_expiry_are_ignored(self, rotation):
        await rotation.revoke_session("s-1", _future(minutes=-5))

        assert await rotation.is_session_revoked("s-1") is False

    async def test_sweep_drops_only_expired_entries(self, rotation, fake_redis):
        await rotation.revoke_session("old", _future(minutes=-5))
        await rotation.revoke_refresh_token("old-hash", _future(minutes=-5))
        await rotation.revoke_session("fresh", _future())

        removed = await rotation.sweep(now=time.time())

        assert removed == 2
        assert list(fake_redis.zsets[REVOKED_SESSION_KEY]) == ["fresh"]

    async def test_cache_failures_degrade_to_database(self, rotation, fake_redis):
        fake_redis.fail = True

        await rotation.revoke_session("s-1", _future())
        assert await rotation.is_session_revoked("s-1") is False
        assert await rotation.is_refresh_token_revoked("h") is False
        assert await rotation.sweep() == 0


class TestEngineWithRotationCache:
    """The engine mirrors committed revocations into the cache."""

    @pytest.fixture
    def cached_engine(self, store, credentials, keys, lockout, audit, settings, rotation):
        from tessera.service.tokens import TokenService

        tokens = TokenService.from_settings(keys, store, settings, rotation=rotation)
        engine = SessionEngine.from_settings(
            store,
            settings,
            credentials=credentials,
            keys=keys,
            lockout=lockout,
            tokens=tokens,
            audit=audit,
            rotation=rotation,
        )
        return engine

    async def test_logout_is_mirrored_into_cache(self, cached_engine, rotation, alice):
        login = await cached_engine.login(ALICE_EMAIL, ALICE_PASSWORD)

        await cached_engine.logout(login.session.session_id)

        assert await rotation.is_session_revoked(login.session.session_id) is True
        token_hash = cached_engine.tokens.hash_refresh_token(login.refresh_token)
        assert await rotation.is_refresh_token_revoked(token_hash) is True
        with pytest.raises(SessionRevokedError):
            await cached_engine.tokens.verify_access_token(login.access_token.token)

    async def test_cached_revocation_short_circuits_refresh(self, cached_engine, rotation, store, alice):
        login = await cached_engine.login(ALICE_EMAIL, ALICE_PASSWORD)
        token_hash = cached_engine.tokens.hash_refresh_token(login.refresh_token)
        await rotation.revoke_refresh_token(token_hash, _future())

        with pytest.raises(InvalidRefreshTokenError):
            await cached_engine.refresh(login.refresh_token)

        # The database row was never touched
        assert store.get_refresh_token(token_hash).used_at is None

    async def test_failed_transaction_leaves_cache_untouched(
        self, cached_engine, rotation, store, alice, monkeypatch
    ):
        login = await cached_engine.login(ALICE_EMAIL, ALICE_PASSWORD)

        def broken_revoke(*args, **kwargs):
            raise RuntimeError("write failed")

        monkeypatch.setattr(store, "revoke_session_refresh_tokens", broken_revoke)

        with pytest.raises(RuntimeError):
            await cached_engine.logout(login.session.session_id)

        assert await rotation.is_session_revoked(login.session.session_id) is False
        assert store.get_session(login.session.session_id).is_active is True

"""Tests for the Redis revocation and rate-limit backends.

The backends are exercised against an in-memory stand-in for the
``redis.asyncio`` client that implements the handful of commands they use.
"""

import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from sessionguard.service.rate_limit import RATE_LIMIT_PRESETS, RateLimiter
from sessionguard.service.revocation import RevocationStore
from sessionguard.storage.errors import StorageError
from sessionguard.storage.models import AttemptKind, Lockout, TokenRevocationReason
from sessionguard.storage.redis_cache import RedisRateLimitStorage, RedisRevocationStorage


def _bound(value):
    if isinstance(value, str):
        if value == "-inf":
            return float("-inf"), False
        if value == "+inf":
            return float("inf"), False
        if value.startswith("("):
            return float(value[1:]), True
    return float(value), False


def _in_range(score, low, high):
    low_value, low_exclusive = _bound(low)
    high_value, high_exclusive = _bound(high)
    above = score > low_value if low_exclusive else score >= low_value
    below = score < high_value if high_exclusive else score <= high_value
    return above and below


class FakeRedis:
    def __init__(self):
        self.strings = {}
        self.ttls = {}
        self.zsets = {}
        self.sets = {}

    async def get(self, key):
        return self.strings.get(key)

    async def set(self, key, value, ex=None):
        self.strings[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            for store in (self.strings, self.zsets, self.sets):
                if key in store:
                    del store[key]
                    removed += 1
        return removed

    async def zadd(self, key, mapping):
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        return added

    async def zrem(self, key, *members):
        zset = self.zsets.get(key, {})
        removed = 0
        for member in members:
            if zset.pop(member, None) is not None:
                removed += 1
        if key in self.zsets and not zset:
            del self.zsets[key]
        return removed

    async def zrangebyscore(self, key, low, high):
        zset = self.zsets.get(key, {})
        hits = [(score, member) for member, score in zset.items() if _in_range(score, low, high)]
        return [member for _, member in sorted(hits)]

    async def zremrangebyscore(self, key, low, high):
        stale = await self.zrangebyscore(key, low, high)
        return await self.zrem(key, *stale)

    async def zcard(self, key):
        return len(self.zsets.get(key, {}))

    async def sadd(self, key, *members):
        target = self.sets.setdefault(key, set())
        before = len(target)
        target.update(members)
        return len(target) - before

    async def srem(self, key, *members):
        target = self.sets.get(key, set())
        removed = len(target & set(members))
        target.difference_update(members)
        if key in self.sets and not target:
            del self.sets[key]
        return removed

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    def pipeline(self):
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.commands = []

    def __getattr__(self, name):
        command = getattr(self.client, name)

        def queue(*args, **kwargs):
            self.commands.append((command, args, kwargs))
            return self

        return queue

    async def execute(self):
        results = []
        for command, args, kwargs in self.commands:
            results.append(await command(*args, **kwargs))
        self.commands = []
        return results


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def revocation_storage(fake_redis):
    return RedisRevocationStorage(client=fake_redis)


@pytest.fixture
def rate_storage(fake_redis):
    return RedisRateLimitStorage(client=fake_redis)


class TestRedisRevocationStorage:
    async def test_add_and_lookup(self, revocation_storage, fake_redis, clock):
        store = RevocationStore(revocation_storage, clock=clock)
        await store.add(
            "jti-1",
            clock.now() + timedelta(minutes=15),
            TokenRevocationReason.LOGOUT,
            user_id="u1",
            metadata={"source": "web"},
        )

        entry = await store.get_entry("jti-1")

        assert entry.reason == TokenRevocationReason.LOGOUT
        assert entry.user_id == "u1"
        assert entry.metadata == {"source": "web"}
        assert entry.expires_at == clock.now() + timedelta(minutes=15)
        assert await store.is_revoked("jti-1") is True
        assert await store.size() == 1
        assert fake_redis.ttls["auth:revoked:jti-1"] >= 1

    async def test_liveness_uses_callers_clock(self, revocation_storage, clock):
        store = RevocationStore(revocation_storage, clock=clock)
        await store.add("jti-1", clock.now() + timedelta(seconds=30), TokenRevocationReason.SECURITY)

        clock.advance(seconds=31)

        assert await store.is_revoked("jti-1") is False

    async def test_cleanup_is_strict(self, revocation_storage, fake_redis, clock):
        store = RevocationStore(revocation_storage, clock=clock)
        await store.add("past", clock.now() - timedelta(seconds=1), TokenRevocationReason.EXPIRED)
        await store.add("boundary", clock.now(), TokenRevocationReason.LOGOUT)

        assert await store.cleanup() == 1
        assert await store.get_entry("past") is None
        assert await store.get_entry("boundary") is not None
        assert "auth:revoked:past" not in fake_redis.strings
        assert await store.size() == 1

    async def test_remove(self, revocation_storage, clock):
        store = RevocationStore(revocation_storage, clock=clock)
        await store.add("jti-1", clock.now() + timedelta(minutes=1), TokenRevocationReason.ADMIN)

        assert await store.remove("jti-1") is True
        assert await store.remove("jti-1") is False
        assert await store.size() == 0

    async def test_corrupt_entry_raises(self, revocation_storage, fake_redis, clock):
        fake_redis.strings["auth:revoked:bad"] = "{not json"

        with pytest.raises(StorageError):
            await revocation_storage.get("bad")

    async def test_redis_errors_become_storage_errors(self, revocation_storage, fake_redis, clock):
        fake_redis.get = AsyncMock(side_effect=RedisConnectionError("refused"))

        with pytest.raises(StorageError):
            await revocation_storage.is_revoked("jti-1", clock.now())

    def test_requires_url_or_client(self):
        with pytest.raises(StorageError):
            RedisRevocationStorage()

    async def test_close_leaves_injected_client(self, revocation_storage, fake_redis):
        fake_redis.aclose = AsyncMock()

        await revocation_storage.close()

        fake_redis.aclose.assert_not_awaited()


class TestRedisRateLimitStorage:
    async def test_lockout_flow(self, rate_storage, clock):
        limiter = RateLimiter(RATE_LIMIT_PRESETS["strict"], rate_storage, clock=clock)
        for _ in range(3):
            result = await limiter.record_attempt("10.0.0.1", AttemptKind.LOGIN, success=False)

        assert result.allowed is False
        assert result.locked_until == clock.now() + timedelta(hours=1)
        assert (await limiter.check_limit("10.0.0.1", AttemptKind.LOGIN)).allowed is False

        clock.advance(hours=1)
        reopened = await limiter.check_limit("10.0.0.1", AttemptKind.LOGIN)
        assert reopened.allowed is True
        assert reopened.current_attempts == 0

    async def test_identifiers_are_hashed_in_keys(self, rate_storage, fake_redis, clock):
        limiter = RateLimiter(RATE_LIMIT_PRESETS["strict"], rate_storage, clock=clock)
        await limiter.record_attempt("alice@example.com", AttemptKind.LOGIN, success=False)

        keys = list(fake_redis.zsets) + list(fake_redis.sets) + list(fake_redis.strings)
        assert keys
        assert not any("alice@example.com" in key for key in keys)

    async def test_identical_attempts_stay_distinct(self, rate_storage, clock):
        limiter = RateLimiter(RATE_LIMIT_PRESETS["lenient"], rate_storage, clock=clock)
        for _ in range(4):
            await limiter.record_attempt("10.0.0.1", AttemptKind.MFA, success=False)

        result = await limiter.check_limit("10.0.0.1", AttemptKind.MFA)

        assert result.current_attempts == 4

    async def test_success_clears_only_failures(self, rate_storage, clock):
        await rate_storage.set_lockout(
            Lockout("10.0.0.1", AttemptKind.LOGIN, clock.now() + timedelta(minutes=5))
        )
        limiter = RateLimiter(RATE_LIMIT_PRESETS["strict"], rate_storage, clock=clock)

        await limiter.clear_limit("10.0.0.1", AttemptKind.LOGIN)
        await limiter.record_attempt("10.0.0.1", AttemptKind.LOGIN, success=False)
        await limiter.record_attempt("10.0.0.1", AttemptKind.LOGIN, success=True)

        attempts = await rate_storage.get_attempts(
            "10.0.0.1", AttemptKind.LOGIN, clock.now() - timedelta(minutes=1)
        )
        assert [a.success for a in attempts] == [True]
        assert await rate_storage.get_lockout("10.0.0.1", AttemptKind.LOGIN, clock.now()) is None

    async def test_cleanup(self, rate_storage, fake_redis, clock):
        limiter = RateLimiter(RATE_LIMIT_PRESETS["strict"], rate_storage, clock=clock)
        for _ in range(3):
            await limiter.record_attempt("10.0.0.1", AttemptKind.LOGIN, success=False)
        await limiter.record_attempt("10.0.0.2", AttemptKind.LOGIN, success=False)

        clock.advance(minutes=20)
        assert await limiter.cleanup() == 0

        clock.advance(minutes=41)
        assert await limiter.cleanup() == 5
        assert fake_redis.sets == {}
        assert fake_redis.zsets == {}

    async def test_attempt_members_are_json(self, rate_storage, fake_redis, clock):
        limiter = RateLimiter(RATE_LIMIT_PRESETS["strict"], rate_storage, clock=clock)
        await limiter.record_attempt(
            "10.0.0.1", AttemptKind.LOGIN, success=False, metadata={"user_agent": "curl"}
        )

        (members,) = fake_redis.zsets.values()
        (raw,) = members
        data = json.loads(raw)
        assert data["kind"] == "login"
        assert data["metadata"] == {"user_agent": "curl"}

"""Tests for the revocation (blacklist) store.

Covers idempotent adds, expiry-aware lookups, cleanup boundaries, error
propagation and the background sweep.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from sessionguard.service.revocation import RevocationStore
from sessionguard.storage.errors import StorageError, StorageTimeout
from sessionguard.storage.memory import MemoryRevocationStorage
from sessionguard.storage.models import TokenRevocationReason


@pytest.fixture
def store(clock):
    return RevocationStore(clock=clock)


class TestRevocationLookups:
    async def test_revoked_until_expiry_then_cleaned(self, store, clock):
        """A token stays revoked until expiry and is gone after cleanup."""
        await store.add("jti-1", clock.now() + timedelta(minutes=15), TokenRevocationReason.LOGOUT)

        assert await store.is_revoked("jti-1") is True

        clock.advance(minutes=16)
        assert await store.cleanup() == 1
        assert await store.is_revoked("jti-1") is False
        assert await store.size() == 0

    async def test_expired_entry_not_revoked_before_cleanup(self, store, clock):
        """An entry past its expiry no longer counts even if not yet swept."""
        await store.add("jti-1", clock.now() + timedelta(seconds=30), TokenRevocationReason.SECURITY)
        clock.advance(seconds=31)

        assert await store.is_revoked("jti-1") is False
        assert await store.size() == 1

    async def test_unknown_token_not_revoked(self, store):
        assert await store.is_revoked("never-seen") is False

    async def test_readd_overwrites_reason_and_expiry(self, store, clock):
        """Adding the same token id twice keeps a single entry with the latest data."""
        await store.add("jti-1", clock.now() + timedelta(minutes=1), TokenRevocationReason.LOGOUT)
        later = clock.now() + timedelta(hours=1)
        await store.add("jti-1", later, TokenRevocationReason.ADMIN, user_id="u1")

        entry = await store.get_entry("jti-1")
        assert await store.size() == 1
        assert entry.reason == TokenRevocationReason.ADMIN
        assert entry.expires_at == later
        assert entry.user_id == "u1"

    async def test_remove(self, store, clock):
        await store.add("jti-1", clock.now() + timedelta(minutes=1), TokenRevocationReason.LOGOUT)

        assert await store.remove("jti-1") is True
        assert await store.remove("jti-1") is False
        assert await store.is_revoked("jti-1") is False

    async def test_metadata_is_copied(self, store, clock):
        metadata = {"source": "admin-console"}
        await store.add(
            "jti-1",
            clock.now() + timedelta(minutes=1),
            TokenRevocationReason.ADMIN,
            metadata=metadata,
        )
        metadata["source"] = "changed"

        entry = await store.get_entry("jti-1")
        assert entry.metadata == {"source": "admin-console"}


class TestRevocationCleanup:
    async def test_cleanup_never_removes_unexpired(self, store, clock):
        """Cleanup only removes entries whose expiry is strictly in the past."""
        await store.add("past", clock.now() - timedelta(seconds=1), TokenRevocationReason.EXPIRED)
        await store.add("boundary", clock.now(), TokenRevocationReason.LOGOUT)
        await store.add("future", clock.now() + timedelta(minutes=5), TokenRevocationReason.LOGOUT)

        assert await store.cleanup() == 1
        assert await store.get_entry("past") is None
        assert await store.get_entry("boundary") is not None
        assert await store.get_entry("future") is not None

    async def test_background_sweep_removes_expired(self, clock):
        """The periodic sweep purges expired entries and stops cleanly."""
        store = RevocationStore(clock=clock, cleanup_interval=0.01)
        await store.add("old", clock.now() - timedelta(minutes=1), TokenRevocationReason.EXPIRED)

        await store.start()
        try:
            for _ in range(50):
                if await store.size() == 0:
                    break
                await asyncio.sleep(0.01)
        finally:
            await store.stop()

        assert await store.size() == 0
        assert store._sweeper.running is False

    async def test_sweep_errors_are_logged_and_retried(self, clock):
        """A failing sweep does not stop the loop."""
        calls = []

        async def flaky_cleanup(now):
            calls.append(now)
            if len(calls) == 1:
                raise StorageError("down")
            return 0

        storage = MemoryRevocationStorage()
        storage.cleanup = flaky_cleanup
        store = RevocationStore(storage, clock=clock, cleanup_interval=0.01)

        await store.start()
        try:
            for _ in range(50):
                if len(calls) >= 2:
                    break
                await asyncio.sleep(0.01)
        finally:
            await store.stop()

        assert len(calls) >= 2


class TestRevocationFailures:
    async def test_storage_errors_propagate(self, clock):
        storage = MemoryRevocationStorage()
        storage.is_revoked = AsyncMock(side_effect=StorageError("backend unreachable"))
        store = RevocationStore(storage, clock=clock)

        with pytest.raises(StorageError):
            await store.is_revoked("jti-1")

    async def test_slow_storage_times_out(self, clock):
        """A storage call past the deadline is a StorageTimeout, not a hang."""

        class SlowStorage(MemoryRevocationStorage):
            async def is_revoked(self, token_id, now):
                await asyncio.sleep(1)
                return False

        store = RevocationStore(SlowStorage(), clock=clock, operation_timeout=0.01)

        with pytest.raises(StorageTimeout):
            await store.is_revoked("jti-1")

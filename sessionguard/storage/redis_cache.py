from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from sessionguard.clock import ensure_aware
from sessionguard.logging import get_logger
from sessionguard.storage.common import hash_identifier
from sessionguard.storage.errors import StorageError
from sessionguard.storage.models import (
    AttemptKind,
    BlacklistedToken,
    Lockout,
    RateLimitAttempt,
    TokenRevocationReason,
)

logger = get_logger(__name__)


def _ttl_seconds(expires_at: datetime) -> int:
    """Compute a safe TTL from an absolute expiry timestamp.

    Clamped to at least 1 second so Redis never rejects a zero or negative TTL.
    Key expiry is housekeeping only; liveness checks always compare against the
    caller's clock.
    """

    expires_at = ensure_aware(expires_at)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


def _score(value: datetime) -> float:
    return ensure_aware(value).timestamp()


def _dt(raw: Optional[str]) -> Optional[datetime]:
    if raw is None:
        return None
    return ensure_aware(datetime.fromisoformat(raw))


class _RedisBackend:
    """Shared client handling for the Redis storage backends."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Any = None,
        socket_timeout: float = 5.0,
    ) -> None:
        if client is None and not redis_url:
            raise StorageError("redis_url or client is required")
        self.redis_url = redis_url
        self._owns_client = client is None
        # Configure connection with explicit timeouts
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        if not self.redis_url:
            return
        # Short-lived synchronous client so the async one is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close the connection pool when this backend created it."""
        if self._owns_client:
            await self.client.aclose()


class RedisRevocationStorage(_RedisBackend):
    """Revocation entries as expiring keys plus a sorted-set index by expiry."""

    INDEX_KEY = "auth:revoked:index"

    @staticmethod
    def _key(token_id: str) -> str:
        return f"auth:revoked:{token_id}"

    @staticmethod
    def _encode(entry: BlacklistedToken) -> str:
        return json.dumps(
            {
                "token_id": entry.token_id,
                "expires_at": ensure_aware(entry.expires_at).isoformat(),
                "revoked_at": ensure_aware(entry.revoked_at).isoformat(),
                "reason": entry.reason.value,
                "user_id": entry.user_id,
                "metadata": entry.metadata,
            }
        )

    @staticmethod
    def _decode(raw: str) -> BlacklistedToken:
        data = json.loads(raw)
        return BlacklistedToken(
            token_id=data["token_id"],
            expires_at=_dt(data["expires_at"]),
            revoked_at=_dt(data["revoked_at"]),
            reason=TokenRevocationReason(data["reason"]),
            user_id=data.get("user_id"),
            metadata=data.get("metadata"),
        )

    async def add(self, entry: BlacklistedToken) -> None:
        try:
            pipe = self.client.pipeline()
            pipe.set(self._key(entry.token_id), self._encode(entry), ex=_ttl_seconds(entry.expires_at))
            pipe.zadd(self.INDEX_KEY, {entry.token_id: _score(entry.expires_at)})
            await pipe.execute()
        except RedisError as exc:
            raise StorageError("revocation_add_failed", {"error": str(exc)}) from exc

    async def get(self, token_id: str) -> Optional[BlacklistedToken]:
        try:
            raw = await self.client.get(self._key(token_id))
        except RedisError as exc:
            raise StorageError("revocation_get_failed", {"error": str(exc)}) from exc
        if raw is None:
            return None
        try:
            return self._decode(raw)
        except (json.JSONDecodeError, KeyError, ValueError) as exc:
            raise StorageError("revocation_entry_corrupt", {"token_id": token_id}) from exc

    async def is_revoked(self, token_id: str, now: datetime) -> bool:
        entry = await self.get(token_id)
        return entry is not None and ensure_aware(entry.expires_at) > ensure_aware(now)

    async def remove(self, token_id: str) -> bool:
        try:
            pipe = self.client.pipeline()
            pipe.delete(self._key(token_id))
            pipe.zrem(self.INDEX_KEY, token_id)
            deleted, _ = await pipe.execute()
        except RedisError as exc:
            raise StorageError("revocation_remove_failed", {"error": str(exc)}) from exc
        return bool(deleted)

    async def cleanup(self, now: datetime) -> int:
        # Exclusive bound: entries expiring exactly at ``now`` are swept next run
        bound = f"({_score(now)}"
        try:
            stale = await self.client.zrangebyscore(self.INDEX_KEY, "-inf", bound)
            if not stale:
                return 0
            pipe = self.client.pipeline()
            for token_id in stale:
                pipe.delete(self._key(token_id))
            pipe.zrem(self.INDEX_KEY, *stale)
            await pipe.execute()
        except RedisError as exc:
            raise StorageError("revocation_cleanup_failed", {"error": str(exc)}) from exc
        return len(stale)

    async def size(self) -> int:
        try:
            return int(await self.client.zcard(self.INDEX_KEY))
        except RedisError as exc:
            raise StorageError("revocation_size_failed", {"error": str(exc)}) from exc


class RedisRateLimitStorage(_RedisBackend):
    """Attempt logs as sorted sets scored by timestamp; lockouts as expiring keys.

    Identifiers are hashed before they become part of a key so raw IP
    addresses and emails never appear in the keyspace.
    """

    ATTEMPT_INDEX_KEY = "auth:attempts:keys"
    LOCKOUT_INDEX_KEY = "auth:lockout:index"

    @staticmethod
    def _attempts_key(identifier: str, kind: AttemptKind) -> str:
        return f"auth:attempts:{kind.value}:{hash_identifier(identifier)}"

    @staticmethod
    def _lockout_key(identifier: str, kind: AttemptKind) -> str:
        return f"auth:lockout:{kind.value}:{hash_identifier(identifier)}"

    @staticmethod
    def _encode_attempt(attempt: RateLimitAttempt) -> str:
        return json.dumps(
            {
                # Nonce keeps identical attempts distinct members of the set
                "nonce": uuid.uuid4().hex,
                "identifier": attempt.identifier,
                "timestamp": ensure_aware(attempt.timestamp).isoformat(),
                "kind": attempt.kind.value,
                "success": attempt.success,
                "metadata": attempt.metadata,
            }
        )

    @staticmethod
    def _decode_attempt(raw: str) -> RateLimitAttempt:
        data = json.loads(raw)
        return RateLimitAttempt(
            identifier=data["identifier"],
            timestamp=_dt(data["timestamp"]),
            kind=AttemptKind(data["kind"]),
            success=bool(data["success"]),
            metadata=data.get("metadata"),
        )

    async def record_attempt(self, attempt: RateLimitAttempt) -> None:
        key = self._attempts_key(attempt.identifier, attempt.kind)
        try:
            pipe = self.client.pipeline()
            pipe.zadd(key, {self._encode_attempt(attempt): _score(attempt.timestamp)})
            pipe.sadd(self.ATTEMPT_INDEX_KEY, key)
            await pipe.execute()
        except RedisError as exc:
            raise StorageError("attempt_record_failed", {"error": str(exc)}) from exc

    async def get_attempts(
        self, identifier: str, kind: AttemptKind, since: datetime
    ) -> List[RateLimitAttempt]:
        key = self._attempts_key(identifier, kind)
        try:
            members = await self.client.zrangebyscore(key, _score(since), "+inf")
        except RedisError as exc:
            raise StorageError("attempt_read_failed", {"error": str(exc)}) from exc
        return [self._decode_attempt(raw) for raw in members]

    async def clear_failed_attempts(self, identifier: str, kind: AttemptKind) -> None:
        key = self._attempts_key(identifier, kind)
        try:
            members = await self.client.zrangebyscore(key, "-inf", "+inf")
            failed = [raw for raw in members if not json.loads(raw).get("success")]
            if failed:
                await self.client.zrem(key, *failed)
        except RedisError as exc:
            raise StorageError("attempt_clear_failed", {"error": str(exc)}) from exc

    async def cleanup(self, older_than: datetime) -> int:
        bound = f"({_score(older_than)}"
        removed = 0
        try:
            keys = await self.client.smembers(self.ATTEMPT_INDEX_KEY)
            for key in keys:
                removed += int(await self.client.zremrangebyscore(key, "-inf", bound))
                if not await self.client.zcard(key):
                    await self.client.srem(self.ATTEMPT_INDEX_KEY, key)
        except RedisError as exc:
            raise StorageError("attempt_cleanup_failed", {"error": str(exc)}) from exc
        return removed

    async def set_lockout(self, lockout: Lockout) -> None:
        key = self._lockout_key(lockout.identifier, lockout.kind)
        payload = json.dumps(
            {
                "identifier": lockout.identifier,
                "kind": lockout.kind.value,
                "locked_until": ensure_aware(lockout.locked_until).isoformat(),
            }
        )
        try:
            pipe = self.client.pipeline()
            pipe.set(key, payload, ex=_ttl_seconds(lockout.locked_until))
            pipe.zadd(self.LOCKOUT_INDEX_KEY, {key: _score(lockout.locked_until)})
            await pipe.execute()
        except RedisError as exc:
            raise StorageError("lockout_set_failed", {"error": str(exc)}) from exc

    async def get_lockout(
        self, identifier: str, kind: AttemptKind, now: datetime
    ) -> Optional[Lockout]:
        key = self._lockout_key(identifier, kind)
        try:
            raw = await self.client.get(key)
        except RedisError as exc:
            raise StorageError("lockout_get_failed", {"error": str(exc)}) from exc
        if raw is None:
            return None
        data = json.loads(raw)
        lockout = Lockout(
            identifier=data["identifier"],
            kind=AttemptKind(data["kind"]),
            locked_until=_dt(data["locked_until"]),
        )
        if lockout.locked_until <= ensure_aware(now):
            await self.clear_lockout(identifier, kind)
            return None
        return lockout

    async def clear_lockout(self, identifier: str, kind: AttemptKind) -> None:
        key = self._lockout_key(identifier, kind)
        try:
            pipe = self.client.pipeline()
            pipe.delete(key)
            pipe.zrem(self.LOCKOUT_INDEX_KEY, key)
            await pipe.execute()
        except RedisError as exc:
            raise StorageError("lockout_clear_failed", {"error": str(exc)}) from exc

    async def cleanup_lockouts(self, now: datetime) -> int:
        try:
            stale = await self.client.zrangebyscore(self.LOCKOUT_INDEX_KEY, "-inf", _score(now))
            if not stale:
                return 0
            pipe = self.client.pipeline()
            for key in stale:
                pipe.delete(key)
            pipe.zrem(self.LOCKOUT_INDEX_KEY, *stale)
            await pipe.execute()
        except RedisError as exc:
            raise StorageError("lockout_cleanup_failed", {"error": str(exc)}) from exc
        logger.debug("redis_lockouts_swept", count=len(stale))
        return len(stale)


__all__ = ["RedisRevocationStorage", "RedisRateLimitStorage"]

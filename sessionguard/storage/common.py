"""Storage contracts shared between the memory and Redis backends.

Services only talk to these protocols, so any backend honouring them can be
swapped in without touching the revocation store, rate limiter, device
registry or orchestrator.
"""

from __future__ import annotations

import asyncio
import hashlib
from datetime import datetime
from typing import Awaitable, List, Optional, Protocol, TypeVar

from sessionguard.storage.errors import StorageTimeout
from sessionguard.storage.models import (
    AttemptKind,
    BlacklistedToken,
    DeviceInfo,
    DeviceSession,
    Lockout,
    RateLimitAttempt,
    RefreshTokenRecord,
)

T = TypeVar("T")


def hash_identifier(identifier: str) -> str:
    """Stable digest used where raw identifiers (ips, emails) become keys."""

    return hashlib.sha256(identifier.encode("utf-8")).hexdigest()


async def bounded(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Await a storage call, turning a missed deadline into StorageTimeout."""

    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise StorageTimeout(
            f"{operation} timed out", {"operation": operation, "timeout": timeout}
        ) from exc


class RevocationStorage(Protocol):
    async def add(self, entry: BlacklistedToken) -> None: ...

    async def is_revoked(self, token_id: str, now: datetime) -> bool: ...

    async def get(self, token_id: str) -> Optional[BlacklistedToken]: ...

    async def remove(self, token_id: str) -> bool: ...

    async def cleanup(self, now: datetime) -> int: ...

    async def size(self) -> int: ...


class RateLimitStorage(Protocol):
    async def record_attempt(self, attempt: RateLimitAttempt) -> None: ...

    async def get_attempts(
        self, identifier: str, kind: AttemptKind, since: datetime
    ) -> List[RateLimitAttempt]: ...

    async def clear_failed_attempts(self, identifier: str, kind: AttemptKind) -> None: ...

    async def cleanup(self, older_than: datetime) -> int: ...

    async def set_lockout(self, lockout: Lockout) -> None: ...

    async def get_lockout(
        self, identifier: str, kind: AttemptKind, now: datetime
    ) -> Optional[Lockout]: ...

    async def clear_lockout(self, identifier: str, kind: AttemptKind) -> None: ...

    async def cleanup_lockouts(self, now: datetime) -> int: ...


class DeviceSessionStorage(Protocol):
    async def save_session(self, session: DeviceSession) -> None: ...

    async def get_session(self, session_id: str) -> Optional[DeviceSession]: ...

    async def get_device_sessions(self, device_id: str) -> List[DeviceSession]: ...

    async def get_user_sessions(self, user_id: str) -> List[DeviceSession]: ...

    async def update_session(self, session: DeviceSession) -> None: ...

    async def delete_session(self, session_id: str) -> bool: ...

    async def cleanup_expired(self, now: datetime) -> int: ...

    async def get_device(self, device_id: str) -> Optional[DeviceInfo]: ...

    async def save_device(self, device: DeviceInfo) -> None: ...

    async def update_device(self, device: DeviceInfo) -> None: ...


class SessionTable(Protocol):
    """Orchestrator-side view of issued sessions and their refresh records."""

    async def put_session(self, session: DeviceSession) -> None: ...

    async def get_session(self, session_id: str) -> Optional[DeviceSession]: ...

    async def update_session(self, session: DeviceSession) -> None: ...

    async def delete_session(self, session_id: str) -> Optional[DeviceSession]: ...

    async def user_session_ids(self, user_id: str) -> List[str]: ...

    async def put_refresh(self, record: RefreshTokenRecord) -> None: ...

    async def pop_refresh(self, refresh_token: str) -> Optional[RefreshTokenRecord]: ...

    async def delete_refresh(self, refresh_token: str) -> None: ...

    async def cleanup(self, now: datetime) -> int: ...


__all__ = [
    "hash_identifier",
    "bounded",
    "RevocationStorage",
    "RateLimitStorage",
    "DeviceSessionStorage",
    "SessionTable",
]

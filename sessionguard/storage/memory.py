from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from sessionguard.storage.models import (
    AttemptKind,
    BlacklistedToken,
    DeviceInfo,
    DeviceSession,
    Lockout,
    RateLimitAttempt,
    RefreshTokenRecord,
    SessionStatus,
)

_Key = Tuple[str, AttemptKind]


class MemoryRevocationStorage:
    """In-process revocation table keyed by token id."""

    def __init__(self) -> None:
        self.entries: Dict[str, BlacklistedToken] = {}
        self._data_lock = threading.RLock()

    async def add(self, entry: BlacklistedToken) -> None:
        with self._data_lock:
            self.entries[entry.token_id] = entry

    async def is_revoked(self, token_id: str, now: datetime) -> bool:
        with self._data_lock:
            entry = self.entries.get(token_id)
            return entry is not None and entry.expires_at > now

    async def get(self, token_id: str) -> Optional[BlacklistedToken]:
        with self._data_lock:
            return self.entries.get(token_id)

    async def remove(self, token_id: str) -> bool:
        with self._data_lock:
            return self.entries.pop(token_id, None) is not None

    async def cleanup(self, now: datetime) -> int:
        with self._data_lock:
            stale = [tid for tid, entry in self.entries.items() if entry.expires_at < now]
            for token_id in stale:
                del self.entries[token_id]
            return len(stale)

    async def size(self) -> int:
        with self._data_lock:
            return len(self.entries)


class MemoryRateLimitStorage:
    """Attempt log and lockout table for a single process."""

    def __init__(self) -> None:
        self.attempts: Dict[_Key, List[RateLimitAttempt]] = defaultdict(list)
        self.lockouts: Dict[_Key, Lockout] = {}
        self._data_lock = threading.RLock()

    async def record_attempt(self, attempt: RateLimitAttempt) -> None:
        with self._data_lock:
            self.attempts[(attempt.identifier, attempt.kind)].append(attempt)

    async def get_attempts(
        self, identifier: str, kind: AttemptKind, since: datetime
    ) -> List[RateLimitAttempt]:
        with self._data_lock:
            return [a for a in self.attempts.get((identifier, kind), []) if a.timestamp >= since]

    async def clear_failed_attempts(self, identifier: str, kind: AttemptKind) -> None:
        with self._data_lock:
            key = (identifier, kind)
            remaining = [a for a in self.attempts.get(key, []) if a.success]
            if remaining:
                self.attempts[key] = remaining
            else:
                self.attempts.pop(key, None)

    async def cleanup(self, older_than: datetime) -> int:
        removed = 0
        with self._data_lock:
            for key in list(self.attempts.keys()):
                kept = [a for a in self.attempts[key] if a.timestamp >= older_than]
                removed += len(self.attempts[key]) - len(kept)
                if kept:
                    self.attempts[key] = kept
                else:
                    del self.attempts[key]
        return removed

    async def set_lockout(self, lockout: Lockout) -> None:
        with self._data_lock:
            self.lockouts[(lockout.identifier, lockout.kind)] = lockout

    async def get_lockout(
        self, identifier: str, kind: AttemptKind, now: datetime
    ) -> Optional[Lockout]:
        with self._data_lock:
            lockout = self.lockouts.get((identifier, kind))
            if lockout is None:
                return None
            if lockout.locked_until <= now:
                del self.lockouts[(identifier, kind)]
                return None
            return lockout

    async def clear_lockout(self, identifier: str, kind: AttemptKind) -> None:
        with self._data_lock:
            self.lockouts.pop((identifier, kind), None)

    async def cleanup_lockouts(self, now: datetime) -> int:
        with self._data_lock:
            stale = [key for key, lock in self.lockouts.items() if lock.locked_until <= now]
            for key in stale:
                del self.lockouts[key]
            return len(stale)


class MemoryDeviceSessionStorage:
    """Sessions indexed by id, device and user; devices are never deleted."""

    def __init__(self) -> None:
        self.sessions: Dict[str, DeviceSession] = {}
        self.devices: Dict[str, DeviceInfo] = {}
        self.by_device: Dict[str, Set[str]] = defaultdict(set)
        self.by_user: Dict[str, Set[str]] = defaultdict(set)
        self._data_lock = threading.RLock()

    def _index(self, session: DeviceSession) -> None:
        self.by_user[session.user_id].add(session.id)
        if session.device_id:
            self.by_device[session.device_id].add(session.id)

    def _unindex(self, session: DeviceSession) -> None:
        self.by_user.get(session.user_id, set()).discard(session.id)
        if not self.by_user.get(session.user_id):
            self.by_user.pop(session.user_id, None)
        if session.device_id:
            self.by_device.get(session.device_id, set()).discard(session.id)
            if not self.by_device.get(session.device_id):
                self.by_device.pop(session.device_id, None)

    def _store_locked(self, session: DeviceSession) -> None:
        previous = self.sessions.get(session.id)
        if previous is not None:
            self._unindex(previous)
        self.sessions[session.id] = session.copy()
        self._index(session)

    async def save_session(self, session: DeviceSession) -> None:
        with self._data_lock:
            self._store_locked(session)

    async def get_session(self, session_id: str) -> Optional[DeviceSession]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return session.copy() if session else None

    async def get_device_sessions(self, device_id: str) -> List[DeviceSession]:
        with self._data_lock:
            ids = self.by_device.get(device_id, set())
            return [self.sessions[sid].copy() for sid in ids if sid in self.sessions]

    async def get_user_sessions(self, user_id: str) -> List[DeviceSession]:
        with self._data_lock:
            ids = self.by_user.get(user_id, set())
            return [self.sessions[sid].copy() for sid in ids if sid in self.sessions]

    async def update_session(self, session: DeviceSession) -> None:
        with self._data_lock:
            if session.id in self.sessions:
                self._store_locked(session)

    async def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            session = self.sessions.pop(session_id, None)
            if session is None:
                return False
            self._unindex(session)
            return True

    async def cleanup_expired(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                s
                for s in self.sessions.values()
                if s.status == SessionStatus.REVOKED or s.expires_at < now
            ]
            for session in stale:
                del self.sessions[session.id]
                self._unindex(session)
            return len(stale)

    async def get_device(self, device_id: str) -> Optional[DeviceInfo]:
        with self._data_lock:
            device = self.devices.get(device_id)
            return device.copy() if device else None

    async def save_device(self, device: DeviceInfo) -> None:
        with self._data_lock:
            self.devices[device.device_id] = device.copy()

    async def update_device(self, device: DeviceInfo) -> None:
        with self._data_lock:
            if device.device_id in self.devices:
                self.devices[device.device_id] = device.copy()


class MemorySessionTable:
    """Issued sessions and refresh records held by the orchestrator."""

    def __init__(self) -> None:
        self.sessions: Dict[str, DeviceSession] = {}
        self.user_index: Dict[str, Set[str]] = defaultdict(set)
        self.refresh_records: Dict[str, RefreshTokenRecord] = {}
        self._data_lock = threading.RLock()

    async def put_session(self, session: DeviceSession) -> None:
        with self._data_lock:
            self.sessions[session.id] = session.copy()
            self.user_index[session.user_id].add(session.id)

    async def get_session(self, session_id: str) -> Optional[DeviceSession]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return session.copy() if session else None

    async def update_session(self, session: DeviceSession) -> None:
        with self._data_lock:
            if session.id in self.sessions:
                self.sessions[session.id] = session.copy()

    async def delete_session(self, session_id: str) -> Optional[DeviceSession]:
        with self._data_lock:
            return self._drop_locked(session_id)

    async def user_session_ids(self, user_id: str) -> List[str]:
        with self._data_lock:
            return list(self.user_index.get(user_id, set()))

    async def put_refresh(self, record: RefreshTokenRecord) -> None:
        with self._data_lock:
            self.refresh_records[record.refresh_token] = record

    async def pop_refresh(self, refresh_token: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            return self.refresh_records.pop(refresh_token, None)

    async def delete_refresh(self, refresh_token: str) -> None:
        with self._data_lock:
            self.refresh_records.pop(refresh_token, None)

    async def cleanup(self, now: datetime) -> int:
        """Drop expired sessions and refresh records; returns how many went."""
        removed = 0
        with self._data_lock:
            for session_id in [sid for sid, s in self.sessions.items() if s.expires_at <= now]:
                if self._drop_locked(session_id) is not None:
                    removed += 1
            for token in [t for t, r in self.refresh_records.items() if r.expires_at <= now]:
                del self.refresh_records[token]
                removed += 1
        return removed

    def _drop_locked(self, session_id: str) -> Optional[DeviceSession]:
        session = self.sessions.pop(session_id, None)
        if session is None:
            return None
        ids = self.user_index.get(session.user_id)
        if ids is not None:
            ids.discard(session_id)
            if not ids:
                del self.user_index[session.user_id]
        return session


__all__ = [
    "MemoryRevocationStorage",
    "MemoryRateLimitStorage",
    "MemoryDeviceSessionStorage",
    "MemorySessionTable",
]

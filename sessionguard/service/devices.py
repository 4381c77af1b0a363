"""Device identification and device-scoped session bookkeeping.

Two caps are enforced when a session is created, with deliberately different
eviction orders:

* per device, the oldest-created active sessions are revoked first;
* per user, every active session of the least-recently-active devices is
  revoked, never touching the device currently logging in.

Both run in the same critical section as the insert, so concurrent logins
cannot overshoot either cap. Revocation and activity updates hold the
owner's user lock and then the device lock, and re-read the stored session
first, so a stale copy never overwrites a revocation or eviction. Device
records are written under the device lock only. Eviction listeners run once
the locks are released.
"""

from __future__ import annotations

import asyncio
import hashlib
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from sessionguard.clock import Clock, SystemClock, ensure_aware
from sessionguard.config import Settings
from sessionguard.logging import get_logger, log_security_event
from sessionguard.service.background import PeriodicTask
from sessionguard.service.locks import KeyedLock
from sessionguard.storage.common import DeviceSessionStorage, bounded
from sessionguard.storage.memory import MemoryDeviceSessionStorage
from sessionguard.storage.models import (
    DeviceInfo,
    DeviceSession,
    DeviceType,
    Metadata,
    SessionStatus,
)

logger = get_logger(__name__)

DEVICE_LIMIT_EXCEEDED = "device_limit_exceeded"
USER_DEVICE_LIMIT_EXCEEDED = "user_device_limit_exceeded"
DEFAULT_OPERATION_TIMEOUT = 5.0

EvictionListener = Callable[[DeviceSession, str], Awaitable[None]]


@dataclass(frozen=True)
class DeviceLimits:
    max_devices_per_user: int = 10
    max_sessions_per_device: int = 3
    require_verification_for_new_device: bool = True
    cleanup_interval_seconds: float = 300.0

    def __post_init__(self) -> None:
        if self.max_devices_per_user <= 0 or self.max_sessions_per_device <= 0:
            raise ValueError("device and session limits must be positive")

    @classmethod
    def from_settings(cls, settings: Settings) -> "DeviceLimits":
        return cls(
            max_devices_per_user=settings.max_devices_per_user,
            max_sessions_per_device=settings.max_sessions_per_device,
            require_verification_for_new_device=settings.require_verification_for_new_device,
            cleanup_interval_seconds=settings.session_cleanup_interval_seconds,
        )


def compute_device_id(
    user_agent: str, ip_address: str, fingerprint: Optional[str] = None
) -> str:
    source = fingerprint or f"{user_agent}:{ip_address}"
    return hashlib.sha256(source.encode("utf-8")).hexdigest()[:32]


def parse_device_type(user_agent: str) -> DeviceType:
    ua = (user_agent or "").lower()
    # Tablets first: iPad and Android tablet agents often also say "mobile"
    if "ipad" in ua or "tablet" in ua:
        return DeviceType.TABLET
    if "mobile" in ua or "phone" in ua or "iphone" in ua:
        return DeviceType.MOBILE
    if any(marker in ua for marker in ("desktop", "windows", "mac", "linux")):
        return DeviceType.DESKTOP
    return DeviceType.UNKNOWN


def parse_user_agent(user_agent: str) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(os, browser)`` detected from a user agent string."""
    ua = (user_agent or "").lower()

    os_name: Optional[str] = None
    if "iphone" in ua or "ipad" in ua or "ipod" in ua:
        os_name = "iOS"
    elif "android" in ua:
        os_name = "Android"
    elif "windows" in ua:
        os_name = "Windows"
    elif "mac os x" in ua or "macos" in ua:
        os_name = "macOS"
    elif "linux" in ua:
        os_name = "Linux"

    # Edge and Chrome agents embed "chrome/" and "safari/" respectively
    browser: Optional[str] = None
    if "edg/" in ua or "edge/" in ua:
        browser = "Edge"
    elif "chrome/" in ua:
        browser = "Chrome"
    elif "firefox/" in ua:
        browser = "Firefox"
    elif "safari/" in ua:
        browser = "Safari"
    return os_name, browser


class DeviceSessionRegistry:
    def __init__(
        self,
        limits: Optional[DeviceLimits] = None,
        storage: Optional[DeviceSessionStorage] = None,
        *,
        clock: Optional[Clock] = None,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        eviction_listener: Optional[EvictionListener] = None,
    ) -> None:
        self.limits = limits or DeviceLimits()
        self.storage = storage or MemoryDeviceSessionStorage()
        self.clock = clock or SystemClock()
        self.operation_timeout = operation_timeout
        self.eviction_listener = eviction_listener
        self._locks = KeyedLock()
        self._sweeper = PeriodicTask(
            "device_session_cleanup",
            self.cleanup_expired,
            self.limits.cleanup_interval_seconds,
        )

    async def _call(self, awaitable, operation: str):
        return await bounded(awaitable, self.operation_timeout, operation)

    @asynccontextmanager
    async def _hold(self, user_id: str, device_id: Optional[str]) -> AsyncIterator[None]:
        # Always user before device, and at most one key of each kind
        async with self._locks.hold(("user", user_id)):
            async with self._locks.hold(("device", device_id)):
                yield

    async def _identify(
        self, user_agent: str, ip_address: str, fingerprint: Optional[str]
    ) -> Tuple[DeviceInfo, bool]:
        device_id = compute_device_id(user_agent, ip_address, fingerprint)
        now = self.clock.now()
        existing = await self._call(self.storage.get_device(device_id), "device_get")
        if existing is not None:
            return (
                existing.copy(user_agent=user_agent, ip_address=ip_address, last_active_at=now),
                False,
            )
        os_name, browser = parse_user_agent(user_agent)
        device = DeviceInfo(
            device_id=device_id,
            device_type=parse_device_type(user_agent),
            user_agent=user_agent,
            ip_address=ip_address,
            fingerprint=fingerprint,
            os=os_name,
            browser=browser,
            first_seen_at=now,
            last_active_at=now,
            trusted=False,
        )
        return device, True

    async def identify_device(
        self, user_agent: str, ip_address: str, fingerprint: Optional[str] = None
    ) -> DeviceInfo:
        device, _ = await self._identify(user_agent, ip_address, fingerprint)
        return device

    async def create_session(
        self,
        user_id: str,
        session_id: str,
        access_token: str,
        expires_at: datetime,
        user_agent: str,
        ip_address: str,
        *,
        refresh_token: Optional[str] = None,
        fingerprint: Optional[str] = None,
        metadata: Optional[Metadata] = None,
    ) -> DeviceSession:
        # Shielded so an abandoned caller cannot cut the evict-then-insert short
        return await asyncio.shield(
            self._create_session(
                user_id,
                session_id,
                access_token,
                ensure_aware(expires_at),
                user_agent,
                ip_address,
                refresh_token,
                fingerprint,
                dict(metadata or {}),
            )
        )

    async def _create_session(
        self,
        user_id: str,
        session_id: str,
        access_token: str,
        expires_at: datetime,
        user_agent: str,
        ip_address: str,
        refresh_token: Optional[str],
        fingerprint: Optional[str],
        metadata: Metadata,
    ) -> DeviceSession:
        device_id = compute_device_id(user_agent, ip_address, fingerprint)
        async with self._hold(user_id, device_id):
            device, is_new = await self._identify(user_agent, ip_address, fingerprint)
            evicted = await self._enforce_limits(user_id, device_id)

            if (
                self.limits.require_verification_for_new_device
                and is_new
                and not device.trusted
            ):
                log_security_event(
                    "new_device_login",
                    logger=logger,
                    user_id=user_id,
                    device_id=device.device_id,
                    device_type=device.device_type.value,
                )
                metadata["new_device"] = True

            now = self.clock.now()
            session = DeviceSession(
                id=session_id,
                user_id=user_id,
                access_token=access_token,
                refresh_token=refresh_token,
                created_at=now,
                expires_at=expires_at,
                last_accessed_at=now,
                metadata=metadata,
                device=device,
                status=SessionStatus.ACTIVE,
            )
            await self._call(self.storage.save_session(session), "device_session_save")
            await self._call(self.storage.save_device(device), "device_save")

        # Listeners run outside the locks so they may call back into the registry
        for victim, reason in evicted:
            await self._notify_evicted(victim, reason)
        logger.info(
            "device_session_created",
            user_id=user_id,
            session_id=session_id,
            device_id=device.device_id,
            device_type=device.device_type.value,
        )
        return session

    async def _enforce_limits(
        self, user_id: str, device_id: str
    ) -> List[Tuple[DeviceSession, str]]:
        evicted: List[Tuple[DeviceSession, str]] = []

        # Per device: oldest-created first, down to max - 1 to make room
        device_sessions = await self._call(
            self.storage.get_device_sessions(device_id), "device_sessions_get"
        )
        active = sorted(
            (s for s in device_sessions if s.is_active), key=lambda s: s.created_at
        )
        cap = self.limits.max_sessions_per_device
        if len(active) >= cap:
            for session in active[: len(active) - cap + 1]:
                if await self._evict(session, DEVICE_LIMIT_EXCEEDED):
                    evicted.append((session, DEVICE_LIMIT_EXCEEDED))

        # Per user: least-recently-active devices first, down to max - 1 devices.
        # Only this user's sessions are touched, and its user lock is held.
        devices = await self._active_devices(user_id)
        cap = self.limits.max_devices_per_user
        if len(devices) >= cap:
            candidates = sorted(
                (d for d in devices if d.device_id != device_id),
                key=lambda d: d.last_active_at,
            )
            for stale in candidates[: len(devices) - cap + 1]:
                sessions = await self._call(
                    self.storage.get_device_sessions(stale.device_id), "device_sessions_get"
                )
                for session in sessions:
                    if session.is_active and session.user_id == user_id:
                        if await self._evict(session, USER_DEVICE_LIMIT_EXCEEDED):
                            evicted.append((session, USER_DEVICE_LIMIT_EXCEEDED))
        return evicted

    async def _evict(self, session: DeviceSession, reason: str) -> bool:
        try:
            await self._mark_revoked(session, reason)
        except Exception as exc:
            logger.error(
                "device_session_eviction_failed",
                session_id=session.id,
                reason=reason,
                error=str(exc),
            )
            return False
        logger.warning(
            "device_session_evicted",
            session_id=session.id,
            user_id=session.user_id,
            device_id=session.device_id,
            reason=reason,
        )
        return True

    async def _notify_evicted(self, session: DeviceSession, reason: str) -> None:
        if self.eviction_listener is None:
            return
        try:
            await self.eviction_listener(session, reason)
        except Exception as exc:
            logger.error(
                "device_session_eviction_listener_failed",
                session_id=session.id,
                error=str(exc),
            )

    async def _mark_revoked(self, session: DeviceSession, reason: str) -> None:
        revoked = session.copy(
            status=SessionStatus.REVOKED,
            revoked_at=self.clock.now(),
            revoked_reason=str(getattr(reason, "value", reason)),
        )
        await self._call(self.storage.update_session(revoked), "device_session_update")

    async def _active_devices(self, user_id: str) -> List[DeviceInfo]:
        sessions = await self._call(
            self.storage.get_user_sessions(user_id), "user_sessions_get"
        )
        return self._dedupe_devices(s for s in sessions if s.is_active)

    @staticmethod
    def _dedupe_devices(sessions) -> List[DeviceInfo]:
        by_id: Dict[str, DeviceInfo] = {}
        for session in sessions:
            if session.device is None:
                continue
            existing = by_id.get(session.device.device_id)
            if existing is None or session.last_accessed_at > existing.last_active_at:
                by_id[session.device.device_id] = session.device.copy(
                    last_active_at=session.last_accessed_at
                )
        return list(by_id.values())

    async def get_session(self, session_id: str) -> Optional[DeviceSession]:
        return await self._call(self.storage.get_session(session_id), "device_session_get")

    async def get_user_sessions(self, user_id: str) -> List[DeviceSession]:
        sessions = await self._call(
            self.storage.get_user_sessions(user_id), "user_sessions_get"
        )
        return sorted(sessions, key=lambda s: s.last_accessed_at, reverse=True)

    async def get_user_devices(self, user_id: str) -> List[DeviceInfo]:
        sessions = await self.get_user_sessions(user_id)
        return self._dedupe_devices(sessions)

    async def revoke_session(self, session_id: str, reason: str = "logout") -> bool:
        session = await self.get_session(session_id)
        if session is None:
            return False
        async with self._hold(session.user_id, session.device_id):
            session = await self.get_session(session_id)
            if session is None:
                return False
            # An already revoked session keeps its first reason
            if session.is_active:
                await self._mark_revoked(session, reason)
        logger.info(
            "device_session_revoked",
            session_id=session_id,
            user_id=session.user_id,
            device_id=session.device_id,
            reason=str(getattr(reason, "value", reason)),
        )
        return True

    async def _revoke_active(self, sessions: List[DeviceSession], reason: str) -> int:
        revoked = 0
        for session in sessions:
            if not session.is_active:
                continue
            try:
                async with self._hold(session.user_id, session.device_id):
                    current = await self.get_session(session.id)
                    if current is None or not current.is_active:
                        continue
                    await self._mark_revoked(current, reason)
            except Exception as exc:
                logger.error(
                    "device_session_revoke_failed", session_id=session.id, error=str(exc)
                )
                continue
            revoked += 1
        return revoked

    async def revoke_device_sessions(self, device_id: str, reason: str = "security") -> int:
        sessions = await self._call(
            self.storage.get_device_sessions(device_id), "device_sessions_get"
        )
        revoked = await self._revoke_active(sessions, reason)
        logger.info(
            "device_sessions_revoked",
            device_id=device_id,
            revoked=revoked,
            reason=str(getattr(reason, "value", reason)),
        )
        return revoked

    async def revoke_all_user_sessions(self, user_id: str, reason: str = "security") -> int:
        sessions = await self._call(
            self.storage.get_user_sessions(user_id), "user_sessions_get"
        )
        revoked = await self._revoke_active(sessions, reason)
        logger.info(
            "user_device_sessions_revoked",
            user_id=user_id,
            revoked=revoked,
            reason=str(getattr(reason, "value", reason)),
        )
        return revoked

    async def update_activity(self, session_id: str) -> None:
        session = await self.get_session(session_id)
        if session is None or not session.is_active:
            return
        async with self._hold(session.user_id, session.device_id):
            # A revoke or eviction may have landed while waiting for the lock
            session = await self.get_session(session_id)
            if session is None or not session.is_active:
                return
            now = self.clock.now()
            device = session.device.copy(last_active_at=now) if session.device else None
            await self._call(
                self.storage.update_session(session.copy(last_accessed_at=now, device=device)),
                "device_session_update",
            )
            if device is not None:
                stored = await self._call(
                    self.storage.get_device(device.device_id), "device_get"
                )
                if stored is not None:
                    await self._call(
                        self.storage.update_device(stored.copy(last_active_at=now)),
                        "device_update",
                    )

    async def mark_trusted(self, device_id: str, trusted: bool = True) -> bool:
        async with self._locks.hold(("device", device_id)):
            device = await self._call(self.storage.get_device(device_id), "device_get")
            if device is None:
                return False
            await self._call(
                self.storage.update_device(device.copy(trusted=trusted)), "device_update"
            )
        logger.info("device_trust_updated", device_id=device_id, trusted=trusted)
        return True

    async def cleanup_expired(self) -> int:
        removed = await self._call(
            self.storage.cleanup_expired(self.clock.now()), "device_session_cleanup"
        )
        if removed:
            logger.info("device_session_cleanup_completed", removed=removed)
        return removed

    async def start(self) -> None:
        await self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()


__all__ = [
    "DeviceLimits",
    "DeviceSessionRegistry",
    "EvictionListener",
    "compute_device_id",
    "parse_device_type",
    "parse_user_agent",
]

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Union

Scalar = Union[str, int, float, bool, None]
Metadata = Dict[str, Scalar]


class TokenRevocationReason(str, Enum):
    LOGOUT = "logout"
    SECURITY = "security"
    ADMIN = "admin"
    EXPIRED = "expired"


class AttemptKind(str, Enum):
    LOGIN = "login"
    PASSWORD_RESET = "password_reset"
    MFA = "mfa"
    REFRESH = "refresh"


class DeviceType(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"
    UNKNOWN = "unknown"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    REVOKED = "revoked"


@dataclass(frozen=True)
class BlacklistedToken:
    """A revoked token identifier, kept until the token would have expired anyway."""

    token_id: str
    expires_at: datetime
    revoked_at: datetime
    reason: TokenRevocationReason
    user_id: Optional[str] = None
    metadata: Optional[Metadata] = None


@dataclass(frozen=True)
class RateLimitAttempt:
    identifier: str
    timestamp: datetime
    kind: AttemptKind
    success: bool
    metadata: Optional[Metadata] = None


@dataclass(frozen=True)
class Lockout:
    identifier: str
    kind: AttemptKind
    locked_until: datetime


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining_attempts: int
    reset_time: datetime
    current_attempts: int
    locked_until: Optional[datetime] = None


@dataclass
class DeviceInfo:
    device_id: str
    device_type: DeviceType
    user_agent: str
    ip_address: str
    first_seen_at: datetime
    last_active_at: datetime
    fingerprint: Optional[str] = None
    os: Optional[str] = None
    browser: Optional[str] = None
    trusted: bool = False

    def copy(self, **changes) -> "DeviceInfo":
        return replace(self, **changes)


@dataclass
class Session:
    id: str
    user_id: str
    access_token: str
    created_at: datetime
    expires_at: datetime
    last_accessed_at: datetime
    refresh_token: Optional[str] = None
    metadata: Metadata = field(default_factory=dict)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class DeviceSession(Session):
    """A session bound to the device it was created from."""

    device: Optional[DeviceInfo] = None
    status: SessionStatus = SessionStatus.ACTIVE
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None

    @property
    def device_id(self) -> Optional[str]:
        return self.device.device_id if self.device else None

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def copy(self, **changes) -> "DeviceSession":
        updated = replace(self, **changes)
        updated.metadata = dict(updated.metadata or {})
        if "device" not in changes and self.device is not None:
            updated.device = self.device.copy()
        return updated


@dataclass(frozen=True)
class RefreshTokenRecord:
    refresh_token: str
    user_id: str
    session_id: str
    expires_at: datetime


@dataclass
class User:
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    tenant_id: str = "public"
    status: str = "active"

    @property
    def is_active(self) -> bool:
        return self.status == "active"

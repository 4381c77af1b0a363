from __future__ import annotations

import asyncio
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Tuple

from sessionguard.clock import Clock, SystemClock
from sessionguard.config import Settings, get_settings, load_settings
from sessionguard.logging import get_logger, log_security_event
from sessionguard.service.background import PeriodicTask
from sessionguard.service.devices import DeviceLimits, DeviceSessionRegistry
from sessionguard.service.errors import (
    ConfigurationError,
    InvalidCredentialsError,
    RateLimitedError,
    ServerError,
)
from sessionguard.service.identity import Credentials, IdentityProvider
from sessionguard.service.locks import KeyedLock
from sessionguard.service.rate_limit import RateLimitConfig, RateLimiter
from sessionguard.service.revocation import RevocationStore
from sessionguard.service.tokens import TokenSigner
from sessionguard.storage.common import SessionTable, bounded
from sessionguard.storage.memory import MemorySessionTable
from sessionguard.storage.models import (
    AttemptKind,
    DeviceSession,
    Metadata,
    RefreshTokenRecord,
    TokenRevocationReason,
    User,
)

logger = get_logger(__name__)

GENERIC_FAILURE = "Authentication failed"
_SCALAR_TYPES = (str, int, float, bool, type(None))


@dataclass
class AuthResult:
    success: bool
    user: Optional[User] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    session: Optional[DeviceSession] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    # Advisory back-off in seconds; the engine never sleeps on the caller's behalf
    retry_after: float = 0.0
    locked_until: Optional[datetime] = None


def _validate_settings(settings: Settings) -> None:
    # Settings.model_construct() skips the field validators, so run them again
    load_settings(**settings.model_dump())


def _clean_metadata(metadata: Optional[Metadata]) -> Metadata:
    if not metadata:
        return {}
    cleaned = {str(k): v for k, v in metadata.items() if isinstance(v, _SCALAR_TYPES)}
    if len(cleaned) != len(metadata):
        logger.debug(
            "session_metadata_dropped",
            keys=sorted(str(k) for k in metadata if str(k) not in cleaned),
        )
    return cleaned


class AuthService:
    """Issue, validate, rotate and revoke session tokens.

    Composes the revocation store, rate limiter and device session registry
    with a session table holding issued sessions and refresh records. Public
    operations never raise for runtime failures: they log and return a
    generic failure (``AuthResult`` with an error, ``None``, ``False`` or
    ``0``). Validation and revocation fail closed when storage misbehaves.
    """

    def __init__(
        self,
        settings: Settings,
        identity: IdentityProvider,
        *,
        clock: Optional[Clock] = None,
        revocation_store: Optional[RevocationStore] = None,
        rate_limiter: Optional[RateLimiter] = None,
        device_registry: Optional[DeviceSessionRegistry] = None,
        session_table: Optional[SessionTable] = None,
    ) -> None:
        if identity is None:
            raise ConfigurationError("an identity provider is required")
        _validate_settings(settings)
        self.settings = settings
        self.identity = identity
        self.clock = clock or SystemClock()
        self.operation_timeout = settings.storage_timeout_seconds
        self.access_ttl = settings.access_token_ttl_seconds
        self.refresh_ttl = settings.refresh_token_ttl_seconds

        self.signer = TokenSigner(
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.jwt_leeway_seconds,
            clock=self.clock,
        )
        try:
            self.revocation: Optional[RevocationStore] = None
            if settings.enable_blacklist:
                self.revocation = revocation_store or RevocationStore(
                    clock=self.clock,
                    cleanup_interval=settings.blacklist_cleanup_interval_seconds,
                    operation_timeout=self.operation_timeout,
                )
            self.rate_limiter: Optional[RateLimiter] = None
            if settings.enable_rate_limit:
                self.rate_limiter = rate_limiter or RateLimiter(
                    RateLimitConfig.from_settings(settings),
                    clock=self.clock,
                    operation_timeout=self.operation_timeout,
                )
            self.registry = device_registry or DeviceSessionRegistry(
                DeviceLimits.from_settings(settings),
                clock=self.clock,
                operation_timeout=self.operation_timeout,
            )
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        # A listener already set on an injected registry still runs after ours
        self._chained_eviction_listener = self.registry.eviction_listener
        self.registry.eviction_listener = self._on_device_eviction
        self.sessions: SessionTable = session_table or MemorySessionTable()
        self._locks = KeyedLock()
        self._sweeper = PeriodicTask(
            "auth_session_cleanup", self.cleanup, settings.session_cleanup_interval_seconds
        )
        self._storage_backends: List[Any] = []

    async def __aenter__(self) -> "AuthService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _call(self, awaitable, operation: str):
        return await bounded(awaitable, self.operation_timeout, operation)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def authenticate(
        self,
        credentials: Credentials,
        ip_address: str,
        user_agent: str,
        metadata: Optional[Metadata] = None,
        *,
        fingerprint: Optional[str] = None,
    ) -> AuthResult:
        try:
            if self.rate_limiter is not None:
                limit = await self.rate_limiter.check_limit(ip_address, AttemptKind.LOGIN)
                if not limit.allowed:
                    logger.warning("authentication_rate_limited", ip_address=ip_address)
                    error = RateLimitedError()
                    return AuthResult(
                        success=False,
                        error=error.message,
                        error_code=error.error_code,
                        retry_after=self.rate_limiter.progressive_delay(
                            limit.current_attempts
                        ),
                        locked_until=limit.locked_until,
                    )

            user = await self.identity.verify_credentials(credentials)

            attempt = None
            if self.rate_limiter is not None:
                attempt = await self.rate_limiter.record_attempt(
                    ip_address,
                    AttemptKind.LOGIN,
                    success=user is not None,
                    metadata={"user_agent": user_agent},
                )

            if user is None:
                logger.warning("authentication_invalid_credentials", ip_address=ip_address)
                error = InvalidCredentialsError()
                delay = 0.0
                if attempt is not None:
                    delay = self.rate_limiter.progressive_delay(attempt.current_attempts)
                return AuthResult(
                    success=False,
                    error=error.message,
                    error_code=error.error_code,
                    retry_after=delay,
                    locked_until=attempt.locked_until if attempt else None,
                )

            async with self._locks.hold(user.id):
                if self.settings.max_concurrent_sessions:
                    await self._enforce_concurrent_limit(user.id)
                session, access_token, refresh_token = await self._issue_session(
                    user,
                    user_agent=user_agent,
                    ip_address=ip_address,
                    fingerprint=fingerprint,
                    metadata=_clean_metadata(metadata),
                )
        except Exception as exc:
            logger.error(
                "authentication_error",
                error=str(exc),
                error_type=type(exc).__name__,
                ip_address=ip_address,
            )
            return AuthResult(
                success=False, error=GENERIC_FAILURE, error_code=ServerError.error_code
            )

        logger.info(
            "authentication_succeeded",
            user_id=user.id,
            session_id=session.id,
            ip_address=ip_address,
        )
        return AuthResult(
            success=True,
            user=user,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_ttl,
            session=session,
        )

    async def _enforce_concurrent_limit(self, user_id: str) -> None:
        cap = self.settings.max_concurrent_sessions
        now = self.clock.now()
        sessions = []
        for session_id in await self._call(
            self.sessions.user_session_ids(user_id), "session_index_get"
        ):
            session = await self._call(self.sessions.get_session(session_id), "session_get")
            if session is not None and session.expires_at > now:
                sessions.append(session)
        if len(sessions) < cap:
            return
        sessions.sort(key=lambda s: s.created_at)
        victims = sessions[: len(sessions) - cap + 1]
        for session in victims:
            try:
                await self._revoke_local(
                    session, TokenRevocationReason.SECURITY, "concurrent_session_limit"
                )
            except Exception as exc:
                logger.error(
                    "concurrent_session_eviction_failed",
                    session_id=session.id,
                    error=str(exc),
                )
        logger.info(
            "concurrent_session_limit_enforced",
            user_id=user_id,
            max_sessions=cap,
            revoked=len(victims),
        )

    async def _issue_session(
        self,
        user: User,
        *,
        user_agent: str,
        ip_address: str,
        fingerprint: Optional[str],
        metadata: Metadata,
    ) -> Tuple[DeviceSession, str, str]:
        session_id = str(uuid.uuid4())
        access_token = self.signer.issue(
            user.id, session_id, self.access_ttl, tenant_id=user.tenant_id
        )
        refresh_token = secrets.token_urlsafe(32)
        now = self.clock.now()
        session = await self.registry.create_session(
            user.id,
            session_id,
            access_token,
            now + timedelta(seconds=self.access_ttl),
            user_agent,
            ip_address,
            refresh_token=refresh_token,
            fingerprint=fingerprint,
            metadata=metadata,
        )
        await self._call(self.sessions.put_session(session), "session_put")
        await self._call(
            self.sessions.put_refresh(
                RefreshTokenRecord(
                    refresh_token=refresh_token,
                    user_id=user.id,
                    session_id=session_id,
                    expires_at=now + timedelta(seconds=self.refresh_ttl),
                )
            ),
            "refresh_put",
        )
        return session, access_token, refresh_token

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def validate_session(self, access_token: str) -> Optional[DeviceSession]:
        try:
            payload = self.signer.decode(access_token)
            if payload is None:
                logger.info("access_token_rejected")
                return None
            token_id = str(payload["jti"])
            user_id = str(payload["sub"])

            if self.revocation is not None:
                try:
                    revoked = await self.revocation.is_revoked(token_id)
                except Exception as exc:
                    # Cannot confirm the token is unrevoked
                    logger.error(
                        "revocation_check_failed", token_id=token_id, error=str(exc)
                    )
                    return None
                if revoked:
                    log_security_event(
                        "revoked_token_presented",
                        logger=logger,
                        token_id=token_id,
                        user_id=user_id,
                    )
                    return None

            session = await self._call(self.sessions.get_session(token_id), "session_get")
            now = self.clock.now()
            if session is None or session.expires_at <= now:
                logger.warning(
                    "session_missing_or_expired",
                    session_id=token_id,
                    found=session is not None,
                )
                await self._expire(token_id, user_id, session, payload)
                return None
            if session.user_id != user_id:
                return None

            session = session.copy(last_accessed_at=now)
            await self._call(self.sessions.update_session(session), "session_update")
            await self.registry.update_activity(token_id)
            return session
        except Exception as exc:
            logger.error(
                "session_validation_error", error=str(exc), error_type=type(exc).__name__
            )
            return None

    async def _expire(
        self,
        token_id: str,
        user_id: str,
        session: Optional[DeviceSession],
        payload: dict,
    ) -> None:
        if session is not None:
            expires_at = session.expires_at
        else:
            expires_at = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        if self.revocation is not None:
            await self.revocation.add(
                token_id, expires_at, TokenRevocationReason.EXPIRED, user_id=user_id
            )
        if session is not None:
            await self._call(self.sessions.delete_session(token_id), "session_delete")
            await self.registry.revoke_session(token_id, TokenRevocationReason.EXPIRED.value)

    async def get_current_user(self, access_token: str) -> Optional[User]:
        session = await self.validate_session(access_token)
        if session is None:
            return None
        try:
            return await self.identity.get_user(session.user_id)
        except Exception as exc:
            logger.error("current_user_lookup_failed", user_id=session.user_id, error=str(exc))
            return None

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh_token(self, refresh_token: str) -> Optional[DeviceSession]:
        try:
            # Consumed before anything else so a failure below leaves it unusable
            record = await self._call(self.sessions.pop_refresh(refresh_token), "refresh_pop")
            if record is None:
                logger.warning("refresh_token_unknown")
                return None
            if record.expires_at <= self.clock.now():
                logger.warning(
                    "refresh_token_expired",
                    session_id=record.session_id,
                    expires_at=record.expires_at.isoformat(),
                )
                return None
            return await asyncio.shield(self._rotate(record))
        except Exception as exc:
            logger.error(
                "token_refresh_failed", error=str(exc), error_type=type(exc).__name__
            )
            return None

    async def _rotate(self, record: RefreshTokenRecord) -> Optional[DeviceSession]:
        async with self._locks.hold(record.user_id):
            old = await self._call(
                self.sessions.delete_session(record.session_id), "session_delete"
            )
            if self.revocation is not None:
                # Without the local session the token can live at most one access TTL
                expires_at = (
                    old.expires_at
                    if old is not None
                    else self.clock.now() + timedelta(seconds=self.access_ttl)
                )
                await self.revocation.add(
                    record.session_id,
                    expires_at,
                    TokenRevocationReason.SECURITY,
                    user_id=record.user_id,
                )
            registry_view = await self.registry.get_session(record.session_id)
            await self.registry.revoke_session(record.session_id, "token_rotated")

            user = await self.identity.get_user(record.user_id)
            if user is None or not user.is_active:
                logger.warning("refresh_user_unavailable", user_id=record.user_id)
                return None

            previous = old or registry_view
            device = previous.device if previous is not None else None
            metadata = dict(previous.metadata or {}) if previous is not None else {}
            metadata.pop("new_device", None)
            session, _, _ = await self._issue_session(
                user,
                user_agent=device.user_agent if device else "",
                ip_address=device.ip_address if device else "",
                fingerprint=device.fingerprint if device else None,
                metadata=metadata,
            )
        logger.info(
            "token_refreshed",
            user_id=user.id,
            old_session_id=record.session_id,
            new_session_id=session.id,
        )
        return session

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    async def _revoke_local(
        self,
        session: DeviceSession,
        reason: TokenRevocationReason,
        registry_reason: Optional[str] = None,
    ) -> None:
        if self.revocation is not None:
            await self.revocation.add(
                session.id, session.expires_at, reason, user_id=session.user_id
            )
        await self.registry.revoke_session(session.id, registry_reason or reason.value)
        await self._call(self.sessions.delete_session(session.id), "session_delete")
        if session.refresh_token:
            await self._call(self.sessions.delete_refresh(session.refresh_token), "refresh_delete")

    async def _on_device_eviction(self, session: DeviceSession, reason: str) -> None:
        try:
            if self.revocation is not None:
                await self.revocation.add(
                    session.id,
                    session.expires_at,
                    TokenRevocationReason.SECURITY,
                    user_id=session.user_id,
                    metadata={"eviction": reason},
                )
            await self._call(self.sessions.delete_session(session.id), "session_delete")
            if session.refresh_token:
                await self._call(
                    self.sessions.delete_refresh(session.refresh_token), "refresh_delete"
                )
        finally:
            if self._chained_eviction_listener is not None:
                await self._chained_eviction_listener(session, reason)

    async def revoke_session(self, session_id: str) -> bool:
        try:
            session = await self._call(self.sessions.get_session(session_id), "session_get")
            if session is None:
                return False
            await self._revoke_local(session, TokenRevocationReason.LOGOUT)
        except Exception as exc:
            logger.error("session_revoke_failed", session_id=session_id, error=str(exc))
            return False
        logger.info("session_revoked", session_id=session_id, user_id=session.user_id)
        return True

    async def revoke_all_sessions(self, user_id: str) -> int:
        try:
            session_ids = await self._call(
                self.sessions.user_session_ids(user_id), "session_index_get"
            )
        except Exception as exc:
            logger.error("user_sessions_lookup_failed", user_id=user_id, error=str(exc))
            return 0
        revoked = 0
        for session_id in session_ids:
            try:
                session = await self._call(self.sessions.get_session(session_id), "session_get")
                if session is None:
                    continue
                await self._revoke_local(session, TokenRevocationReason.ADMIN)
            except Exception as exc:
                logger.error(
                    "session_revoke_failed",
                    session_id=session_id,
                    user_id=user_id,
                    error=str(exc),
                )
                continue
            revoked += 1
        logger.info("user_sessions_revoked", user_id=user_id, revoked=revoked)
        return revoked

    # ------------------------------------------------------------------
    # Introspection and lifecycle
    # ------------------------------------------------------------------

    async def get_user_active_sessions(self, user_id: str) -> List[DeviceSession]:
        try:
            session_ids = await self._call(
                self.sessions.user_session_ids(user_id), "session_index_get"
            )
            now = self.clock.now()
            sessions = []
            for session_id in session_ids:
                session = await self._call(self.sessions.get_session(session_id), "session_get")
                if session is not None and session.expires_at > now:
                    sessions.append(session)
        except Exception as exc:
            logger.error("user_sessions_lookup_failed", user_id=user_id, error=str(exc))
            return []
        return sorted(sessions, key=lambda s: s.created_at)

    async def is_healthy(self) -> bool:
        try:
            token = self.signer.issue("healthcheck", uuid.uuid4().hex, 1)
            return self.signer.decode(token) is not None
        except Exception as exc:
            logger.error("auth_health_check_failed", error=str(exc))
            return False

    async def cleanup(self) -> int:
        removed = await self._call(self.sessions.cleanup(self.clock.now()), "session_cleanup")
        if removed:
            logger.info("auth_session_cleanup_completed", removed=removed)
        return removed

    async def start(self) -> None:
        if self.revocation is not None:
            await self.revocation.start()
        if self.rate_limiter is not None:
            await self.rate_limiter.start()
        await self.registry.start()
        await self._sweeper.start()

    async def close(self) -> None:
        await self._sweeper.stop()
        await self.registry.stop()
        if self.rate_limiter is not None:
            await self.rate_limiter.stop()
        if self.revocation is not None:
            await self.revocation.stop()
        for backend in self._storage_backends:
            await backend.close()
        self._storage_backends = []
        logger.info("auth_service_closed")


async def create_auth_service(
    settings: Optional[Settings] = None,
    identity: Optional[IdentityProvider] = None,
    *,
    clock: Optional[Clock] = None,
    auto_start: bool = False,
) -> AuthService:
    """Build an ``AuthService`` with backends chosen from settings.

    Redis backs the revocation store and rate limiter when ``use_memory_store``
    is off and ``redis_url`` is set; device sessions always live in memory.
    """
    settings = settings or get_settings()
    if identity is None:
        raise ConfigurationError("an identity provider is required")
    _validate_settings(settings)
    clock = clock or SystemClock()

    backends: List[Any] = []
    revocation_store = None
    rate_limiter = None
    if not settings.use_memory_store:
        if not settings.redis_url:
            raise ConfigurationError("REDIS_URL is required when USE_MEMORY_STORE is false")
        from sessionguard.storage.redis_cache import (
            RedisRateLimitStorage,
            RedisRevocationStorage,
        )

        timeout = settings.storage_timeout_seconds
        if settings.enable_blacklist:
            revocation_backend = RedisRevocationStorage(settings.redis_url, socket_timeout=timeout)
            backends.append(revocation_backend)
            revocation_store = RevocationStore(
                revocation_backend,
                clock=clock,
                cleanup_interval=settings.blacklist_cleanup_interval_seconds,
                operation_timeout=timeout,
            )
        if settings.enable_rate_limit:
            rate_backend = RedisRateLimitStorage(settings.redis_url, socket_timeout=timeout)
            backends.append(rate_backend)
            rate_limiter = RateLimiter(
                RateLimitConfig.from_settings(settings),
                rate_backend,
                clock=clock,
                operation_timeout=timeout,
            )
        logger.info(
            "auth_service_redis_backends",
            revocation=revocation_store is not None,
            rate_limit=rate_limiter is not None,
        )

    service = AuthService(
        settings,
        identity,
        clock=clock,
        revocation_store=revocation_store,
        rate_limiter=rate_limiter,
    )
    service._storage_backends = backends
    if auto_start:
        await service.start()
    return service


__all__ = ["AuthResult", "AuthService", "create_auth_service", "GENERIC_FAILURE"]

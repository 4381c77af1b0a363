"""Sliding-window rate limiting with progressive lockout.

Each ``(identifier, kind)`` pair moves between two states. While open, failed
attempts inside the window are counted; when they reach ``max_attempts`` the
pair is locked until ``now + lockout``. Lockouts expire on their own, or are
cleared by a successful attempt when ``reset_on_success`` is set. Different
kinds never share a counter.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Dict, Optional

from sessionguard.clock import Clock, SystemClock
from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.background import PeriodicTask
from sessionguard.service.locks import KeyedLock
from sessionguard.storage.common import RateLimitStorage, bounded, hash_identifier
from sessionguard.storage.memory import MemoryRateLimitStorage
from sessionguard.storage.models import (
    AttemptKind,
    Lockout,
    Metadata,
    RateLimitAttempt,
    RateLimitResult,
)

logger = get_logger(__name__)

BASE_DELAY_SECONDS = 1.0
MAX_DELAY_SECONDS = 30.0
DEFAULT_OPERATION_TIMEOUT = 5.0


@dataclass(frozen=True)
class RateLimitConfig:
    window_ms: int = 15 * 60 * 1000
    max_attempts: int = 5
    lockout_ms: int = 30 * 60 * 1000
    progressive_delay: bool = True
    reset_on_success: bool = True

    def __post_init__(self) -> None:
        if self.window_ms <= 0 or self.max_attempts <= 0 or self.lockout_ms <= 0:
            raise ValueError("rate limit window, attempts and lockout must be positive")

    @property
    def window(self) -> timedelta:
        return timedelta(milliseconds=self.window_ms)

    @property
    def lockout(self) -> timedelta:
        return timedelta(milliseconds=self.lockout_ms)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimitConfig":
        return cls(
            window_ms=settings.rate_limit_window_ms,
            max_attempts=settings.rate_limit_max_attempts,
            lockout_ms=settings.rate_limit_lockout_ms,
            progressive_delay=settings.enable_progressive_delay,
            reset_on_success=settings.rate_limit_reset_on_success,
        )


RATE_LIMIT_PRESETS: Dict[str, RateLimitConfig] = {
    "strict": RateLimitConfig(
        window_ms=15 * 60 * 1000,
        max_attempts=3,
        lockout_ms=60 * 60 * 1000,
    ),
    "lenient": RateLimitConfig(
        window_ms=5 * 60 * 1000,
        max_attempts=10,
        lockout_ms=10 * 60 * 1000,
        progressive_delay=False,
    ),
    "password_reset": RateLimitConfig(
        window_ms=60 * 60 * 1000,
        max_attempts=3,
        lockout_ms=2 * 60 * 60 * 1000,
        reset_on_success=False,
    ),
}


class RateLimiter:
    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        storage: Optional[RateLimitStorage] = None,
        *,
        clock: Optional[Clock] = None,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        self.config = config or RateLimitConfig()
        self.storage = storage or MemoryRateLimitStorage()
        self.clock = clock or SystemClock()
        self.operation_timeout = operation_timeout
        self._locks = KeyedLock()
        self._sweeper = PeriodicTask(
            "rate_limit_cleanup",
            self.cleanup,
            self.config.window.total_seconds(),
        )

    @classmethod
    def from_preset(cls, name: str, **kwargs) -> "RateLimiter":
        try:
            config = RATE_LIMIT_PRESETS[name]
        except KeyError:
            raise ValueError(f"unknown rate limit preset: {name}") from None
        return cls(config, **kwargs)

    async def _call(self, awaitable, operation: str):
        return await bounded(awaitable, self.operation_timeout, operation)

    async def _evaluate(self, identifier: str, kind: AttemptKind) -> RateLimitResult:
        now = self.clock.now()
        reset_time = now + self.config.window
        lockout = await self._call(
            self.storage.get_lockout(identifier, kind, now), "rate_limit_get_lockout"
        )
        if lockout is not None:
            return RateLimitResult(
                allowed=False,
                remaining_attempts=0,
                reset_time=reset_time,
                current_attempts=self.config.max_attempts,
                locked_until=lockout.locked_until,
            )
        attempts = await self._call(
            self.storage.get_attempts(identifier, kind, now - self.config.window),
            "rate_limit_get_attempts",
        )
        failed = sum(1 for attempt in attempts if not attempt.success)
        remaining = max(0, self.config.max_attempts - failed)
        return RateLimitResult(
            allowed=remaining > 0,
            remaining_attempts=remaining,
            reset_time=reset_time,
            current_attempts=failed,
        )

    async def check_limit(
        self, identifier: str, kind: AttemptKind = AttemptKind.LOGIN
    ) -> RateLimitResult:
        return await self._evaluate(identifier, AttemptKind(kind))

    async def record_attempt(
        self,
        identifier: str,
        kind: AttemptKind = AttemptKind.LOGIN,
        success: bool = False,
        metadata: Optional[Metadata] = None,
    ) -> RateLimitResult:
        kind = AttemptKind(kind)
        subject = hash_identifier(identifier)[:16]
        async with self._locks.hold((identifier, kind)):
            now = self.clock.now()
            attempt = RateLimitAttempt(
                identifier=identifier,
                timestamp=now,
                kind=kind,
                success=success,
                metadata=dict(metadata) if metadata else None,
            )
            await self._call(self.storage.record_attempt(attempt), "rate_limit_record")

            if success and self.config.reset_on_success:
                await self._call(
                    self.storage.clear_lockout(identifier, kind), "rate_limit_clear_lockout"
                )
                await self._call(
                    self.storage.clear_failed_attempts(identifier, kind),
                    "rate_limit_clear_attempts",
                )

            result = await self._evaluate(identifier, kind)

            if success:
                logger.info("rate_limit_attempt_succeeded", subject=subject, kind=kind.value)
                return result

            logger.warning(
                "rate_limit_attempt_failed",
                subject=subject,
                kind=kind.value,
                remaining_attempts=result.remaining_attempts,
            )
            if result.remaining_attempts == 0 and result.locked_until is None:
                locked_until = now + self.config.lockout
                await self._call(
                    self.storage.set_lockout(
                        Lockout(identifier=identifier, kind=kind, locked_until=locked_until)
                    ),
                    "rate_limit_set_lockout",
                )
                logger.warning(
                    "rate_limit_lockout",
                    subject=subject,
                    kind=kind.value,
                    locked_until=locked_until.isoformat(),
                    attempts=result.current_attempts,
                )
                result = replace(result, allowed=False, locked_until=locked_until)
            return result

    def progressive_delay(self, attempt_count: int) -> float:
        """Advisory back-off in seconds for the ``attempt_count``-th failure."""
        if not self.config.progressive_delay or attempt_count <= 0:
            return 0.0
        # Cap the exponent so huge counts never overflow before the min() applies
        exponent = min(attempt_count - 1, 16)
        return min(BASE_DELAY_SECONDS * (2 ** exponent), MAX_DELAY_SECONDS)

    async def clear_limit(
        self, identifier: str, kind: AttemptKind = AttemptKind.LOGIN
    ) -> None:
        kind = AttemptKind(kind)
        async with self._locks.hold((identifier, kind)):
            await self._call(
                self.storage.clear_lockout(identifier, kind), "rate_limit_clear_lockout"
            )
            await self._call(
                self.storage.clear_failed_attempts(identifier, kind),
                "rate_limit_clear_attempts",
            )
        logger.info(
            "rate_limit_cleared", subject=hash_identifier(identifier)[:16], kind=kind.value
        )

    async def cleanup(self) -> int:
        """Drop attempts older than twice the window and expired lockouts."""
        now = self.clock.now()
        removed = await self._call(
            self.storage.cleanup(now - 2 * self.config.window), "rate_limit_cleanup"
        )
        removed += await self._call(
            self.storage.cleanup_lockouts(now), "rate_limit_cleanup_lockouts"
        )
        if removed:
            logger.info("rate_limit_cleanup_completed", removed=removed)
        return removed

    async def start(self) -> None:
        await self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()


__all__ = ["RateLimitConfig", "RATE_LIMIT_PRESETS", "RateLimiter"]

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sessionguard.clock import Clock, SystemClock, ensure_aware
from sessionguard.logging import get_logger
from sessionguard.service.background import PeriodicTask
from sessionguard.storage.common import RevocationStorage, bounded
from sessionguard.storage.memory import MemoryRevocationStorage
from sessionguard.storage.models import BlacklistedToken, Metadata, TokenRevocationReason

logger = get_logger(__name__)

DEFAULT_CLEANUP_INTERVAL_SECONDS = 60.0
DEFAULT_OPERATION_TIMEOUT = 5.0


class RevocationStore:
    """Blacklist of token ids that must be rejected before they expire.

    Each token id has at most one entry; re-adding overwrites reason and
    expiry. An entry stops counting as revoked once its ``expires_at`` has
    passed, because the token itself would fail validation from then on.
    Storage errors propagate; the orchestrator decides how to fail closed.
    """

    def __init__(
        self,
        storage: Optional[RevocationStorage] = None,
        *,
        clock: Optional[Clock] = None,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        self.storage = storage or MemoryRevocationStorage()
        self.clock = clock or SystemClock()
        self.operation_timeout = operation_timeout
        self._sweeper = PeriodicTask("revocation_cleanup", self.cleanup, cleanup_interval)

    async def add(
        self,
        token_id: str,
        expires_at: datetime,
        reason: TokenRevocationReason,
        *,
        user_id: Optional[str] = None,
        metadata: Optional[Metadata] = None,
    ) -> BlacklistedToken:
        entry = BlacklistedToken(
            token_id=token_id,
            expires_at=ensure_aware(expires_at),
            revoked_at=self.clock.now(),
            reason=TokenRevocationReason(reason),
            user_id=user_id,
            metadata=dict(metadata) if metadata else None,
        )
        await bounded(self.storage.add(entry), self.operation_timeout, "revocation_add")
        logger.info(
            "token_revoked",
            token_id=token_id,
            reason=entry.reason.value,
            user_id=user_id,
        )
        return entry

    async def is_revoked(self, token_id: str) -> bool:
        return await bounded(
            self.storage.is_revoked(token_id, self.clock.now()),
            self.operation_timeout,
            "revocation_check",
        )

    async def get_entry(self, token_id: str) -> Optional[BlacklistedToken]:
        return await bounded(
            self.storage.get(token_id), self.operation_timeout, "revocation_get"
        )

    async def remove(self, token_id: str) -> bool:
        removed = await bounded(
            self.storage.remove(token_id), self.operation_timeout, "revocation_remove"
        )
        if removed:
            logger.info("token_revocation_removed", token_id=token_id)
        return removed

    async def cleanup(self) -> int:
        removed = await bounded(
            self.storage.cleanup(self.clock.now()),
            self.operation_timeout,
            "revocation_cleanup",
        )
        if removed:
            logger.info("revocation_cleanup_completed", removed=removed)
        return removed

    async def size(self) -> int:
        return await bounded(self.storage.size(), self.operation_timeout, "revocation_size")

    async def start(self) -> None:
        await self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()


__all__ = ["RevocationStore"]

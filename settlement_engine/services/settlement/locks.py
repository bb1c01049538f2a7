"""Per-settlement run lock.

Date uniqueness only protects ``generate``.  Two overlapping ``process`` or
``retry_failed_payouts`` runs for the same settlement (a scheduler tick and
an operator, say) would submit the same payouts twice, so they serialize on
this lock and the loser gets ``ConflictError`` instead of waiting.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable

from settlement_engine.core.exceptions import ConflictError
from settlement_engine.core.logging import get_logger

logger = get_logger(__name__)


class SettlementLocks:
    """Registry of in-process locks keyed by settlement id."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}

    def is_locked(self, settlement_id: Hashable) -> bool:
        lock = self._locks.get(settlement_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, settlement_id: Hashable, purpose: str = "process") -> AsyncIterator[None]:
        lock = self._locks.setdefault(settlement_id, asyncio.Lock())
        if lock.locked():
            logger.warning(
                "Settlement %s is already being processed, refusing %s", settlement_id, purpose
            )
            raise ConflictError(
                "Settlement is already being processed", "SETTLEMENT_LOCKED"
            )
        async with lock:
            try:
                yield
            finally:
                # Nobody ever waits on these locks, so the entry can go.
                self._locks.pop(settlement_id, None)

"""Periodic expiry of abandoned sessions and overdue consent links."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from ageproof.models.session import SessionStatus, VerificationOutcome
from ageproof.services.guardian import GuardianConsentLinker
from ageproof.stores.repository import Repository

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Moves overdue records to their expired state. Safe to run repeatedly."""

    def __init__(
        self,
        repository: Repository,
        linker: GuardianConsentLinker,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._repository = repository
        self._linker = linker
        self._clock = clock

    async def sweep(self) -> tuple[int, int]:
        """Run one pass.

        Returns:
            (sessions expired, links expired)
        """
        now = self._clock()
        sessions = 0
        for session in await self._repository.list_overdue_sessions(now):
            updated = await self._repository.update_session_if(
                session.id,
                SessionStatus.PENDING,
                status=SessionStatus.EXPIRED,
                outcome=VerificationOutcome.EXPIRED,
                completed_at=now,
            )
            if updated is not None:
                sessions += 1

        links = await self._linker.expire_overdue()
        if sessions or links:
            logger.info(f"Sweep expired {sessions} sessions and {links} guardian links")
        return sessions, links

    async def run_forever(self, interval_seconds: float) -> None:
        while True:
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Expiry sweep failed: {e}")
            await asyncio.sleep(interval_seconds)

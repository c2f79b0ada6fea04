"""Guardian notification delivery."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class GuardianNotifier(ABC):
    @abstractmethod
    async def send_guardian_request(
        self, contact: str, link_url: str, expires_at: float
    ) -> None:
        """Deliver the consent link to the guardian.

        The contact is used for delivery only and is never stored.
        """
        ...


class LoggingGuardianNotifier(GuardianNotifier):
    """Records that a request was sent without sending anything."""

    async def send_guardian_request(
        self, contact: str, link_url: str, expires_at: float
    ) -> None:
        logger.info(f"Guardian consent request issued, expires_at={expires_at:.0f}")

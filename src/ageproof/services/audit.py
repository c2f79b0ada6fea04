"""Audit trail for verification and consent events.

Audit writes must never break the request they describe. The AuditTrail
wrapper logs sink failures locally and carries on.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any

logger = logging.getLogger(__name__)

# Keys that would carry identity payloads; dropped before any sink sees them.
_IDENTITY_KEYS = frozenset(
    {
        "dob",
        "date_of_birth",
        "birthdate",
        "access_token",
        "id_token",
        "code_verifier",
        "name",
        "guardian_contact",
    }
)


class AuditLogger(ABC):
    @abstractmethod
    async def log_success(self, action: str, context: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def log_failure(self, action: str, context: dict[str, Any]) -> None:
        ...


class LoggingAuditLogger(AuditLogger):
    """Writes one JSON line per event to the ageproof.audit logger."""

    def __init__(self, logger_name: str = "ageproof.audit") -> None:
        self._logger = logging.getLogger(logger_name)

    async def log_success(self, action: str, context: dict[str, Any]) -> None:
        self._logger.info(self._format("success", action, context))

    async def log_failure(self, action: str, context: dict[str, Any]) -> None:
        self._logger.warning(self._format("failure", action, context))

    @staticmethod
    def _format(result: str, action: str, context: dict[str, Any]) -> str:
        record = {**context, "ts": time.time(), "action": action, "result": result}
        return json.dumps(record, default=str, sort_keys=True)


class AuditTrail:
    """Non-raising front for an AuditLogger sink."""

    def __init__(self, sink: AuditLogger) -> None:
        self._sink = sink

    async def success(self, action: str, /, **context: Any) -> None:
        try:
            await self._sink.log_success(action, scrub(context))
        except Exception as e:
            logger.error(f"Audit sink failed to record {action}: {e}")

    async def failure(self, action: str, /, **context: Any) -> None:
        try:
            await self._sink.log_failure(action, scrub(context))
        except Exception as e:
            logger.error(f"Audit sink failed to record {action}: {e}")


def scrub(context: dict[str, Any]) -> dict[str, Any]:
    """Drop identity-bearing keys and None values from an audit context."""
    return {
        k: v
        for k, v in context.items()
        if k.lower() not in _IDENTITY_KEYS and v is not None
    }

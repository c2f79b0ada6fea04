"""Durable storage for verification sessions, consent links and artifacts.

Status changes go through conditional updates: the caller names the status
it expects to replace, and the write only happens if the record still has
it. A False/None result means another request got there first.
"""

from __future__ import annotations

import dataclasses
import logging
from abc import ABC, abstractmethod
from typing import Any

from ageproof.models.consent import ConsentArtifact, GuardianConsentLink, LinkStatus
from ageproof.models.session import SessionStatus, VerificationSession

logger = logging.getLogger(__name__)


class Repository(ABC):
    # ================================
    # Verification sessions
    # ================================

    @abstractmethod
    async def add_session(self, session: VerificationSession) -> None:
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> VerificationSession | None:
        ...

    @abstractmethod
    async def update_session_if(
        self, session_id: str, expected: SessionStatus, **changes: Any
    ) -> VerificationSession | None:
        """Apply changes only if the session still has the expected status.

        Returns:
            The updated session, or None if the session is missing or its
            status has already moved on
        """
        ...

    @abstractmethod
    async def list_overdue_sessions(self, now: float) -> list[VerificationSession]:
        """Pending sessions whose expires_at has passed."""
        ...

    # ================================
    # Guardian consent links
    # ================================

    @abstractmethod
    async def add_link(self, link: GuardianConsentLink) -> None:
        ...

    @abstractmethod
    async def get_link(self, link_id: str) -> GuardianConsentLink | None:
        ...

    @abstractmethod
    async def get_link_by_token(self, request_token: str) -> GuardianConsentLink | None:
        ...

    @abstractmethod
    async def get_link_by_minor_session(
        self, session_id: str
    ) -> GuardianConsentLink | None:
        ...

    @abstractmethod
    async def update_link_if(
        self, link_id: str, expected: LinkStatus, **changes: Any
    ) -> GuardianConsentLink | None:
        ...

    @abstractmethod
    async def list_overdue_links(self, now: float) -> list[GuardianConsentLink]:
        """Non-terminal links whose expires_at has passed."""
        ...

    # ================================
    # Consent artifacts
    # ================================

    @abstractmethod
    async def add_artifact(self, artifact: ConsentArtifact) -> None:
        ...

    @abstractmethod
    async def get_valid_artifact(self, artifact_id: str) -> ConsentArtifact | None:
        """The verified artifact with this id, ignoring rejected records."""
        ...


class InMemoryRepository(Repository):
    """Dict-backed repository.

    Conditional updates hold no await between the status check and the
    write, which makes them atomic within one event loop.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, VerificationSession] = {}
        self._links: dict[str, GuardianConsentLink] = {}
        self._artifacts: dict[str, ConsentArtifact] = {}

    # ================================
    # Verification sessions
    # ================================

    async def add_session(self, session: VerificationSession) -> None:
        if session.id in self._sessions:
            raise ValueError(f"Session {session.id} already exists")
        self._sessions[session.id] = session

    async def get_session(self, session_id: str) -> VerificationSession | None:
        return self._sessions.get(session_id)

    async def update_session_if(
        self, session_id: str, expected: SessionStatus, **changes: Any
    ) -> VerificationSession | None:
        current = self._sessions.get(session_id)
        if current is None or current.status != expected:
            return None
        updated = dataclasses.replace(current, **changes)
        self._sessions[session_id] = updated
        return updated

    async def list_overdue_sessions(self, now: float) -> list[VerificationSession]:
        return [
            s
            for s in self._sessions.values()
            if s.status is SessionStatus.PENDING and s.expires_at <= now
        ]

    # ================================
    # Guardian consent links
    # ================================

    async def add_link(self, link: GuardianConsentLink) -> None:
        if link.id in self._links:
            raise ValueError(f"Link {link.id} already exists")
        self._links[link.id] = link

    async def get_link(self, link_id: str) -> GuardianConsentLink | None:
        return self._links.get(link_id)

    async def get_link_by_token(self, request_token: str) -> GuardianConsentLink | None:
        return self._find_link(request_token=request_token)

    async def get_link_by_minor_session(
        self, session_id: str
    ) -> GuardianConsentLink | None:
        return self._find_link(minor_session_id=session_id)

    async def update_link_if(
        self, link_id: str, expected: LinkStatus, **changes: Any
    ) -> GuardianConsentLink | None:
        current = self._links.get(link_id)
        if current is None or current.status != expected:
            return None
        updated = dataclasses.replace(current, **changes)
        self._links[link_id] = updated
        return updated

    async def list_overdue_links(self, now: float) -> list[GuardianConsentLink]:
        return [
            link
            for link in self._links.values()
            if not link.status.is_terminal and link.expires_at <= now
        ]

    def _find_link(self, **criteria: str) -> GuardianConsentLink | None:
        for link in self._links.values():
            if all(getattr(link, k) == v for k, v in criteria.items()):
                return link
        return None

    # ================================
    # Consent artifacts
    # ================================

    async def add_artifact(self, artifact: ConsentArtifact) -> None:
        if artifact.record_id in self._artifacts:
            raise ValueError(f"Artifact record {artifact.record_id} already exists")
        self._artifacts[artifact.record_id] = artifact

    async def get_valid_artifact(self, artifact_id: str) -> ConsentArtifact | None:
        for artifact in self._artifacts.values():
            if artifact.signature_valid and artifact.artifact_id == artifact_id:
                return artifact
        return None

    def list_artifacts(self) -> list[ConsentArtifact]:
        return list(self._artifacts.values())

"""Guardian consent linking for minors.

A link ties a minor's verification session to the guardian who answers for
it. The guardian verifies through an ordinary session of their own; the
link only records which session that was and what the guardian decided.

Allowed transitions:

    awaiting_guardian -> guardian_verified -> approved | denied
    awaiting_guardian -> denied        (guardian is a minor)
    any non-terminal  -> expired       (sweep)

A guardian session that proves a minor, or someone no older than the
minor, denies the link for good. Only the most recent guardian session
started for a link can move it.

Every transition is a conditional update on the current status. Losing a
race means the other request already handled it.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from ageproof.models.consent import (
    ConsentAction,
    ConsentArtifact,
    GuardianConsentLink,
    GuardianDecision,
    LinkStatus,
    can_transition,
)
from ageproof.models.errors import (
    InvalidTransitionError,
    LinkNotFoundError,
    SessionNotFoundError,
)
from ageproof.models.session import (
    AuthorizationStart,
    Provider,
    SessionStatus,
    VerificationOutcome,
    VerificationSession,
)
from ageproof.services.audit import AuditTrail
from ageproof.services.notify import GuardianNotifier
from ageproof.services.security import generate_link_id, generate_request_token
from ageproof.services.sessions import SessionManager
from ageproof.services.verification_tokens import VerificationTokenService
from ageproof.stores.repository import Repository

logger = logging.getLogger(__name__)

GUARDIAN_MIN_AGE = 18


class GuardianConsentLinker:
    def __init__(
        self,
        repository: Repository,
        sessions: SessionManager,
        tokens: VerificationTokenService,
        audit: AuditTrail,
        notifier: GuardianNotifier,
        link_ttl_seconds: float,
        public_base_url: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._repository = repository
        self._sessions = sessions
        self._tokens = tokens
        self._audit = audit
        self._notifier = notifier
        self.link_ttl_seconds = link_ttl_seconds
        self._public_base_url = public_base_url.rstrip("/")
        self._clock = clock

    # ================================
    # Link lifecycle
    # ================================

    async def create_link(self, minor_session_id: str) -> GuardianConsentLink:
        """Open a consent link for a minor's session. Idempotent per session.

        Raises:
            SessionNotFoundError: If the minor's session does not exist
        """
        existing = await self._repository.get_link_by_minor_session(minor_session_id)
        if existing is not None:
            return existing

        if await self._repository.get_session(minor_session_id) is None:
            raise SessionNotFoundError(f"Session {minor_session_id} not found")

        now = self._clock()
        link = GuardianConsentLink(
            id=generate_link_id(),
            minor_session_id=minor_session_id,
            request_token=generate_request_token(),
            created_at=now,
            expires_at=now + self.link_ttl_seconds,
        )
        await self._repository.add_link(link)

        logger.info(f"Created guardian link {link.id} for session {minor_session_id}")
        await self._audit.success(
            "guardian_link_created", link_id=link.id, session_id=minor_session_id
        )
        return link

    async def request_guardian(
        self, minor_session_id: str, guardian_contact: str
    ) -> GuardianConsentLink:
        """Send the consent link to the guardian. The contact is not stored."""
        link = await self._repository.get_link_by_minor_session(minor_session_id)
        if link is None:
            raise LinkNotFoundError(f"No guardian link for session {minor_session_id}")
        link = await self._refresh_expiry(link)
        if link.status is not LinkStatus.AWAITING_GUARDIAN:
            raise InvalidTransitionError(f"Link is already {link.status.value}")

        await self._notifier.send_guardian_request(
            guardian_contact, self.link_url(link), link.expires_at
        )
        await self._audit.success("guardian_request_sent", link_id=link.id)
        return link

    def link_url(self, link: GuardianConsentLink) -> str:
        return f"{self._public_base_url}/v1/guardian/links/{link.request_token}"

    async def get_link(self, request_token: str) -> GuardianConsentLink:
        """Look up a link by its request token, expiring it if overdue.

        Raises:
            LinkNotFoundError: If no link has this token
        """
        if not request_token:
            raise LinkNotFoundError("Missing request token")
        link = await self._repository.get_link_by_token(request_token)
        if link is None:
            raise LinkNotFoundError("Unknown guardian request token")
        return await self._refresh_expiry(link)

    # ================================
    # Guardian verification
    # ================================

    async def start_guardian_verification(
        self, request_token: str, provider: Provider
    ) -> AuthorizationStart:
        """Begin the guardian's own verification session for a link.

        A new attempt replaces an unfinished earlier one; only the most
        recent guardian session is linked.
        """
        link = await self.get_link(request_token)
        if link.status is not LinkStatus.AWAITING_GUARDIAN:
            raise InvalidTransitionError(f"Link is already {link.status.value}")

        minor = await self._repository.get_session(link.minor_session_id)
        if minor is None:
            raise SessionNotFoundError(f"Session {link.minor_session_id} not found")

        start = await self._sessions.begin_session(
            minor.widget_id, provider, guardian_link_id=link.id
        )
        updated = await self._repository.update_link_if(
            link.id, LinkStatus.AWAITING_GUARDIAN, guardian_session_id=start.session_id
        )
        if updated is None:
            raise InvalidTransitionError("Link changed while starting verification")

        await self._audit.success(
            "guardian_verification_started",
            link_id=link.id,
            session_id=start.session_id,
            provider=provider.value,
        )
        return start

    @staticmethod
    def is_guardian_session(session: VerificationSession) -> bool:
        return session.guardian_link_id is not None

    async def on_session_completed(
        self, session: VerificationSession
    ) -> GuardianConsentLink | None:
        """Advance the link whose guardian session just finished.

        A session replaced by a later attempt on the same link is recorded
        and ignored.

        Returns:
            The link after any transition, or None if session is not a
            guardian session
        """
        if session.guardian_link_id is None:
            return None
        link = await self._repository.get_link(session.guardian_link_id)
        if link is None:
            return None
        link = await self._refresh_expiry(link)
        if link.guardian_session_id != session.id:
            await self._audit.success(
                "guardian_verification",
                link_id=link.id,
                session_id=session.id,
                outcome="superseded_ignored",
            )
            return link
        if link.status is not LinkStatus.AWAITING_GUARDIAN:
            await self._audit.success(
                "guardian_verification",
                link_id=link.id,
                outcome="duplicate_ignored",
            )
            return link

        if session.verified_age is None:
            # Provider or claims failure; the guardian may try again
            await self._audit.failure(
                "guardian_verification",
                link_id=link.id,
                session_id=session.id,
                reason=session.failure_reason,
            )
            return link

        minor = await self._repository.get_session(link.minor_session_id)
        minor_age = minor.verified_age if minor is not None else None

        reason = None
        if session.status is not SessionStatus.VERIFIED or (
            session.verified_age < GUARDIAN_MIN_AGE
        ):
            reason = "guardian_is_minor"
        elif minor_age is not None and session.verified_age <= minor_age:
            reason = "guardian_not_older_than_minor"
        if reason is not None:
            logger.warning(f"Guardian session {session.id} rejected for {link.id}: {reason}")
            await self._audit.failure(
                "guardian_verification",
                link_id=link.id,
                session_id=session.id,
                reason=reason,
            )
            return await self._transition(link, LinkStatus.DENIED, reason=reason)

        return await self._transition(link, LinkStatus.GUARDIAN_VERIFIED)

    # ================================
    # Decisions
    # ================================

    async def record_decision(
        self,
        request_token: str,
        guardian_token: str,
        decision: GuardianDecision,
    ) -> GuardianConsentLink:
        """Record the verified guardian's approve/decline decision.

        The guardian proves who they are with the verification token issued
        for their own session.

        Raises:
            LinkNotFoundError: If the request token is unknown
            InvalidTransitionError: If the guardian is not yet verified or
                the token does not belong to the linked guardian session
        """
        link = await self.get_link(request_token)
        if link.status.is_terminal:
            await self._audit.success(
                "guardian_decision", link_id=link.id, outcome="duplicate_ignored"
            )
            return link
        if link.status is not LinkStatus.GUARDIAN_VERIFIED:
            raise InvalidTransitionError("Guardian has not completed verification")

        guardian = await self._repository.get_session(link.guardian_session_id)
        if guardian is None or guardian.status is not SessionStatus.VERIFIED:
            raise InvalidTransitionError("Guardian session is not verified")

        claims = self._tokens.verify(guardian_token, guardian.widget_id)
        if (
            claims is None
            or not claims.is_adult
            or claims.session_id != link.guardian_session_id
        ):
            await self._audit.failure(
                "guardian_decision", link_id=link.id, reason="invalid_guardian_token"
            )
            raise InvalidTransitionError("Guardian token does not match this link")

        target = (
            LinkStatus.APPROVED
            if decision is GuardianDecision.APPROVE
            else LinkStatus.DENIED
        )
        return await self._transition(link, target, source="guardian")

    async def apply_artifact(
        self, artifact: ConsentArtifact
    ) -> GuardianConsentLink | None:
        """Apply a verified broker consent artifact that references a link."""
        if not artifact.signature_valid or not artifact.link_ref:
            return None

        link = await self._repository.get_link(artifact.link_ref)
        if link is None:
            await self._audit.failure(
                "consent_artifact_applied",
                record_id=artifact.record_id,
                reason="unknown_link",
            )
            return None
        link = await self._refresh_expiry(link)

        if artifact.action not in (ConsentAction.GRANTED, ConsentAction.DENIED):
            # Revocations are kept on the artifact record only
            await self._audit.success(
                "consent_artifact_applied",
                link_id=link.id,
                consent_action=artifact.action.value if artifact.action else None,
                outcome="recorded_only",
            )
            return link
        if link.status.is_terminal:
            await self._audit.success(
                "consent_artifact_applied", link_id=link.id, outcome="duplicate_ignored"
            )
            return link
        if link.status is not LinkStatus.GUARDIAN_VERIFIED:
            await self._audit.failure(
                "consent_artifact_applied",
                link_id=link.id,
                reason="guardian_not_verified",
            )
            return link

        target = (
            LinkStatus.APPROVED
            if artifact.action is ConsentAction.GRANTED
            else LinkStatus.DENIED
        )
        return await self._transition(link, target, source="postback")

    # ================================
    # Expiry
    # ================================

    async def expire_overdue(self) -> int:
        """Expire every overdue open link. Returns how many were expired."""
        expired = 0
        for link in await self._repository.list_overdue_links(self._clock()):
            result = await self._expire(link)
            if result.status is LinkStatus.EXPIRED:
                expired += 1
        return expired

    async def _refresh_expiry(self, link: GuardianConsentLink) -> GuardianConsentLink:
        if not link.status.is_terminal and link.expires_at <= self._clock():
            return await self._expire(link)
        return link

    async def _expire(self, link: GuardianConsentLink) -> GuardianConsentLink:
        now = self._clock()
        updated = await self._transition(link, LinkStatus.EXPIRED, reason="link_expired")
        if updated.status is not LinkStatus.EXPIRED:
            return updated

        # The minor is never left pending behind an expired link
        await self._repository.update_session_if(
            link.minor_session_id,
            SessionStatus.PENDING,
            status=SessionStatus.FAILED,
            outcome=VerificationOutcome.EXPIRED,
            failure_reason="guardian_consent_expired",
            completed_at=now,
        )
        return updated

    async def _transition(
        self,
        link: GuardianConsentLink,
        target: LinkStatus,
        reason: str | None = None,
        source: str | None = None,
    ) -> GuardianConsentLink:
        if not can_transition(link.status, target):
            raise InvalidTransitionError(
                f"Cannot move link from {link.status.value} to {target.value}"
            )

        changes: dict[str, Any] = {"status": target}
        if target.is_terminal:
            changes["decided_at"] = self._clock()
            changes["decision_source"] = source or reason

        updated = await self._repository.update_link_if(link.id, link.status, **changes)
        if updated is None:
            current = await self._repository.get_link(link.id)
            await self._audit.success(
                "guardian_link_transition",
                link_id=link.id,
                target=target.value,
                outcome="duplicate_ignored",
            )
            return current if current is not None else link

        logger.info(
            f"Guardian link {link.id}: {link.status.value} -> {target.value}"
        )
        await self._audit.success(
            "guardian_link_transition",
            link_id=link.id,
            previous=link.status.value,
            target=target.value,
            reason=reason,
            source=source,
        )
        return updated

"""Age verification orchestration.

Coordinates session start, code exchange, age extraction, outcome policy,
token issuance and guardian linking into the flows the HTTP surface exposes.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from ageproof.models.consent import GuardianConsentLink, GuardianDecision, LinkStatus
from ageproof.models.errors import ClaimsError, ProtocolError, ProviderError, SessionNotFoundError
from ageproof.models.flow import ProviderCallback
from ageproof.models.policy import MinorHandling, WidgetPolicy
from ageproof.models.session import (
    AuthorizationStart,
    Provider,
    SessionStatus,
    VerificationOutcome,
    VerificationSession,
)
from ageproof.models.tokens import TokenValidation
from ageproof.services.audit import AuditTrail
from ageproof.services.claims import ClaimsExtractor
from ageproof.services.exchange import OAuthExchangeClient
from ageproof.services.guardian import GUARDIAN_MIN_AGE, GuardianConsentLinker
from ageproof.services.sessions import SessionManager
from ageproof.services.verification_tokens import VerificationTokenService
from ageproof.services.widgets import WidgetDirectory
from ageproof.stores.repository import Repository

logger = logging.getLogger(__name__)

# Guardians are judged against the age of majority, whatever the widget says
GUARDIAN_POLICY = WidgetPolicy(
    age_threshold=GUARDIAN_MIN_AGE, minor_handling=MinorHandling.BLOCK
)

_LINK_OUTCOMES = {
    LinkStatus.APPROVED: VerificationOutcome.GUARDIAN_APPROVED,
    LinkStatus.DENIED: VerificationOutcome.GUARDIAN_DENIED,
    LinkStatus.EXPIRED: VerificationOutcome.EXPIRED,
}


@dataclass(frozen=True)
class VerificationResult:
    """Definite answer about a session, as reported to the client."""

    session: VerificationSession
    outcome: VerificationOutcome | None = None
    token: str | None = None
    guardian_link: GuardianConsentLink | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sessionId": self.session.id,
            "status": self.session.status.value,
            "outcome": self.outcome.value if self.outcome else None,
        }
        if self.session.verified_age is not None:
            data["verifiedAge"] = self.session.verified_age
        if self.session.failure_reason:
            data["failureReason"] = self.session.failure_reason
        if self.token:
            data["token"] = self.token
        if self.guardian_link is not None:
            data["guardianLinkId"] = self.guardian_link.id
            data["guardianStatus"] = self.guardian_link.status.value
            data["guardianExpiresAt"] = self.guardian_link.expires_at
        return data


class AgeVerifier:
    def __init__(
        self,
        sessions: SessionManager,
        exchange_client: OAuthExchangeClient,
        claims: ClaimsExtractor,
        tokens: VerificationTokenService,
        linker: GuardianConsentLinker,
        repository: Repository,
        widgets: WidgetDirectory,
        audit: AuditTrail,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._sessions = sessions
        self._exchange_client = exchange_client
        self._claims = claims
        self._tokens = tokens
        self._linker = linker
        self._repository = repository
        self._widgets = widgets
        self._audit = audit
        self._clock = clock

    @property
    def linker(self) -> GuardianConsentLinker:
        return self._linker

    async def initiate(self, widget_id: str, provider: Provider) -> AuthorizationStart:
        """Start verification for a subject on widget_id.

        Raises:
            ProtocolError: If the widget is unknown
        """
        if await self._widgets.policy_for(widget_id) is None:
            raise ProtocolError(f"Unknown widget {widget_id!r}")

        start = await self._sessions.begin_session(widget_id, provider)
        await self._audit.success(
            "verification_initiated",
            session_id=start.session_id,
            widget_id=widget_id,
            provider=provider.value,
        )
        return start

    async def handle_callback(self, callback: ProviderCallback) -> VerificationResult:
        """Finish a session from the provider's redirect.

        Provider and claims failures are reported as a failed session rather
        than raised.

        Raises:
            SessionNotFoundError: If the state token was never issued, has
                expired, or was already redeemed
        """
        pending = await self._sessions.redeem(callback.state or "")
        session = await self._repository.get_session(pending.session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {pending.session_id} not found")
        if session.status is not SessionStatus.PENDING:
            return VerificationResult(session=session, outcome=session.outcome)

        reason = callback.failure_reason()
        if reason is not None:
            description = callback.description()
            logger.warning(f"Callback for {session.id} failed: {reason}")
            return await self._fail(session, reason, description=description)

        try:
            provider_tokens = await self._exchange_client.exchange(
                pending.provider, callback.code, pending.code_verifier
            )
            age = await self._claims.extract_age(provider_tokens, pending.provider)
        except ProviderError as e:
            logger.warning(f"Provider failure for {session.id}: {e.code}")
            return await self._fail(session, e.code)
        except ClaimsError as e:
            logger.warning(f"Claims failure for {session.id}: {e}")
            return await self._fail(session, "claims_unavailable")

        return await self._complete(session, age)

    async def status(self, session_id: str) -> VerificationResult:
        """Current state of a session, folding in any guardian decision.

        Raises:
            SessionNotFoundError: If no such session exists
        """
        session = await self._repository.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")

        if session.status is SessionStatus.PENDING and session.expires_at <= self._clock():
            session = await self._expire_session(session)

        outcome = session.outcome
        link = await self._repository.get_link_by_minor_session(session.id)
        if link is not None:
            link = await self._linker.get_link(link.request_token)
            outcome = _LINK_OUTCOMES.get(link.status, outcome)

        policy = await self._widgets.policy_for(session.widget_id)
        ttl = policy.token_ttl_minutes if policy else None
        token = None
        if outcome is VerificationOutcome.VERIFIED_ADULT:
            token = self._reissue(session, session.completed_at, ttl, is_adult=True)
        elif outcome is VerificationOutcome.GUARDIAN_APPROVED and link is not None:
            token = self._reissue(
                session, link.decided_at, ttl, is_adult=False, guardian_consent=True
            )

        return VerificationResult(
            session=session, outcome=outcome, token=token, guardian_link=link
        )

    def validate_token(self, token: str, widget_id: str) -> TokenValidation:
        return self._tokens.validate(token, widget_id)

    async def request_guardian(
        self, session_id: str, guardian_contact: str
    ) -> GuardianConsentLink:
        return await self._linker.request_guardian(session_id, guardian_contact)

    async def start_guardian_verification(
        self, request_token: str, provider: Provider
    ) -> AuthorizationStart:
        return await self._linker.start_guardian_verification(request_token, provider)

    async def record_guardian_decision(
        self, request_token: str, guardian_token: str, decision: GuardianDecision
    ) -> GuardianConsentLink:
        return await self._linker.record_decision(request_token, guardian_token, decision)

    async def _complete(
        self, session: VerificationSession, age: int
    ) -> VerificationResult:
        is_guardian = self._linker.is_guardian_session(session)
        if is_guardian:
            policy = GUARDIAN_POLICY
        else:
            policy = await self._widgets.policy_for(session.widget_id) or WidgetPolicy()

        outcome = policy.resolve(age)
        status = (
            SessionStatus.VERIFIED
            if outcome is VerificationOutcome.VERIFIED_ADULT
            else SessionStatus.FAILED
        )
        updated = await self._repository.update_session_if(
            session.id,
            SessionStatus.PENDING,
            status=status,
            verified_age=age,
            outcome=outcome,
            completed_at=self._clock(),
        )
        if updated is None:
            current = await self._repository.get_session(session.id) or session
            return VerificationResult(session=current, outcome=current.outcome)

        logger.info(f"Session {session.id} completed: {outcome.value}")
        await self._audit.success(
            "verification_completed",
            session_id=session.id,
            widget_id=session.widget_id,
            outcome=outcome.value,
            guardian_session=is_guardian,
        )

        link = None
        if is_guardian:
            link = await self._linker.on_session_completed(updated)
        elif outcome is VerificationOutcome.GUARDIAN_REQUIRED:
            link = await self._linker.create_link(updated.id)

        token = self._issue(
            updated,
            is_adult=outcome is VerificationOutcome.VERIFIED_ADULT,
            ttl_minutes=policy.token_ttl_minutes,
        )
        return VerificationResult(
            session=updated, outcome=outcome, token=token, guardian_link=link
        )

    async def _fail(
        self,
        session: VerificationSession,
        reason: str,
        description: str | None = None,
    ) -> VerificationResult:
        updated = await self._repository.update_session_if(
            session.id,
            SessionStatus.PENDING,
            status=SessionStatus.FAILED,
            failure_reason=reason,
            completed_at=self._clock(),
        )
        if updated is None:
            current = await self._repository.get_session(session.id) or session
            return VerificationResult(session=current, outcome=current.outcome)

        await self._audit.failure(
            "verification_completed",
            session_id=session.id,
            widget_id=session.widget_id,
            reason=reason,
            description=description,
        )
        link = await self._linker.on_session_completed(updated)
        return VerificationResult(session=updated, guardian_link=link)

    async def _expire_session(self, session: VerificationSession) -> VerificationSession:
        updated = await self._repository.update_session_if(
            session.id,
            SessionStatus.PENDING,
            status=SessionStatus.EXPIRED,
            outcome=VerificationOutcome.EXPIRED,
            completed_at=self._clock(),
        )
        return updated or await self._repository.get_session(session.id) or session

    def _issue(
        self,
        session: VerificationSession,
        is_adult: bool,
        guardian_consent: bool = False,
        ttl_minutes: int | None = None,
    ) -> str:
        return self._tokens.issue(
            session.id,
            session.widget_id,
            is_adult=is_adult,
            ttl_minutes=ttl_minutes,
            guardian_consent=guardian_consent,
        )

    def _reissue(
        self,
        session: VerificationSession,
        decided_at: float | None,
        ttl_minutes: int | None,
        is_adult: bool,
        guardian_consent: bool = False,
    ) -> str | None:
        # Status polling never extends a token past its first expiry
        if decided_at is None:
            return None
        lifetime = (ttl_minutes or self._tokens.default_ttl_minutes) * 60
        if self._clock() >= int(decided_at) + lifetime:
            return None
        return self._tokens.issue(
            session.id,
            session.widget_id,
            is_adult=is_adult,
            ttl_minutes=ttl_minutes,
            guardian_consent=guardian_consent,
            issued_at=decided_at,
        )

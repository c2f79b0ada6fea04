"""Guardian consent link and consent artifact models."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class LinkStatus(str, Enum):
    AWAITING_GUARDIAN = "awaiting_guardian"
    GUARDIAN_VERIFIED = "guardian_verified"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (LinkStatus.APPROVED, LinkStatus.DENIED, LinkStatus.EXPIRED)


# Every status change a link may make. Anything else is rejected.
ALLOWED_TRANSITIONS: dict[LinkStatus, frozenset[LinkStatus]] = {
    LinkStatus.AWAITING_GUARDIAN: frozenset(
        {LinkStatus.GUARDIAN_VERIFIED, LinkStatus.DENIED, LinkStatus.EXPIRED}
    ),
    LinkStatus.GUARDIAN_VERIFIED: frozenset(
        {LinkStatus.APPROVED, LinkStatus.DENIED, LinkStatus.EXPIRED}
    ),
    LinkStatus.APPROVED: frozenset(),
    LinkStatus.DENIED: frozenset(),
    LinkStatus.EXPIRED: frozenset(),
}


def can_transition(current: LinkStatus, target: LinkStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class GuardianDecision(str, Enum):
    APPROVE = "approve"
    DECLINE = "decline"


@dataclass(frozen=True)
class GuardianConsentLink:
    """Binds a minor's session to the guardian session that answers for it.

    Both sessions are referenced by id only; the link never owns or deletes
    them.
    """

    id: str
    minor_session_id: str
    request_token: str
    created_at: float
    expires_at: float
    status: LinkStatus = LinkStatus.AWAITING_GUARDIAN
    guardian_session_id: str | None = None
    decided_at: float | None = None
    decision_source: str | None = None


class ConsentAction(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    REVOKED = "revoked"


@dataclass(frozen=True)
class ConsentArtifact:
    """A consent event pushed by the broker. Immutable once recorded."""

    record_id: str
    artifact_id: str
    consent_client_id: str
    subject_ref: str | None
    action: ConsentAction | None
    issued_at: int | None
    signature_valid: bool
    received_at: float
    link_ref: str | None = None
    failure_reason: str | None = None

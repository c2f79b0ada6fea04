"""Verification session models.

A verification session is the durable record of one OAuth round trip.
The only identity-derived value it ever holds is the computed age.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field


class Provider(str, Enum):
    """OAuth surface a session authenticates against."""

    DIRECT = "direct"
    BROKER = "broker"


class SessionStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.PENDING


class VerificationOutcome(str, Enum):
    """Policy result reported to the relying party."""

    VERIFIED_ADULT = "verified_adult"
    BLOCKED_MINOR = "blocked_minor"
    GUARDIAN_REQUIRED = "guardian_required"
    GUARDIAN_APPROVED = "guardian_approved"
    GUARDIAN_DENIED = "guardian_denied"
    LIMITED_ACCESS = "limited_access"
    EXPIRED = "expired"


@dataclass(frozen=True)
class VerificationSession:
    """Durable record of a single verification attempt."""

    id: str
    state_token: str
    provider: Provider
    widget_id: str
    created_at: float
    expires_at: float
    status: SessionStatus = SessionStatus.PENDING
    verified_age: int | None = None
    outcome: VerificationOutcome | None = None
    failure_reason: str | None = None
    completed_at: float | None = None
    # Consent link this session verifies a guardian for
    guardian_link_id: str | None = None

    def __post_init__(self) -> None:
        if self.status is SessionStatus.VERIFIED and self.verified_age is None:
            raise ValueError("verified sessions must carry verified_age")


class PendingAuthorization(BaseModel):
    """Session store entry keyed by state token.

    Holds the PKCE verifier until the callback redeems it exactly once.
    """

    session_id: str
    code_verifier: str = Field(repr=False)
    widget_id: str
    provider: Provider
    created_at: float


@dataclass(frozen=True)
class AuthorizationStart:
    """What the client needs to send the user to the provider."""

    session_id: str
    authorize_url: str
    state_token: str
    expires_at: float

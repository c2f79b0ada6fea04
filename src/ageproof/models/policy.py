"""Per-widget verification policy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from ageproof.models.session import VerificationOutcome


class MinorHandling(str, Enum):
    """What happens when the verified age is below the widget threshold."""

    BLOCK = "block"
    GUARDIAN_CONSENT = "guardian_consent"
    LIMITED_ACCESS = "limited_access"


@dataclass(frozen=True)
class WidgetPolicy:
    age_threshold: int = 18
    minor_handling: MinorHandling | str = MinorHandling.GUARDIAN_CONSENT
    token_ttl_minutes: int = 15

    def __post_init__(self) -> None:
        if self.age_threshold < 1:
            raise ValueError("age_threshold must be positive")
        if self.token_ttl_minutes < 1:
            raise ValueError("token_ttl_minutes must be positive")

    def resolve(self, age: int) -> VerificationOutcome:
        """Map a computed age to an outcome.

        Unrecognized minor handling values fall back to blocking.
        """
        if age >= self.age_threshold:
            return VerificationOutcome.VERIFIED_ADULT

        handling = self.minor_handling
        if handling == MinorHandling.GUARDIAN_CONSENT:
            return VerificationOutcome.GUARDIAN_REQUIRED
        if handling == MinorHandling.LIMITED_ACCESS:
            return VerificationOutcome.LIMITED_ACCESS
        return VerificationOutcome.BLOCKED_MINOR

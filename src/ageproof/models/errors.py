"""Exception hierarchy for age verification and consent linking.

Provides specific exception types for each failure mode so callers can map
them to a definite outcome: a failed session, a rejected request, or an
acknowledged-but-invalid postback.
"""

from __future__ import annotations


class AgeProofError(Exception):
    """Base exception for all age verification errors."""

    pass


class ConfigurationError(AgeProofError):
    """Raised when required settings are missing or malformed."""

    pass


class ProtocolError(AgeProofError):
    """Raised when a request violates the verification protocol."""

    pass


class SessionNotFoundError(ProtocolError):
    """Raised when a state token or session id is unknown or already used.

    An expired state token and a replayed one are indistinguishable here;
    both mean the authorization code can no longer be redeemed.
    """

    pass


class LinkNotFoundError(ProtocolError):
    """Raised when a guardian consent link cannot be found."""

    pass


class InvalidTransitionError(ProtocolError):
    """Raised when a consent link cannot move to the requested state."""

    pass


class ProviderError(AgeProofError):
    """Raised when the identity provider rejects or fails a request."""

    def __init__(self, code: str, description: str | None = None) -> None:
        self.code = code
        self.description = description
        message = code if not description else f"{code}: {description}"
        super().__init__(message)


class ClaimsError(AgeProofError):
    """Raised when no usable date of birth can be read from provider claims."""

    pass


class PostbackError(AgeProofError):
    """Raised when a consent postback fails verification.

    The artifact is still recorded with signature_valid=False before this
    is raised.
    """

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        self.record_id: str | None = None
        super().__init__(message or reason)


class SignatureError(PostbackError):
    """Raised when a postback JWT signature or key selection is invalid."""

    pass


class AudienceError(PostbackError):
    """Raised when a postback JWT is addressed to a different client."""

    pass


class RateLimitError(AgeProofError):
    """Raised when a client exceeds its request budget."""

    def __init__(self, preset: str, retry_after: int) -> None:
        self.preset = preset
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded for {preset}, retry after {retry_after}s")

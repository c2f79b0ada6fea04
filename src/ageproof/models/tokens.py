"""Provider token exchange and verification token models.

Contains the token endpoint request and response shapes and the decoded
form of the verification tokens this service issues.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict


@dataclass(frozen=True)
class TokenRequest:
    """Authorization code exchange parameters (RFC 6749 Section 4.1.3).

    Includes the PKCE code_verifier (RFC 7636). The client secret is sent
    either in the form body or as HTTP Basic credentials, depending on the
    provider.
    """

    # Required fields first
    token_endpoint: str
    code: str
    redirect_uri: str
    client_id: str
    code_verifier: str = field(repr=False)

    # Optional fields with defaults last
    client_secret: str | None = field(default=None, repr=False)
    auth_method: str = "client_secret_post"
    grant_type: str = "authorization_code"

    def to_form_data(self) -> dict[str, str]:
        """Convert to form data for application/x-www-form-urlencoded request."""
        data = {
            "grant_type": self.grant_type,
            "code": self.code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "code_verifier": self.code_verifier,
        }

        if self.client_secret and self.auth_method == "client_secret_post":
            data["client_secret"] = self.client_secret

        return data

    def basic_auth(self) -> tuple[str, str] | None:
        """Credentials for HTTP Basic client authentication, if used."""
        if self.client_secret and self.auth_method == "client_secret_basic":
            return (self.client_id, self.client_secret)
        return None


class TokenResponse(BaseModel):
    """Token endpoint response (RFC 6749 Section 5).

    Providers in this ecosystem add profile fields next to the tokens, so
    unknown keys are kept and handed to the claims extractor.
    """

    model_config = ConfigDict(extra="allow")

    # Success response fields
    access_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None
    id_token: str | None = None
    scope: str | None = None

    # Error response fields
    error: str | None = None
    error_description: str | None = None

    def is_success(self) -> bool:
        """Check if token response indicates success."""
        return self.error is None and self.access_token is not None

    def is_error(self) -> bool:
        """Check if token response indicates an error."""
        return self.error is not None

    def to_provider_tokens(self) -> ProviderTokens:
        if not self.is_success():
            raise ValueError("Cannot convert error response to ProviderTokens")

        return ProviderTokens(
            access_token=self.access_token,
            id_token=self.id_token,
            inline_claims=dict(self.model_extra or {}),
        )


@dataclass(frozen=True)
class ProviderTokens:
    """Tokens returned by a successful exchange.

    Transient: these are handed to the claims extractor and then dropped.
    """

    access_token: str = field(repr=False)
    id_token: str | None = field(default=None, repr=False)
    inline_claims: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class VerificationClaims:
    """Decoded contents of a verification token."""

    is_adult: bool
    session_id: str
    widget_id: str
    issued_at: int
    expires_at: int
    guardian_consent: bool = False


@dataclass(frozen=True)
class TokenValidation:
    valid: bool
    is_adult: bool = False
    expires_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "isAdult": self.is_adult,
            "expiresAt": self.expires_at,
        }

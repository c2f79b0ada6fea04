"""The two legs of the provider redirect: out to the ID issuer and back."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Mapping
from urllib.parse import urlencode

CHALLENGE_METHOD = "S256"

_MAX_ERROR_LENGTH = 64
_MAX_DESCRIPTION_LENGTH = 200
_UNSAFE_ERROR_CHARS = re.compile(r"[^a-z0-9_]+")


@dataclass(frozen=True)
class ProviderRedirect:
    """Where to send the subject to prove their age.

    Extra provider parameters can add to the query but never replace the
    PKCE challenge, the state or the redirect target.
    """

    authorize_url: str
    client_id: str
    redirect_uri: str
    challenge: str
    state: str
    scope: str | None = None
    extra_params: dict[str, str] = field(default_factory=dict)

    def to_url(self) -> str:
        params = dict(self.extra_params)
        if self.scope:
            params["scope"] = self.scope
        params.update(
            response_type="code",
            client_id=self.client_id,
            redirect_uri=self.redirect_uri,
            code_challenge=self.challenge,
            code_challenge_method=CHALLENGE_METHOD,
            state=self.state,
        )
        return f"{self.authorize_url}?{urlencode(params)}"


@dataclass(frozen=True)
class ProviderCallback:
    """Query parameters the provider sends back to the callback route."""

    state: str | None = None
    code: str | None = None
    error: str | None = None
    error_description: str | None = None

    @classmethod
    def from_query(cls, params: Mapping[str, str]) -> ProviderCallback:
        return cls(
            state=params.get("state") or None,
            code=params.get("code") or None,
            error=params.get("error") or None,
            error_description=params.get("error_description") or None,
        )

    def failure_reason(self) -> str | None:
        """Why this callback cannot complete the session, or None if it can.

        Provider error codes are folded to a short lowercase slug before
        they are stored.
        """
        if self.error:
            slug = _UNSAFE_ERROR_CHARS.sub("_", self.error.lower()).strip("_")
            return f"provider_{slug[:_MAX_ERROR_LENGTH] or 'error'}"
        if not self.code:
            return "missing_code"
        return None

    def description(self) -> str | None:
        if not self.error_description:
            return None
        return self.error_description[:_MAX_DESCRIPTION_LENGTH]

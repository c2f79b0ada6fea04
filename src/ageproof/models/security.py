"""Security-related models for the verification flow.

Contains PKCE parameters generated once per verification session.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class PKCEParameters:
    """PKCE parameters and state token for a single verification session.

    The verifier never leaves the server; only the challenge and state are
    sent to the provider in the authorization redirect.
    """

    code_verifier: str = field(repr=False)
    code_challenge: str = field()
    state: str = field()
    code_challenge_method: str = field(default="S256")

    def __post_init__(self) -> None:
        """Validate PKCE parameters meet RFC 7636 requirements."""
        if not (43 <= len(self.code_verifier) <= 128):
            raise ValueError("code_verifier must be 43-128 characters")
        if not (43 <= len(self.code_challenge) <= 128):
            raise ValueError("code_challenge must be 43-128 characters")
        if self.code_challenge_method != "S256":
            raise ValueError("Only S256 code challenge method is supported")
        if len(self.state) < 32:
            raise ValueError("state must be at least 32 characters")

"""PKCE (Proof Key for Code Exchange) generation for verification sessions.

Implements RFC 7636 parameter generation. Every verification session gets a
fresh verifier, its S256 challenge, and an unguessable state token that
doubles as the session store key.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import string

from ageproof.models.errors import ProtocolError
from ageproof.models.security import PKCEParameters

_UNRESERVED = string.ascii_letters + string.digits + "-._~"


class PKCEManager:
    """Generates PKCE parameters for provider authorization requests.

    This implementation follows RFC 7636 requirements:
    - Uses S256 code challenge method (SHA256 + base64url)
    - Generates cryptographically secure code verifiers
    - Generates state tokens with at least 256 bits of entropy
    """

    def __init__(self, verifier_length: int = 128) -> None:
        if not (43 <= verifier_length <= 128):
            raise ValueError("verifier_length must be 43-128")
        self.verifier_length = verifier_length

    def generate_parameters(self) -> PKCEParameters:
        """Generate new PKCE parameters for an authorization flow.

        Returns:
            PKCEParameters: Immutable parameters for the authorization flow

        Raises:
            ProtocolError: If parameter generation fails
        """
        try:
            code_verifier = self._generate_code_verifier()
            code_challenge = self.generate_code_challenge(code_verifier)

            return PKCEParameters(
                code_verifier=code_verifier,
                code_challenge=code_challenge,
                state=self._generate_state(),
            )

        except ValueError as e:
            raise ProtocolError(f"Failed to generate PKCE parameters: {e}") from e

    def _generate_code_verifier(self) -> str:
        """Generate a cryptographically secure code verifier.

        RFC 7636 Section 4.1: code verifier must be 43-128 characters long
        and use only unreserved characters:
            [A-Z] / [a-z] / [0-9] / "-" / "." / "_" / "~"
        """
        return "".join(
            secrets.choice(_UNRESERVED) for _ in range(self.verifier_length)
        )

    @staticmethod
    def generate_code_challenge(code_verifier: str) -> str:
        """Derive the S256 challenge: BASE64URL(SHA256(ASCII(verifier)))."""
        digest = hashlib.sha256(code_verifier.encode("ascii")).digest()

        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")

    def _generate_state(self) -> str:
        # 32 random bytes, URL-safe, 43 characters
        return secrets.token_urlsafe(32)

"""Short-lived bearer tokens asserting a verification result.

Each widget gets its own HS256 signing key, derived from the service root
secret with HKDF-SHA256 (salt "age-verification", info = widget id). A token
minted for one widget therefore fails signature checks under any other.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import jwt
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ageproof.models.tokens import TokenValidation, VerificationClaims

logger = logging.getLogger(__name__)

HKDF_SALT = b"age-verification"
TOKEN_ISSUER = "ageproof"
ALGORITHM = "HS256"


def derive_widget_key(root_secret: str, widget_id: str) -> bytes:
    """Derive the 256-bit signing key for one widget."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=HKDF_SALT,
        info=widget_id.encode("utf-8"),
    )
    return hkdf.derive(root_secret.encode("utf-8"))


class VerificationTokenService:
    """Issues and checks verification tokens. Tokens are never stored."""

    def __init__(
        self,
        root_secret: str,
        default_ttl_minutes: int = 15,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not root_secret:
            raise ValueError("root_secret is required")
        self._root_secret = root_secret
        self.default_ttl_minutes = default_ttl_minutes
        self._clock = clock

    def issue(
        self,
        session_id: str,
        widget_id: str,
        is_adult: bool,
        ttl_minutes: int | None = None,
        guardian_consent: bool = False,
        issued_at: float | None = None,
    ) -> str:
        """Sign a token asserting the outcome of session_id for widget_id.

        Passing issued_at re-signs a token with the same lifetime it was
        first given, instead of starting a fresh one now.
        """
        if issued_at is None:
            issued_at = self._clock()
        issued_at = int(issued_at)
        ttl = ttl_minutes or self.default_ttl_minutes
        payload: dict[str, Any] = {
            "isAdult": bool(is_adult),
            "sessionId": session_id,
            "widgetId": widget_id,
            "iss": TOKEN_ISSUER,
            "aud": widget_id,
            "iat": issued_at,
            "exp": issued_at + ttl * 60,
        }
        if guardian_consent:
            payload["guardianConsent"] = True

        return jwt.encode(payload, self._key_for(widget_id), algorithm=ALGORITHM)

    def verify(self, token: str, widget_id: str) -> VerificationClaims | None:
        """Check signature, expiry, issuer and widget binding.

        Returns:
            The decoded claims, or None if the token is invalid for any reason
        """
        if not token or not widget_id:
            return None

        try:
            claims = jwt.decode(
                token,
                self._key_for(widget_id),
                algorithms=[ALGORITHM],
                audience=widget_id,
                issuer=TOKEN_ISSUER,
                options={"require": ["exp", "iat", "iss", "aud"]},
            )
        except jwt.PyJWTError as e:
            logger.debug(f"Verification token rejected: {type(e).__name__}")
            return None

        if claims.get("widgetId") != widget_id:
            return None
        is_adult = claims.get("isAdult")
        session_id = claims.get("sessionId")
        if not isinstance(is_adult, bool) or not isinstance(session_id, str):
            return None

        return VerificationClaims(
            is_adult=is_adult,
            session_id=session_id,
            widget_id=widget_id,
            issued_at=int(claims["iat"]),
            expires_at=int(claims["exp"]),
            guardian_consent=claims.get("guardianConsent") is True,
        )

    def validate(self, token: str, widget_id: str) -> TokenValidation:
        claims = self.verify(token, widget_id)
        if claims is None:
            return TokenValidation(valid=False)
        return TokenValidation(
            valid=True, is_adult=claims.is_adult, expires_at=claims.expires_at
        )

    def _key_for(self, widget_id: str) -> bytes:
        return derive_widget_key(self._root_secret, widget_id)

"""Verification of consent artifacts pushed by the consent broker.

Each postback carries a shared secret and an RS256-signed JWT. Checks run
in a fixed order and all of them must pass:

    0. per-source rate limit, before any cryptographic work
    a. shared secret, compared in constant time
    b. signature against the pinned JWKS (no remote key fetch)
    c. audience equals our consent client id
    d. issuer, expiry and issued-at sanity

Every postback is recorded. A failed one is stored with
signature_valid=False and never changes consent state.
"""

from __future__ import annotations

import logging
import secrets
import time
from typing import Any, Callable

import jwt

from ageproof.models.consent import ConsentAction, ConsentArtifact
from ageproof.models.errors import (
    AudienceError,
    ConfigurationError,
    PostbackError,
    RateLimitError,
    SignatureError,
)
from ageproof.services.audit import AuditTrail
from ageproof.services.guardian import GuardianConsentLinker
from ageproof.services.rate_limit import POSTBACK, RateLimiter, RateLimitPreset
from ageproof.services.security import generate_record_id, secrets_match
from ageproof.stores.repository import Repository

logger = logging.getLogger(__name__)

JWT_LEEWAY_SECONDS = 30
ALLOWED_ALGORITHMS = ["RS256"]

ARTIFACT_ID_CLAIMS = ("ack_id", "acknowledgement_id", "consent_id", "txn_id", "jti")
SUBJECT_CLAIMS = ("sub", "user_id")
LINK_REF_CLAIMS = ("consent_ref", "link_id", "reference_id")
STATUS_CLAIMS = ("consent_status", "status", "action")

STATUS_ALIASES = {
    "granted": ConsentAction.GRANTED,
    "approved": ConsentAction.GRANTED,
    "accepted": ConsentAction.GRANTED,
    "active": ConsentAction.GRANTED,
    "denied": ConsentAction.DENIED,
    "rejected": ConsentAction.DENIED,
    "declined": ConsentAction.DENIED,
    "revoked": ConsentAction.REVOKED,
    "withdrawn": ConsentAction.REVOKED,
}

_MAX_CLAIM_LENGTH = 256


def normalize_action(value: Any) -> ConsentAction | None:
    if not isinstance(value, str):
        return None
    return STATUS_ALIASES.get(value.strip().lower())


class ConsentPostbackVerifier:
    def __init__(
        self,
        postback_key: str,
        consent_client_id: str,
        issuer: str,
        jwks: dict[str, Any],
        repository: Repository,
        rate_limiter: RateLimiter,
        audit: AuditTrail,
        linker: GuardianConsentLinker | None = None,
        rate_limit: RateLimitPreset = POSTBACK,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._postback_key = postback_key
        self._consent_client_id = consent_client_id
        self._issuer = issuer
        self._repository = repository
        self._rate_limiter = rate_limiter
        self._audit = audit
        self._linker = linker
        self._rate_limit = rate_limit
        self._clock = clock
        self._jwks = self._load_jwks(jwks)

    @staticmethod
    def _load_jwks(jwks: dict[str, Any]) -> jwt.PyJWKSet | None:
        if not jwks.get("keys"):
            logger.warning("No pinned consent JWKS configured; all postbacks will fail")
            return None
        try:
            return jwt.PyJWKSet.from_dict(jwks)
        except jwt.PyJWTError as e:
            raise ConfigurationError(f"Pinned consent JWKS is unusable: {e}") from e

    async def verify_postback(
        self, raw_jwt: str, presented_secret: str | None, source: str
    ) -> ConsentArtifact:
        """Verify and record one postback.

        Args:
            raw_jwt: Compact JWS from the request body
            presented_secret: Shared secret from the request, if any
            source: Client identifier used for rate limiting

        Returns:
            The recorded artifact (or the earlier one, for a duplicate)

        Raises:
            RateLimitError: If source is over its budget; nothing is recorded
            PostbackError: If any check fails; the artifact is recorded first
        """
        decision = await self._rate_limiter.check(source, self._rate_limit)
        if not decision.allowed:
            await self._audit.failure(
                "consent_postback", source=source, reason="rate_limited"
            )
            raise RateLimitError(self._rate_limit.name, decision.retry_after)

        try:
            if not secrets_match(self._postback_key, presented_secret):
                raise PostbackError("invalid_postback_key")
            claims = self._verify_jwt(raw_jwt)
        except PostbackError as e:
            artifact = self._build_artifact(
                _peek_claims(raw_jwt), signature_valid=False, failure_reason=e.reason
            )
            e.record_id = artifact.record_id
            await self._repository.add_artifact(artifact)
            logger.warning(f"Rejected consent postback {artifact.record_id}: {e.reason}")
            await self._audit.failure(
                "consent_postback",
                source=source,
                record_id=artifact.record_id,
                reason=e.reason,
            )
            raise

        artifact = self._build_artifact(claims, signature_valid=True)
        existing = await self._repository.get_valid_artifact(artifact.artifact_id)
        if existing is not None:
            await self._audit.success(
                "consent_postback",
                record_id=existing.record_id,
                artifact_id=existing.artifact_id,
                outcome="duplicate_ignored",
            )
            return existing

        await self._repository.add_artifact(artifact)
        logger.info(
            f"Recorded consent artifact {artifact.artifact_id} "
            f"({artifact.action.value if artifact.action else 'unknown'})"
        )
        await self._audit.success(
            "consent_postback",
            source=source,
            record_id=artifact.record_id,
            artifact_id=artifact.artifact_id,
            consent_action=artifact.action.value if artifact.action else None,
        )

        if self._linker is not None:
            await self._linker.apply_artifact(artifact)
        return artifact

    def _verify_jwt(self, raw_jwt: str) -> dict[str, Any]:
        if not raw_jwt:
            raise PostbackError("missing_token")
        if not self._consent_client_id or not self._issuer:
            raise PostbackError("verifier_not_configured")

        try:
            header = jwt.get_unverified_header(raw_jwt)
        except jwt.PyJWTError as e:
            raise SignatureError("malformed_token") from e

        if header.get("alg") not in ALLOWED_ALGORITHMS:
            raise SignatureError("unsupported_algorithm")
        signing_key = self._select_key(header.get("kid"))

        try:
            claims = jwt.decode(
                raw_jwt,
                signing_key.key,
                algorithms=ALLOWED_ALGORITHMS,
                audience=self._consent_client_id,
                issuer=self._issuer,
                leeway=JWT_LEEWAY_SECONDS,
                options={"require": ["exp", "iat", "iss", "aud"]},
            )
        except jwt.InvalidSignatureError as e:
            raise SignatureError("invalid_signature") from e
        except jwt.InvalidAudienceError as e:
            raise AudienceError("audience_mismatch") from e
        except jwt.MissingRequiredClaimError as e:
            if e.claim == "aud":
                raise AudienceError("audience_mismatch") from e
            raise PostbackError("missing_claim", f"Missing claim {e.claim}") from e
        except jwt.InvalidIssuerError as e:
            raise PostbackError("issuer_mismatch") from e
        except jwt.ExpiredSignatureError as e:
            raise PostbackError("expired") from e
        except jwt.ImmatureSignatureError as e:
            raise PostbackError("issued_in_future") from e
        except jwt.PyJWTError as e:
            raise SignatureError("malformed_token") from e

        issued_at = claims.get("iat")
        if not isinstance(issued_at, (int, float)):
            raise PostbackError("missing_claim", "iat is not numeric")
        if issued_at > self._clock() + JWT_LEEWAY_SECONDS:
            raise PostbackError("issued_in_future")
        return claims

    def _select_key(self, kid: str | None) -> jwt.PyJWK:
        if self._jwks is None:
            raise SignatureError("no_trusted_keys")

        if kid:
            try:
                return self._jwks[kid]
            except KeyError as e:
                raise SignatureError("unknown_key") from e

        for key in self._jwks.keys:
            if key.key_type == "RSA" and key.public_key_use in (None, "sig"):
                return key
        raise SignatureError("unknown_key")

    def _build_artifact(
        self,
        claims: dict[str, Any],
        signature_valid: bool,
        failure_reason: str | None = None,
    ) -> ConsentArtifact:
        now = self._clock()
        artifact_id = _first_claim(claims, ARTIFACT_ID_CLAIMS)
        if artifact_id is None:
            artifact_id = f"mp_consent_{int(now * 1000)}_{secrets.token_hex(4)}"

        action = None
        for key in STATUS_CLAIMS:
            action = normalize_action(claims.get(key))
            if action is not None:
                break

        issued_at = claims.get("iat")
        return ConsentArtifact(
            record_id=generate_record_id(),
            artifact_id=artifact_id,
            consent_client_id=self._consent_client_id,
            subject_ref=_first_claim(claims, SUBJECT_CLAIMS),
            action=action,
            issued_at=int(issued_at) if isinstance(issued_at, (int, float)) else None,
            signature_valid=signature_valid,
            received_at=now,
            link_ref=_first_claim(claims, LINK_REF_CLAIMS),
            failure_reason=failure_reason,
        )


def _first_claim(claims: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = claims.get(key)
        if isinstance(value, (str, int)) and not isinstance(value, bool) and value != "":
            return str(value)[:_MAX_CLAIM_LENGTH]
    return None


def _peek_claims(raw_jwt: str) -> dict[str, Any]:
    """Best-effort claims of an unverified token, for the rejection record."""
    try:
        claims = jwt.decode(raw_jwt, options={"verify_signature": False})
    except jwt.PyJWTError:
        return {}
    return claims if isinstance(claims, dict) else {}

"""Age extraction from provider claims.

The date of birth is looked up, turned into an integer age, and dropped.
It is never returned, stored, or logged; only its layout is.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable, Mapping

import jwt

from ageproof.models.errors import ClaimsError
from ageproof.models.session import Provider
from ageproof.models.tokens import ProviderTokens
from ageproof.primitives.age import calculate_age, detect_dob_format, parse_dob
from ageproof.services.exchange import OAuthExchangeClient

logger = logging.getLogger(__name__)

DOB_CLAIM_KEYS = ("dob", "date_of_birth", "birthdate")


class ClaimsExtractor:
    """Computes a subject's age from whatever the provider handed back.

    Sources are tried in order: fields returned inline with the token
    response, the id token's claims, then the provider's userinfo endpoint.
    """

    def __init__(
        self,
        exchange_client: OAuthExchangeClient,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._exchange_client = exchange_client
        self._today = today

    async def extract_age(self, tokens: ProviderTokens, provider: Provider) -> int:
        """Return the subject's age in whole years as of today.

        Raises:
            ClaimsError: If no date of birth is present or it cannot be parsed
            ProviderError: If the userinfo lookup fails
        """
        raw, source = await self._locate_dob(tokens, provider)

        logger.debug(
            f"Date of birth read from {source} "
            f"in {detect_dob_format(raw) or 'unrecognized'} format"
        )
        today = self._today()
        return calculate_age(parse_dob(raw, today), today)

    async def _locate_dob(
        self, tokens: ProviderTokens, provider: Provider
    ) -> tuple[str, str]:
        raw = _find_dob(tokens.inline_claims)
        if raw is not None:
            return raw, "token response"

        if tokens.id_token:
            raw = _find_dob(_unverified_claims(tokens.id_token))
            if raw is not None:
                return raw, "id token"

        if self._exchange_client.endpoints_for(provider).userinfo_url:
            userinfo = await self._exchange_client.fetch_userinfo(
                provider, tokens.access_token
            )
            raw = _find_dob(userinfo)
            if raw is not None:
                return raw, "userinfo"

        raise ClaimsError("Provider returned no date of birth")


def _find_dob(claims: Mapping[str, Any]) -> str | None:
    for key in DOB_CLAIM_KEYS:
        value = claims.get(key)
        if value is None or value == "":
            continue
        if not isinstance(value, str):
            raise ClaimsError(f"Date of birth claim has type {type(value).__name__}")
        return value
    return None


def _unverified_claims(id_token: str) -> dict[str, Any]:
    """Decode id token claims without checking the signature.

    The id token arrives directly from the token endpoint over TLS in the
    same response as the access token.
    """
    try:
        return jwt.decode(id_token, options={"verify_signature": False})
    except jwt.PyJWTError:
        logger.warning("Ignoring undecodable id token")
        return {}

"""Authorization code exchange against the identity providers.

Implements the RFC 6749 token request with PKCE (RFC 7636). The direct and
broker surfaces differ only in their endpoint set, scopes and client
authentication, all of which come from ProviderEndpoints.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from ageproof.config import ProviderEndpoints
from ageproof.models.errors import ConfigurationError, ProviderError
from ageproof.models.session import Provider
from ageproof.models.tokens import ProviderTokens, TokenRequest, TokenResponse

logger = logging.getLogger(__name__)


class OAuthExchangeClient:
    """Exchanges authorization codes and reads provider userinfo.

    Codes are single-use, so nothing here is retried: any failure is final
    for the session that owns the code.
    """

    def __init__(
        self, providers: dict[Provider, ProviderEndpoints], timeout: float = 10.0
    ):
        """Initialize the exchange client.

        Args:
            providers: Endpoint sets keyed by provider
            timeout: HTTP request timeout in seconds
        """
        self._providers = providers
        self.timeout = timeout
        self._http_client = httpx.AsyncClient(timeout=timeout)

    def endpoints_for(self, provider: Provider) -> ProviderEndpoints:
        try:
            return self._providers[provider]
        except KeyError as e:
            raise ConfigurationError(f"Provider {provider.value} is not configured") from e

    async def exchange(
        self, provider: Provider, code: str, verifier: str
    ) -> ProviderTokens:
        """Exchange an authorization code for provider tokens.

        Args:
            provider: OAuth surface the code was issued by
            code: Authorization code from the callback
            verifier: PKCE code verifier redeemed for this session

        Returns:
            ProviderTokens: Access token, optional id token, and any profile
                fields the provider returned inline

        Raises:
            ProviderError: On timeout, transport failure, or an error or
                malformed token response
        """
        endpoints = self.endpoints_for(provider)
        token_request = TokenRequest(
            token_endpoint=endpoints.token_url,
            code=code,
            redirect_uri=endpoints.redirect_uri,
            client_id=endpoints.client_id,
            code_verifier=verifier,
            client_secret=endpoints.client_secret,
            auth_method=endpoints.auth_method,
        )

        logger.debug(
            f"Exchanging authorization code at {endpoints.token_url} "
            f"(provider={provider.value}, auth={endpoints.auth_method})"
        )

        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        try:
            response = await self._http_client.post(
                token_request.token_endpoint,
                data=token_request.to_form_data(),
                headers=headers,
                auth=token_request.basic_auth(),
            )
        except httpx.TimeoutException as e:
            raise ProviderError("timeout", "Token endpoint timed out") from e
        except httpx.HTTPError as e:
            raise ProviderError("transport_error", str(e)) from e

        token_response = self._parse_token_response(response)
        if token_response.is_error():
            raise ProviderError(
                token_response.error or "unknown_error",
                token_response.error_description,
            )
        if not token_response.is_success():
            raise ProviderError("invalid_response", "Token response missing access_token")

        logger.info(f"Token exchange successful (provider={provider.value})")
        return token_response.to_provider_tokens()

    async def fetch_userinfo(
        self, provider: Provider, access_token: str
    ) -> dict[str, Any]:
        """Read the provider's userinfo document with a bearer token.

        Raises:
            ProviderError: If the provider has no userinfo endpoint or the
                request fails
        """
        endpoints = self.endpoints_for(provider)
        if not endpoints.userinfo_url:
            raise ProviderError("unsupported", "Provider has no userinfo endpoint")

        try:
            response = await self._http_client.get(
                endpoints.userinfo_url,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
            )
        except httpx.TimeoutException as e:
            raise ProviderError("timeout", "Userinfo endpoint timed out") from e
        except httpx.HTTPError as e:
            raise ProviderError("transport_error", str(e)) from e

        if not 200 <= response.status_code < 300:
            raise ProviderError(
                "userinfo_failed", f"Userinfo returned {response.status_code}"
            )
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError("invalid_response", "Userinfo is not JSON") from e
        if not isinstance(data, dict):
            raise ProviderError("invalid_response", "Userinfo is not an object")
        return data

    def _parse_token_response(self, response: httpx.Response) -> TokenResponse:
        """Parse a token endpoint response (RFC 6749 Section 5).

        Raises:
            ProviderError: If the body is not a JSON object
        """
        try:
            response_data = response.json()
        except ValueError as e:
            raise ProviderError(
                "invalid_response",
                f"Token endpoint returned non-JSON ({response.status_code})",
            ) from e

        if not isinstance(response_data, dict):
            raise ProviderError("invalid_response", "Token response is not an object")

        if not 200 <= response.status_code < 300:
            error_code = response_data.get("error") or f"http_{response.status_code}"
            error_description = response_data.get("error_description")
            logger.warning(
                f"Token exchange failed with {response.status_code}: {error_code}"
            )
            raise ProviderError(error_code, error_description)

        try:
            return TokenResponse(**response_data)
        except ValidationError as e:
            raise ProviderError("invalid_response", str(e)) from e

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        await self._http_client.aclose()

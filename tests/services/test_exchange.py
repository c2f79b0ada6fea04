"""Tests for the provider authorization code exchange.

Covers:
- Form encoding and per-provider client authentication
- Error payloads, non-JSON bodies and timeouts surfacing as ProviderError
- Userinfo lookups with a bearer token
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from ageproof.models.errors import ConfigurationError, ProviderError
from ageproof.models.session import Provider
from ageproof.services.exchange import OAuthExchangeClient
from helpers import make_providers


def mock_response(status_code=200, payload=None, json_error=False):
    response = MagicMock()
    response.status_code = status_code
    if json_error:
        response.json.side_effect = ValueError("not json")
    else:
        response.json.return_value = payload
    return response


class TestCodeExchange:
    def setup_method(self):
        # Arrange
        self.client = OAuthExchangeClient(make_providers(), timeout=5.0)
        self.client._http_client = AsyncMock()
        self.verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"

    async def test_direct_exchange_posts_form_with_secret_in_body(self):
        # Arrange
        self.client._http_client.post.return_value = mock_response(
            payload={"access_token": "at-1", "id_token": "id-1", "token_type": "Bearer"}
        )

        # Act
        tokens = await self.client.exchange(Provider.DIRECT, "code-123", self.verifier)

        # Assert
        assert tokens.access_token == "at-1"
        assert tokens.id_token == "id-1"

        call_args = self.client._http_client.post.call_args
        assert call_args[0][0] == "https://issuer.example.gov/oauth2/1/token"
        form_data = call_args[1]["data"]
        assert form_data["grant_type"] == "authorization_code"
        assert form_data["code"] == "code-123"
        assert form_data["code_verifier"] == self.verifier
        assert form_data["client_id"] == "direct-client"
        assert form_data["client_secret"] == "direct-secret"
        assert call_args[1]["auth"] is None
        headers = call_args[1]["headers"]
        assert headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert headers["Accept"] == "application/json"

    async def test_broker_exchange_uses_basic_auth_and_its_own_endpoint(self):
        # Arrange
        self.client._http_client.post.return_value = mock_response(
            payload={"access_token": "at-2"}
        )

        # Act
        await self.client.exchange(Provider.BROKER, "code-456", self.verifier)

        # Assert
        call_args = self.client._http_client.post.call_args
        assert call_args[0][0] == "https://broker.example.gov/oauth2/token"
        assert "client_secret" not in call_args[1]["data"]
        assert call_args[1]["auth"] == ("broker-client", "broker-secret")

    async def test_inline_profile_fields_are_kept_out_of_repr(self):
        # Arrange
        self.client._http_client.post.return_value = mock_response(
            payload={"access_token": "at-1", "dob": "15062008", "name": "A Person"}
        )

        # Act
        tokens = await self.client.exchange(Provider.DIRECT, "c", self.verifier)

        # Assert
        assert tokens.inline_claims["dob"] == "15062008"
        assert "15062008" not in repr(tokens)
        assert "at-1" not in repr(tokens)

    async def test_error_payload_raises_provider_error(self):
        # Arrange
        self.client._http_client.post.return_value = mock_response(
            status_code=400,
            payload={"error": "invalid_grant", "error_description": "Code expired"},
        )

        # Act & Assert
        with pytest.raises(ProviderError) as exc_info:
            await self.client.exchange(Provider.DIRECT, "old", self.verifier)
        assert exc_info.value.code == "invalid_grant"
        assert exc_info.value.description == "Code expired"

    async def test_error_status_without_error_code(self):
        self.client._http_client.post.return_value = mock_response(status_code=502, payload={})

        with pytest.raises(ProviderError) as exc_info:
            await self.client.exchange(Provider.DIRECT, "c", self.verifier)
        assert exc_info.value.code == "http_502"

    async def test_non_json_body_is_invalid_response(self):
        self.client._http_client.post.return_value = mock_response(json_error=True)

        with pytest.raises(ProviderError) as exc_info:
            await self.client.exchange(Provider.DIRECT, "c", self.verifier)
        assert exc_info.value.code == "invalid_response"

    async def test_missing_access_token_is_invalid_response(self):
        self.client._http_client.post.return_value = mock_response(
            payload={"token_type": "Bearer"}
        )

        with pytest.raises(ProviderError) as exc_info:
            await self.client.exchange(Provider.DIRECT, "c", self.verifier)
        assert exc_info.value.code == "invalid_response"

    async def test_error_field_in_success_status(self):
        self.client._http_client.post.return_value = mock_response(
            payload={"error": "access_denied"}
        )

        with pytest.raises(ProviderError) as exc_info:
            await self.client.exchange(Provider.DIRECT, "c", self.verifier)
        assert exc_info.value.code == "access_denied"

    async def test_timeout_is_provider_error(self):
        self.client._http_client.post.side_effect = httpx.ReadTimeout("slow")

        with pytest.raises(ProviderError) as exc_info:
            await self.client.exchange(Provider.DIRECT, "c", self.verifier)
        assert exc_info.value.code == "timeout"

    async def test_connection_failure_is_provider_error(self):
        self.client._http_client.post.side_effect = httpx.ConnectError("refused")

        with pytest.raises(ProviderError) as exc_info:
            await self.client.exchange(Provider.DIRECT, "c", self.verifier)
        assert exc_info.value.code == "transport_error"

    async def test_unconfigured_provider(self):
        client = OAuthExchangeClient({})

        with pytest.raises(ConfigurationError):
            await client.exchange(Provider.BROKER, "c", self.verifier)
        await client.close()


class TestUserinfo:
    def setup_method(self):
        self.client = OAuthExchangeClient(make_providers())
        self.client._http_client = AsyncMock()

    async def test_fetches_with_bearer_token(self):
        # Arrange
        self.client._http_client.get.return_value = mock_response(payload={"dob": "2008-06-15"})

        # Act
        userinfo = await self.client.fetch_userinfo(Provider.BROKER, "at-9")

        # Assert
        assert userinfo == {"dob": "2008-06-15"}
        call_args = self.client._http_client.get.call_args
        assert call_args[0][0] == "https://broker.example.gov/oauth2/user"
        assert call_args[1]["headers"]["Authorization"] == "Bearer at-9"

    async def test_provider_without_userinfo(self):
        with pytest.raises(ProviderError) as exc_info:
            await self.client.fetch_userinfo(Provider.DIRECT, "at")
        assert exc_info.value.code == "unsupported"

    async def test_userinfo_error_status(self):
        self.client._http_client.get.return_value = mock_response(status_code=401, payload={})

        with pytest.raises(ProviderError) as exc_info:
            await self.client.fetch_userinfo(Provider.BROKER, "at")
        assert exc_info.value.code == "userinfo_failed"

    async def test_close_closes_http_client(self):
        await self.client.close()

        self.client._http_client.aclose.assert_awaited_once()

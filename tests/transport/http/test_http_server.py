"""Tests for the HTTP surface, driven through httpx's ASGI transport."""

from dataclasses import replace
from datetime import date
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from ageproof.main import build_server
from ageproof.services.exchange import OAuthExchangeClient
from helpers import POSTBACK_KEY, make_providers, postback_claims, sign_postback


def token_response(age: int) -> MagicMock:
    response = MagicMock()
    response.status_code = 200
    response.json.return_value = {
        "access_token": "at",
        "dob": f"01-01-{date.today().year - age}",
    }
    return response


class TestAgeProofHttpServer:
    @pytest.fixture(autouse=True)
    def _server(self, settings):
        self.exchange_client = OAuthExchangeClient(make_providers())
        self.exchange_client._http_client = AsyncMock()
        self.server = build_server(settings, exchange_client=self.exchange_client)
        return self.server

    @pytest.fixture
    async def client(self, _server):
        transport = httpx.ASGITransport(app=_server.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client

    async def verify(self, client, age, widget_id="W1"):
        started = await client.post("/v1/verifications", json={"widgetId": widget_id})
        assert started.status_code == 201
        self.exchange_client._http_client.post.return_value = token_response(age)
        state = started.json()["stateToken"]
        return await client.get(
            "/v1/verifications/callback", params={"code": "c1", "state": state}
        )

    # ================================
    # Verification
    # ================================

    async def test_initiate_returns_redirect(self, client):
        response = await client.post(
            "/v1/verifications", json={"widgetId": "W1", "provider": "broker"}
        )

        assert response.status_code == 201
        body = response.json()
        assert body["sessionId"].startswith("avs_")
        assert body["authorizeUrl"].startswith("https://broker.example.gov/oauth2/authorize?")
        assert "code_challenge_method=S256" in body["authorizeUrl"]

    async def test_invalid_body_is_400(self, client):
        response = await client.post("/v1/verifications", json={"provider": "direct"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_body"

    async def test_non_json_body_is_400(self, client):
        response = await client.post("/v1/verifications", content=b"not json")

        assert response.status_code == 400

    async def test_adult_flow_and_token_validation(self, client):
        # Act
        callback = await self.verify(client, 30)
        token = callback.json()["token"]
        valid = await client.post(
            "/v1/tokens/validate", json={"token": token, "widgetId": "W1"}
        )
        other = await client.post(
            "/v1/tokens/validate", json={"token": token, "widgetId": "W2"}
        )

        # Assert
        assert callback.status_code == 200
        assert callback.json()["status"] == "verified"
        assert callback.json()["outcome"] == "verified_adult"
        assert callback.json()["verifiedAge"] == 30
        assert valid.json()["valid"] is True
        assert valid.json()["isAdult"] is True
        assert other.json() == {"valid": False, "isAdult": False, "expiresAt": None}

    async def test_replayed_callback_is_404(self, client):
        started = await client.post("/v1/verifications", json={"widgetId": "W1"})
        self.exchange_client._http_client.post.return_value = token_response(30)
        params = {"code": "c1", "state": started.json()["stateToken"]}

        first = await client.get("/v1/verifications/callback", params=params)
        second = await client.get("/v1/verifications/callback", params=params)

        assert first.status_code == 200
        assert second.status_code == 404

    async def test_status_of_pending_and_unknown_sessions(self, client):
        started = await client.post("/v1/verifications", json={"widgetId": "W1"})

        pending = await client.get(f"/v1/verifications/{started.json()['sessionId']}")
        missing = await client.get("/v1/verifications/avs_0_nothing")

        assert pending.json()["status"] == "pending"
        assert "token" not in pending.json()
        assert missing.status_code == 404

    async def test_rate_limit_returns_429_with_retry_after(self, client):
        for _ in range(10):
            await client.post("/v1/verifications", json={"widgetId": "W1"})

        response = await client.post("/v1/verifications", json={"widgetId": "W1"})

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) > 0

    async def test_rotating_forwarded_for_does_not_reset_the_budget(self, client):
        # Arrange
        for i in range(10):
            await client.post(
                "/v1/verifications",
                json={"widgetId": "W1"},
                headers={"x-forwarded-for": f"198.51.100.{i}"},
            )

        # Act
        response = await client.post(
            "/v1/verifications",
            json={"widgetId": "W1"},
            headers={"x-forwarded-for": "198.51.100.99"},
        )

        # Assert
        assert response.status_code == 429

    async def test_trusted_proxy_budgets_each_forwarded_client(self, settings):
        # Arrange
        server = build_server(
            replace(settings, trust_proxy=True), exchange_client=self.exchange_client
        )
        transport = httpx.ASGITransport(app=server.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            for _ in range(10):
                await client.post(
                    "/v1/verifications",
                    json={"widgetId": "W1"},
                    headers={"x-forwarded-for": "198.51.100.7"},
                )

            # Act
            blocked = await client.post(
                "/v1/verifications",
                json={"widgetId": "W1"},
                headers={"x-forwarded-for": "198.51.100.7"},
            )
            other = await client.post(
                "/v1/verifications",
                json={"widgetId": "W1"},
                headers={"x-forwarded-for": "198.51.100.8"},
            )

        # Assert
        assert blocked.status_code == 429
        assert other.status_code == 201

    # ================================
    # Guardian consent
    # ================================

    async def test_guardian_request_and_link_status(self, client):
        # Arrange
        minor = (await self.verify(client, 15)).json()

        # Act
        requested = await client.post(
            "/v1/guardian/requests",
            json={"sessionId": minor["sessionId"], "guardianContact": "parent@example.com"},
        )

        # Assert
        assert minor["outcome"] == "guardian_required"
        assert requested.status_code == 202
        assert requested.json()["linkId"] == minor["guardianLinkId"]
        assert requested.json()["status"] == "awaiting_guardian"

    async def test_guardian_request_without_link_is_404(self, client):
        adult = (await self.verify(client, 30)).json()

        response = await client.post(
            "/v1/guardian/requests",
            json={"sessionId": adult["sessionId"], "guardianContact": "parent@example.com"},
        )

        assert response.status_code == 404

    async def test_decision_before_guardian_verified_is_409(self, client):
        # Arrange - find the request token through the repository
        minor = (await self.verify(client, 15)).json()
        linker = self.server._verifier.linker
        link = await linker._repository.get_link(minor["guardianLinkId"])

        # Act
        link_status = await client.get(f"/v1/guardian/links/{link.request_token}")
        decision = await client.post(
            f"/v1/guardian/links/{link.request_token}/decision",
            json={"guardianToken": "x", "decision": "approve"},
        )

        # Assert
        assert link_status.json()["status"] == "awaiting_guardian"
        assert decision.status_code == 409

    async def test_unknown_request_token_is_404(self, client):
        response = await client.get("/v1/guardian/links/deadbeef")

        assert response.status_code == 404

    # ================================
    # Consent postback
    # ================================

    async def test_postback_json_body_acknowledged(self, client, broker_private_key):
        token = sign_postback(broker_private_key, postback_claims())

        response = await client.post(
            "/v1/consent/postback",
            json={"consent_artefact": token},
            headers={"x-postback-key": POSTBACK_KEY},
        )

        assert response.status_code == 200
        assert response.json()["received"] is True
        assert response.json()["recordId"].startswith("cpb_")

    async def test_postback_raw_jws_with_bearer_key(self, client, broker_private_key):
        token = sign_postback(broker_private_key, postback_claims())

        response = await client.post(
            "/v1/consent/postback",
            content=token.encode(),
            headers={"authorization": f"Bearer {POSTBACK_KEY}", "content-type": "application/jwt"},
        )

        assert response.status_code == 200
        assert response.json()["received"] is True

    async def test_rejected_postback_is_still_acknowledged(self, client, broker_private_key):
        token = sign_postback(broker_private_key, postback_claims(aud="someone-else"))

        response = await client.post(
            "/v1/consent/postback",
            data={"token": token, "postback_key": POSTBACK_KEY},
        )

        assert response.status_code == 200
        assert response.json()["received"] is True
        assert response.json()["recordId"]

    async def test_postback_without_token_is_recorded_and_acknowledged(self, client):
        # Act
        response = await client.post(
            "/v1/consent/postback",
            json={"hello": "world"},
            headers={"x-postback-key": POSTBACK_KEY},
        )

        # Assert
        assert response.status_code == 200
        assert response.json()["received"] is True
        repository = self.server._verifier.linker._repository
        [artifact] = repository.list_artifacts()
        assert artifact.record_id == response.json()["recordId"]
        assert artifact.signature_valid is False
        assert artifact.failure_reason == "missing_token"

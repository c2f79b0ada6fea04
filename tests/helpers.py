"""Shared test helpers."""

import json
import time
from types import SimpleNamespace
from unittest.mock import AsyncMock

import jwt

from ageproof.config import ProviderEndpoints
from ageproof.models.session import Provider
from ageproof.services.audit import AuditTrail
from ageproof.services.guardian import GuardianConsentLinker
from ageproof.services.sessions import SessionManager
from ageproof.services.verification_tokens import VerificationTokenService
from ageproof.stores.repository import InMemoryRepository
from ageproof.stores.session_store import InMemorySessionStore

ROOT_SECRET = "test-root-secret-0123456789abcdef0123456789"
POSTBACK_KEY = "postback-shared-secret"
CONSENT_CLIENT_ID = "consent-client-123"
BROKER_ISSUER = "https://broker.example.gov"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: float | None = None):
        self.now = time.time() if now is None else now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_providers() -> dict[Provider, ProviderEndpoints]:
    return {
        Provider.DIRECT: ProviderEndpoints(
            provider=Provider.DIRECT,
            authorize_url="https://issuer.example.gov/oauth2/1/authorize",
            token_url="https://issuer.example.gov/oauth2/1/token",
            client_id="direct-client",
            client_secret="direct-secret",
            redirect_uri="https://verify.example.com/v1/verifications/callback",
            scope="openid",
            auth_method="client_secret_post",
            extra_params={"purpose": "verification"},
        ),
        Provider.BROKER: ProviderEndpoints(
            provider=Provider.BROKER,
            authorize_url="https://broker.example.gov/oauth2/authorize",
            token_url="https://broker.example.gov/oauth2/token",
            client_id="broker-client",
            client_secret="broker-secret",
            redirect_uri="https://verify.example.com/v1/verifications/callback",
            userinfo_url="https://broker.example.gov/oauth2/user",
            scope="openid profile",
            auth_method="client_secret_basic",
        ),
    }


def make_jwk(private_key, kid: str = "broker-key-1") -> dict:
    public_jwk = json.loads(
        jwt.algorithms.RSAAlgorithm.to_jwk(private_key.public_key())
    )
    public_jwk.update({"kid": kid, "use": "sig", "alg": "RS256"})
    return public_jwk


def sign_postback(private_key, claims: dict, kid: str | None = "broker-key-1") -> str:
    headers = {"kid": kid} if kid else None
    return jwt.encode(claims, private_key, algorithm="RS256", headers=headers)


def postback_claims(**overrides) -> dict:
    now = int(time.time())
    claims = {
        "iss": BROKER_ISSUER,
        "aud": CONSENT_CLIENT_ID,
        "iat": now,
        "exp": now + 300,
        "sub": "subject-ref-1",
        "ack_id": "ack-001",
        "consent_status": "GRANTED",
    }
    claims.update(overrides)
    return {k: v for k, v in claims.items() if v is not None}


def build_components(settings, clock=None):
    """Wire the in-memory service graph the way main.build_server does."""
    clock = clock or FakeClock()
    repository = InMemoryRepository()
    store = InMemorySessionStore()
    audit_sink = AsyncMock()
    audit = AuditTrail(audit_sink)
    sessions = SessionManager(settings, store, repository, clock=clock)
    tokens = VerificationTokenService(settings.root_secret)
    notifier = AsyncMock()
    linker = GuardianConsentLinker(
        repository,
        sessions,
        tokens,
        audit,
        notifier,
        link_ttl_seconds=7 * 24 * 3600,
        public_base_url=settings.public_base_url,
        clock=clock,
    )
    return SimpleNamespace(
        clock=clock,
        repository=repository,
        store=store,
        audit_sink=audit_sink,
        audit=audit,
        sessions=sessions,
        tokens=tokens,
        notifier=notifier,
        linker=linker,
    )


def audited_actions(audit_sink, method="log_success"):
    """(action, context) pairs recorded on an AsyncMock audit sink."""
    return [c.args for c in getattr(audit_sink, method).await_args_list]

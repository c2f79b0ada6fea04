"""Entry point: wire the services from settings and serve HTTP.

Configuration comes from AGEPROOF_* environment variables or a .env file.
"""

from __future__ import annotations

import asyncio
import logging

from ageproof.config import Settings
from ageproof.primitives.pkce import PKCEManager
from ageproof.services.audit import AuditTrail, LoggingAuditLogger
from ageproof.services.claims import ClaimsExtractor
from ageproof.services.exchange import OAuthExchangeClient
from ageproof.services.guardian import GuardianConsentLinker
from ageproof.services.notify import GuardianNotifier, LoggingGuardianNotifier
from ageproof.services.postback import ConsentPostbackVerifier
from ageproof.services.rate_limit import InMemoryRateLimiter, RateLimiter
from ageproof.services.sessions import SessionManager
from ageproof.services.sweeper import ExpirySweeper
from ageproof.services.verification_tokens import VerificationTokenService
from ageproof.services.widgets import StaticWidgetDirectory
from ageproof.stores.repository import InMemoryRepository, Repository
from ageproof.stores.session_store import (
    InMemorySessionStore,
    RedisSessionStore,
    SessionStore,
)
from ageproof.transport.http.server import AgeProofHttpServer
from ageproof.verifier import AgeVerifier

logger = logging.getLogger(__name__)


def build_server(
    settings: Settings,
    store: SessionStore | None = None,
    repository: Repository | None = None,
    rate_limiter: RateLimiter | None = None,
    notifier: GuardianNotifier | None = None,
    exchange_client: OAuthExchangeClient | None = None,
) -> AgeProofHttpServer:
    """Assemble every component behind the HTTP surface."""
    if store is None:
        if settings.redis_url:
            store = RedisSessionStore.from_url(settings.redis_url)
        else:
            logger.warning("AGEPROOF_REDIS_URL not set; using in-process session store")
            store = InMemorySessionStore()
    repository = repository or InMemoryRepository()
    rate_limiter = rate_limiter or InMemoryRateLimiter()
    audit = AuditTrail(LoggingAuditLogger())

    exchange_client = exchange_client or OAuthExchangeClient(
        settings.providers, timeout=settings.http_timeout
    )
    sessions = SessionManager(settings, store, repository, PKCEManager())
    tokens = VerificationTokenService(
        settings.root_secret, default_ttl_minutes=settings.token_ttl_minutes
    )
    linker = GuardianConsentLinker(
        repository,
        sessions,
        tokens,
        audit,
        notifier or LoggingGuardianNotifier(),
        link_ttl_seconds=settings.link_ttl_hours * 3600,
        public_base_url=settings.public_base_url,
    )
    verifier = AgeVerifier(
        sessions,
        exchange_client,
        ClaimsExtractor(exchange_client),
        tokens,
        linker,
        repository,
        StaticWidgetDirectory(settings.widgets, settings.default_policy),
        audit,
    )
    postback_verifier = ConsentPostbackVerifier(
        postback_key=settings.postback_key,
        consent_client_id=settings.consent_client_id,
        issuer=settings.broker_issuer,
        jwks=settings.consent_jwks,
        repository=repository,
        rate_limiter=rate_limiter,
        audit=audit,
        linker=linker,
    )

    return AgeProofHttpServer(
        verifier,
        postback_verifier,
        rate_limiter,
        sweeper=ExpirySweeper(repository, linker),
        sweep_interval_seconds=settings.sweep_interval_seconds,
        on_shutdown=[exchange_client.close, store.close],
        host=settings.host,
        port=settings.port,
        trust_proxy=settings.trust_proxy,
    )


def main() -> None:
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    server = build_server(settings)
    asyncio.run(server.serve())


if __name__ == "__main__":
    main()

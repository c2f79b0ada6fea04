"""Verification session start and PKCE redemption."""

from __future__ import annotations

import logging
import time
from typing import Callable

from ageproof.config import Settings
from ageproof.models.errors import SessionNotFoundError
from ageproof.models.flow import ProviderRedirect
from ageproof.models.session import (
    AuthorizationStart,
    PendingAuthorization,
    Provider,
    VerificationSession,
)
from ageproof.primitives.pkce import PKCEManager
from ageproof.services.security import generate_session_id
from ageproof.stores.repository import Repository
from ageproof.stores.session_store import SessionStore

logger = logging.getLogger(__name__)

STATE_KEY_PREFIX = "verify-age:state:"


class SessionManager:
    """Creates verification sessions and redeems their PKCE entries.

    The pending entry lives in the session store for the provider's code
    window; the durable session row lives in the repository.
    """

    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        repository: Repository,
        pkce: PKCEManager | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._store = store
        self._repository = repository
        self._pkce = pkce or PKCEManager()
        self._clock = clock

    async def begin_session(
        self,
        widget_id: str,
        provider: Provider,
        guardian_link_id: str | None = None,
    ) -> AuthorizationStart:
        """Start a verification session and build the provider redirect.

        Args:
            widget_id: Widget the subject is verifying for
            provider: OAuth surface to send the subject to
            guardian_link_id: Consent link this session verifies a guardian
                for, if any

        Raises:
            ConfigurationError: If the provider has no credentials configured
        """
        endpoints = self._settings.endpoints_for(provider)
        params = self._pkce.generate_parameters()
        ttl = self._settings.session_ttl_seconds
        now = self._clock()

        session = VerificationSession(
            id=generate_session_id(),
            state_token=params.state,
            provider=provider,
            widget_id=widget_id,
            created_at=now,
            expires_at=now + ttl,
            guardian_link_id=guardian_link_id,
        )
        pending = PendingAuthorization(
            session_id=session.id,
            code_verifier=params.code_verifier,
            widget_id=widget_id,
            provider=provider,
            created_at=now,
        )

        await self._repository.add_session(session)
        await self._store.set(
            STATE_KEY_PREFIX + params.state, pending.model_dump_json(), ttl
        )

        authorize_url = ProviderRedirect(
            authorize_url=endpoints.authorize_url,
            client_id=endpoints.client_id,
            redirect_uri=endpoints.redirect_uri,
            challenge=params.code_challenge,
            state=params.state,
            scope=endpoints.scope,
            extra_params=endpoints.extra_params,
        ).to_url()

        logger.info(
            f"Started verification session {session.id} "
            f"(widget={widget_id}, provider={provider.value})"
        )
        return AuthorizationStart(
            session_id=session.id,
            authorize_url=authorize_url,
            state_token=params.state,
            expires_at=session.expires_at,
        )

    async def redeem(self, state_token: str) -> PendingAuthorization:
        """Consume the pending entry for a state token. Succeeds at most once.

        Raises:
            SessionNotFoundError: If the token is unknown, expired, or
                already redeemed
        """
        if not state_token:
            raise SessionNotFoundError("Missing state token")

        raw = await self._store.get_and_delete(STATE_KEY_PREFIX + state_token)
        if raw is None:
            raise SessionNotFoundError("State token is unknown, expired, or used")

        return PendingAuthorization.model_validate_json(raw)

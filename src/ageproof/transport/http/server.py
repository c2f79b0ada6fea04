"""HTTP surface for age verification and guardian consent."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Awaitable, Callable
from urllib.parse import parse_qs

import uvicorn
from pydantic import BaseModel, ValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from ageproof.models.errors import (
    ConfigurationError,
    InvalidTransitionError,
    LinkNotFoundError,
    PostbackError,
    ProtocolError,
    RateLimitError,
    SessionNotFoundError,
)
from ageproof.models.flow import ProviderCallback
from ageproof.models.session import AuthorizationStart
from ageproof.services.postback import ConsentPostbackVerifier
from ageproof.services.rate_limit import (
    GUARDIAN,
    TOKEN_VALIDATE,
    VERIFICATION_INIT,
    VERIFICATION_STATUS,
    RateLimiter,
    RateLimitPreset,
    client_identifier,
)
from ageproof.services.sweeper import ExpirySweeper
from ageproof.transport.http.schemas import (
    GuardianDecisionBody,
    GuardianRequestBody,
    GuardianVerificationBody,
    InitiateVerificationBody,
    ValidateTokenBody,
)
from ageproof.verifier import AgeVerifier

logger = logging.getLogger(__name__)

Handler = Callable[[Request], Awaitable[Response]]

POSTBACK_TOKEN_FIELDS = ("token", "consent_artefact", "consent_artifact", "jwt")
POSTBACK_KEY_FIELDS = ("postback_key", "api_key")


class AgeProofHttpServer:
    """Starlette application plus a uvicorn runner.

    Every handler returns JSON. Protocol errors map to 4xx; anything
    unexpected becomes a generic 500 so no internal detail leaks.
    """

    def __init__(
        self,
        verifier: AgeVerifier,
        postback_verifier: ConsentPostbackVerifier,
        rate_limiter: RateLimiter,
        sweeper: ExpirySweeper | None = None,
        sweep_interval_seconds: float = 60.0,
        on_shutdown: list[Callable[[], Awaitable[None]]] | None = None,
        host: str = "127.0.0.1",
        port: int = 8000,
        trust_proxy: bool = False,
    ) -> None:
        self._verifier = verifier
        self._postback_verifier = postback_verifier
        self._rate_limiter = rate_limiter
        self._sweeper = sweeper
        self._sweep_interval = sweep_interval_seconds
        self._on_shutdown = list(on_shutdown or [])
        self.host = host
        self.port = port
        self._trust_proxy = trust_proxy

        self._app = Starlette(
            routes=[
                Route(
                    "/v1/verifications",
                    self._endpoint(self._handle_initiate, VERIFICATION_INIT),
                    methods=["POST"],
                ),
                Route(
                    "/v1/verifications/callback",
                    self._endpoint(self._handle_callback, VERIFICATION_STATUS),
                    methods=["GET"],
                ),
                Route(
                    "/v1/verifications/{session_id}",
                    self._endpoint(self._handle_status, VERIFICATION_STATUS),
                    methods=["GET"],
                ),
                Route(
                    "/v1/tokens/validate",
                    self._endpoint(self._handle_validate, TOKEN_VALIDATE),
                    methods=["POST"],
                ),
                Route(
                    "/v1/guardian/requests",
                    self._endpoint(self._handle_guardian_request, GUARDIAN),
                    methods=["POST"],
                ),
                Route(
                    "/v1/guardian/links/{request_token}",
                    self._endpoint(self._handle_link_status, VERIFICATION_STATUS),
                    methods=["GET"],
                ),
                Route(
                    "/v1/guardian/links/{request_token}/verification",
                    self._endpoint(self._handle_guardian_verification, GUARDIAN),
                    methods=["POST"],
                ),
                Route(
                    "/v1/guardian/links/{request_token}/decision",
                    self._endpoint(self._handle_guardian_decision, GUARDIAN),
                    methods=["POST"],
                ),
                Route(
                    "/v1/consent/postback",
                    self._endpoint(self._handle_postback),
                    methods=["POST"],
                ),
            ],
            lifespan=self._lifespan,
        )

    @property
    def app(self) -> Starlette:
        return self._app

    async def serve(self) -> None:
        """Run the HTTP server until it is told to exit."""
        config = uvicorn.Config(
            app=self._app, host=self.host, port=self.port, log_level="info"
        )
        server = uvicorn.Server(config)
        logger.info(f"HTTP server starting on {self.host}:{self.port}")
        await server.serve()

    @contextlib.asynccontextmanager
    async def _lifespan(self, app: Starlette):
        sweep_task = None
        if self._sweeper is not None:
            sweep_task = asyncio.create_task(
                self._sweeper.run_forever(self._sweep_interval)
            )
        try:
            yield
        finally:
            if sweep_task is not None:
                sweep_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweep_task
            for close in self._on_shutdown:
                await close()

    # ================================
    # Dispatch and error mapping
    # ================================

    def _endpoint(self, handler: Handler, preset: RateLimitPreset | None = None) -> Handler:
        async def endpoint(request: Request) -> Response:
            try:
                if preset is not None:
                    await self._enforce_rate_limit(request, preset)
                return await handler(request)
            except RateLimitError as e:
                return JSONResponse(
                    {"error": "rate_limited", "retryAfter": e.retry_after},
                    status_code=429,
                    headers={"Retry-After": str(e.retry_after)},
                )
            except (SessionNotFoundError, LinkNotFoundError) as e:
                return _error("not_found", str(e), 404)
            except InvalidTransitionError as e:
                return _error("invalid_state", str(e), 409)
            except ProtocolError as e:
                return _error("bad_request", str(e), 400)
            except ValidationError as e:
                return _error("invalid_body", _validation_summary(e), 400)
            except ConfigurationError as e:
                logger.error(f"Configuration error: {e}")
                return _error("unavailable", "Service is not configured for this request", 503)
            except Exception as e:
                logger.exception(f"Error handling {request.url.path}: {e}")
                return _error("internal_error", "Internal server error", 500)

        return endpoint

    async def _enforce_rate_limit(self, request: Request, preset: RateLimitPreset) -> None:
        decision = await self._rate_limiter.check(self._client_id(request), preset)
        if not decision.allowed:
            raise RateLimitError(preset.name, decision.retry_after)

    def _client_id(self, request: Request) -> str:
        peer = request.client.host if request.client else None
        return client_identifier(request.headers, peer, trust_proxy=self._trust_proxy)

    # ================================
    # Verification
    # ================================

    async def _handle_initiate(self, request: Request) -> Response:
        body = await _parse_body(request, InitiateVerificationBody)
        start = await self._verifier.initiate(body.widget_id, body.provider)
        return JSONResponse(_start_payload(start), status_code=201)

    async def _handle_callback(self, request: Request) -> Response:
        params = request.query_params
        result = await self._verifier.handle_callback(ProviderCallback.from_query(params))
        return JSONResponse(result.to_dict())

    async def _handle_status(self, request: Request) -> Response:
        result = await self._verifier.status(request.path_params["session_id"])
        return JSONResponse(result.to_dict())

    async def _handle_validate(self, request: Request) -> Response:
        body = await _parse_body(request, ValidateTokenBody)
        validation = self._verifier.validate_token(body.token, body.widget_id)
        return JSONResponse(validation.to_dict())

    # ================================
    # Guardian consent
    # ================================

    async def _handle_guardian_request(self, request: Request) -> Response:
        body = await _parse_body(request, GuardianRequestBody)
        link = await self._verifier.request_guardian(body.session_id, body.guardian_contact)
        return JSONResponse(
            {"linkId": link.id, "status": link.status.value, "expiresAt": link.expires_at},
            status_code=202,
        )

    async def _handle_link_status(self, request: Request) -> Response:
        link = await self._verifier.linker.get_link(request.path_params["request_token"])
        return JSONResponse(
            {
                "linkId": link.id,
                "status": link.status.value,
                "expiresAt": link.expires_at,
                "decidedAt": link.decided_at,
            }
        )

    async def _handle_guardian_verification(self, request: Request) -> Response:
        body = await _parse_body(request, GuardianVerificationBody)
        start = await self._verifier.start_guardian_verification(
            request.path_params["request_token"], body.provider
        )
        return JSONResponse(_start_payload(start), status_code=201)

    async def _handle_guardian_decision(self, request: Request) -> Response:
        body = await _parse_body(request, GuardianDecisionBody)
        link = await self._verifier.record_guardian_decision(
            request.path_params["request_token"], body.guardian_token, body.decision
        )
        return JSONResponse(
            {"linkId": link.id, "status": link.status.value, "decidedAt": link.decided_at}
        )

    # ================================
    # Consent postback
    # ================================

    async def _handle_postback(self, request: Request) -> Response:
        fields = await _postback_fields(request)
        raw_jwt = _first(fields, POSTBACK_TOKEN_FIELDS) or ""

        presented = (
            request.headers.get("x-postback-key")
            or request.headers.get("x-api-key")
            or _bearer(request.headers.get("authorization"))
            or _first(fields, POSTBACK_KEY_FIELDS)
        )

        try:
            artifact = await self._postback_verifier.verify_postback(
                raw_jwt, presented, self._client_id(request)
            )
        except PostbackError as e:
            # The broker only needs to know we received it
            return JSONResponse({"received": True, "recordId": e.record_id})

        return JSONResponse({"received": True, "recordId": artifact.record_id})


async def _parse_body(request: Request, model: type[BaseModel]) -> Any:
    try:
        data = await request.json()
    except json.JSONDecodeError as e:
        raise ProtocolError("Request body is not valid JSON") from e
    if not isinstance(data, dict):
        raise ProtocolError("Request body must be a JSON object")
    return model.model_validate(data)


async def _postback_fields(request: Request) -> dict[str, str]:
    """Collect postback fields from a JSON, form-encoded, or raw JWT body."""
    raw = (await request.body()).decode("utf-8", errors="replace").strip()
    if not raw:
        return {}

    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type or raw.startswith("{"):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    if "application/x-www-form-urlencoded" in content_type:
        return {k: v[0] for k, v in parse_qs(raw).items() if v}

    # A bare compact JWS
    if raw.count(".") == 2:
        return {"token": raw}
    return {}


def _first(fields: dict[str, str], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = fields.get(key)
        if value:
            return value.strip()
    return None


def _bearer(header: str | None) -> str | None:
    if header and header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


def _start_payload(start: AuthorizationStart) -> dict[str, Any]:
    return {
        "sessionId": start.session_id,
        "authorizeUrl": start.authorize_url,
        "stateToken": start.state_token,
        "expiresAt": start.expires_at,
    }


def _error(code: str, message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": code, "message": message}, status_code=status_code)


def _validation_summary(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in error.errors()
    )

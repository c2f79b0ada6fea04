"""Runtime configuration loaded from the environment.

Secrets are read once at start-up. A local .env file is honoured through
python-dotenv; real environment variables take precedence.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Mapping

from dotenv import load_dotenv

from ageproof.models.errors import ConfigurationError
from ageproof.models.policy import MinorHandling, WidgetPolicy
from ageproof.models.session import Provider

logger = logging.getLogger(__name__)

PRODUCTION_BASE_URL = "https://digilocker.meripehchaan.gov.in/public/oauth2/1"
SANDBOX_BASE_URL = "https://api.sandbox.digitallocker.gov.in/public/oauth2/1"


@dataclass(frozen=True)
class ProviderEndpoints:
    """Endpoint set and client credentials for one OAuth surface."""

    provider: Provider
    authorize_url: str
    token_url: str
    client_id: str
    redirect_uri: str
    client_secret: str | None = field(default=None, repr=False)
    userinfo_url: str | None = None
    scope: str = "openid"
    auth_method: str = "client_secret_post"
    extra_params: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Settings:
    root_secret: str = field(repr=False)
    providers: dict[Provider, ProviderEndpoints]
    postback_key: str = field(default="", repr=False)
    consent_client_id: str = ""
    broker_issuer: str = ""
    consent_jwks: dict[str, Any] = field(default_factory=lambda: {"keys": []})
    public_base_url: str = "http://127.0.0.1:8000"
    redis_url: str | None = None
    http_timeout: float = 10.0
    session_ttl_seconds: int = 600
    token_ttl_minutes: int = 15
    link_ttl_hours: int = 168
    sweep_interval_seconds: float = 60.0
    widgets: dict[str, WidgetPolicy] = field(default_factory=dict)
    default_policy: WidgetPolicy = field(default_factory=WidgetPolicy)
    host: str = "127.0.0.1"
    port: int = 8000
    trust_proxy: bool = False
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if len(self.root_secret) < 32:
            raise ConfigurationError("Root secret must be at least 32 characters")
        if self.session_ttl_seconds <= 0:
            raise ConfigurationError("Session TTL must be positive")

    def endpoints_for(self, provider: Provider) -> ProviderEndpoints:
        try:
            return self.providers[provider]
        except KeyError as e:
            raise ConfigurationError(f"Provider {provider.value} is not configured") from e

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, use_dotenv: bool = True
    ) -> Settings:
        """Build settings from AGEPROOF_* variables.

        Raises:
            ConfigurationError: If a required value is missing or malformed
        """
        if environ is None:
            if use_dotenv:
                load_dotenv()
            environ = os.environ

        root_secret = environ.get("AGEPROOF_ROOT_SECRET")
        if not root_secret:
            raise ConfigurationError("AGEPROOF_ROOT_SECRET is required")

        sandbox = _flag(environ.get("AGEPROOF_SANDBOX"))
        base_url = SANDBOX_BASE_URL if sandbox else PRODUCTION_BASE_URL
        providers = {}
        for provider in Provider:
            endpoints = _provider_from_env(environ, provider, base_url)
            if endpoints is not None:
                providers[provider] = endpoints
        if not providers:
            logger.warning("No OAuth provider credentials configured")

        try:
            return cls(
                root_secret=root_secret,
                providers=providers,
                postback_key=environ.get("AGEPROOF_POSTBACK_KEY", ""),
                consent_client_id=environ.get("AGEPROOF_CONSENT_CLIENT_ID", ""),
                broker_issuer=environ.get("AGEPROOF_BROKER_ISSUER", ""),
                consent_jwks=_json(environ, "AGEPROOF_CONSENT_JWKS", {"keys": []}),
                public_base_url=environ.get(
                    "AGEPROOF_PUBLIC_BASE_URL", "http://127.0.0.1:8000"
                ).rstrip("/"),
                redis_url=environ.get("AGEPROOF_REDIS_URL") or None,
                http_timeout=float(environ.get("AGEPROOF_HTTP_TIMEOUT", "10")),
                session_ttl_seconds=int(environ.get("AGEPROOF_SESSION_TTL", "600")),
                token_ttl_minutes=int(environ.get("AGEPROOF_TOKEN_TTL_MINUTES", "15")),
                link_ttl_hours=int(environ.get("AGEPROOF_LINK_TTL_HOURS", "168")),
                sweep_interval_seconds=float(
                    environ.get("AGEPROOF_SWEEP_INTERVAL", "60")
                ),
                widgets=_widgets(_json(environ, "AGEPROOF_WIDGETS", {})),
                host=environ.get("AGEPROOF_HOST", "127.0.0.1"),
                port=int(environ.get("AGEPROOF_PORT", "8000")),
                trust_proxy=_flag(environ.get("AGEPROOF_TRUST_PROXY")),
                log_level=environ.get("AGEPROOF_LOG_LEVEL", "INFO").upper(),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration value: {e}") from e


def _provider_from_env(
    environ: Mapping[str, str], provider: Provider, base_url: str
) -> ProviderEndpoints | None:
    prefix = f"AGEPROOF_{provider.value.upper()}_"
    client_id = environ.get(prefix + "CLIENT_ID")
    if not client_id:
        return None

    redirect_uri = environ.get(prefix + "REDIRECT_URI")
    if not redirect_uri:
        raise ConfigurationError(f"{prefix}REDIRECT_URI is required")

    if provider is Provider.DIRECT:
        defaults = {
            "scope": "openid",
            "auth_method": "client_secret_post",
            "userinfo_url": None,
            "extra_params": {"purpose": "verification"},
        }
    else:
        defaults = {
            "scope": "openid profile",
            "auth_method": "client_secret_basic",
            "userinfo_url": f"{base_url}/user",
            "extra_params": {},
        }

    return ProviderEndpoints(
        provider=provider,
        authorize_url=environ.get(prefix + "AUTHORIZE_URL", f"{base_url}/authorize"),
        token_url=environ.get(prefix + "TOKEN_URL", f"{base_url}/token"),
        client_id=client_id,
        client_secret=environ.get(prefix + "CLIENT_SECRET") or None,
        redirect_uri=redirect_uri,
        userinfo_url=environ.get(prefix + "USERINFO_URL", defaults["userinfo_url"]),
        scope=environ.get(prefix + "SCOPE", defaults["scope"]),
        auth_method=environ.get(prefix + "AUTH_METHOD", defaults["auth_method"]),
        extra_params=defaults["extra_params"],
    )


def _json(environ: Mapping[str, str], key: str, default: Any) -> Any:
    raw = environ.get(key)
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"{key} is not valid JSON: {e}") from e


def _widgets(raw: Any) -> dict[str, WidgetPolicy]:
    if not isinstance(raw, dict):
        raise ConfigurationError("AGEPROOF_WIDGETS must be a JSON object")

    policies = {}
    for widget_id, values in raw.items():
        if not isinstance(values, dict):
            raise ConfigurationError(f"Widget {widget_id!r} must be a JSON object")
        handling = values.get("minor_handling", MinorHandling.GUARDIAN_CONSENT.value)
        try:
            minor_handling = MinorHandling(handling)
        except ValueError as e:
            raise ConfigurationError(
                f"Widget {widget_id!r} has unknown minor_handling {handling!r}"
            ) from e
        try:
            policies[widget_id] = WidgetPolicy(
                age_threshold=int(values.get("age_threshold", 18)),
                minor_handling=minor_handling,
                token_ttl_minutes=int(values.get("token_ttl_minutes", 15)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Widget {widget_id!r} is invalid: {e}") from e
    return policies


def _flag(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")

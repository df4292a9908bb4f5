"""
auth/oauth.py -- OAuth authorization-code bridge (Authlib).

The account service only sees the OAuthBridge contract:

    authorize_url(provider) -> (url, state)
    callback(provider, params, session_params) -> OAuthCallback(user, token)

callback() raises OAuthExchangeError for every failure: unknown provider,
state mismatch, provider-reported error, failed code exchange, or an
unusable profile. The service passes the reason through as UpstreamError.

CSRF: authorize_url() returns the state value; the outer application stores
it in its own session and hands it back as session_params["state"]. The
callback rejects the request unless the provider-echoed state matches, using
a constant-time comparison.

Identity normalization: providers disagree on claim names. Every provider
response is reduced to OIDC-style claims (email, email_verified, given_name,
family_name, picture) inside the bridge, and normalize_identity() turns
those into an OAuthIdentity. Nothing past this module reads raw claims.

Unlike a login-only integration, unverified emails are NOT rejected here:
the flag is carried through and decides whether the new account starts
confirmed.

Supported providers (enabled when client ID and secret are configured):
  github -- static endpoints; email comes from /user/emails.
  google -- OIDC discovery.
  oidc   -- generic OIDC discovery (Okta, Azure AD, Keycloak, Authentik, etc.)
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass, field
from typing import Protocol

import requests
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.requests_client import OAuth2Session

from auth.models import OAuthIdentity
from core.config import Settings, get_settings

logger = logging.getLogger("passgate.auth.oauth")

_HTTP_TIMEOUT = 10
_GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"


class OAuthExchangeError(Exception):
    """The provider exchange failed; the message is safe to show as a reason."""


@dataclass(frozen=True)
class OAuthCallback:
    user: dict
    token: dict = field(default_factory=dict)


class OAuthBridge(Protocol):
    def authorize_url(self, provider: str, redirect_uri: str | None = None) -> tuple[str, str]: ...

    def callback(self, provider: str, params: dict, session_params: dict) -> OAuthCallback: ...


# ---------------------------------------------------------------------------
# Provider registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    label: str
    client_id: str
    client_secret: str
    scope: str
    authorize_url: str = ""
    token_url: str = ""
    userinfo_url: str = ""
    discovery_url: str = ""


def configured_providers(settings: Settings | None = None) -> dict[str, ProviderConfig]:
    """Return every provider with both client ID and secret configured."""
    cfg = settings or get_settings()
    providers: dict[str, ProviderConfig] = {}

    # GitHub -- static endpoints (no OIDC discovery document)
    if cfg.github_client_id and cfg.github_client_secret:
        providers["github"] = ProviderConfig(
            name="github",
            label="GitHub",
            client_id=cfg.github_client_id,
            client_secret=cfg.github_client_secret,
            scope="read:user user:email",
            authorize_url="https://github.com/login/oauth/authorize",
            token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            userinfo_url="https://api.github.com/user",
        )

    if cfg.google_client_id and cfg.google_client_secret:
        providers["google"] = ProviderConfig(
            name="google",
            label="Google",
            client_id=cfg.google_client_id,
            client_secret=cfg.google_client_secret,
            scope="openid email profile",
            discovery_url=_GOOGLE_DISCOVERY_URL,
        )

    if cfg.oidc_client_id and cfg.oidc_client_secret and cfg.oidc_discovery_url:
        providers["oidc"] = ProviderConfig(
            name="oidc",
            label=cfg.oidc_display_name,
            client_id=cfg.oidc_client_id,
            client_secret=cfg.oidc_client_secret,
            scope="openid email profile",
            discovery_url=cfg.oidc_discovery_url,
        )
    return providers


def get_enabled_providers(settings: Settings | None = None) -> list[dict]:
    """Return [{"name": ..., "label": ...}] for every configured provider, for login buttons."""
    return [{"name": p.name, "label": p.label} for p in configured_providers(settings).values()]


# ---------------------------------------------------------------------------
# Identity normalization
# ---------------------------------------------------------------------------


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


def _optional_str(value) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def normalize_identity(provider: str, claims: dict) -> OAuthIdentity:
    """Turn OIDC-style claims into an OAuthIdentity.

    Raises OAuthExchangeError when the claims carry no usable email.
    A missing or non-boolean email_verified counts as unverified.
    """
    email = _optional_str(claims.get("email"))
    if email is None:
        raise OAuthExchangeError(f"{provider} did not return an email address.")
    return OAuthIdentity(
        provider=provider,
        email=email.lower(),
        email_verified=_as_bool(claims.get("email_verified")),
        first_name=_optional_str(claims.get("given_name")),
        last_name=_optional_str(claims.get("family_name")),
        avatar=_optional_str(claims.get("picture")),
    )


def _github_claims(client: OAuth2Session, config: ProviderConfig) -> dict:
    """Map GitHub's profile + email list onto OIDC claim names.

    GitHub does not include the email in the token or reliably in /user.
    Only the entry with primary=true counts; its verified flag becomes
    email_verified.
    """
    resp = client.get(config.userinfo_url, timeout=_HTTP_TIMEOUT)
    resp.raise_for_status()
    profile = resp.json()

    emails_resp = client.get(f"{config.userinfo_url}/emails", timeout=_HTTP_TIMEOUT)
    emails_resp.raise_for_status()
    primary = next((e for e in emails_resp.json() if e.get("primary")), None)

    given, _, family = (profile.get("name") or "").partition(" ")
    return {
        "sub": str(profile.get("id", "")),
        "email": primary.get("email") if primary else None,
        "email_verified": bool(primary and primary.get("verified")),
        "given_name": given,
        "family_name": family,
        "picture": profile.get("avatar_url"),
    }


# ---------------------------------------------------------------------------
# Authlib implementation
# ---------------------------------------------------------------------------


class AuthlibOAuthBridge:
    """OAuthBridge backed by authlib's requests OAuth2Session.

    Usage:
        bridge = AuthlibOAuthBridge()
        url, state = bridge.authorize_url("google")   # store state in the web session
        ...
        result = bridge.callback("google", request_params, {"state": stored_state})
    """

    def __init__(self, settings: Settings | None = None, providers: dict[str, ProviderConfig] | None = None) -> None:
        self.settings = settings or get_settings()
        self.providers = providers if providers is not None else configured_providers(self.settings)
        self._metadata: dict[str, dict] = {}
        for name in self.providers:
            logger.info("OAuth provider registered: %s", name)

    def _config(self, provider: str) -> ProviderConfig:
        config = self.providers.get(provider)
        if config is None:
            raise OAuthExchangeError(f"Unknown OAuth provider: {provider!r}")
        return config

    def _endpoints(self, config: ProviderConfig) -> dict:
        """Return authorize/token/userinfo URLs, fetching the discovery document once."""
        if not config.discovery_url:
            return {
                "authorization_endpoint": config.authorize_url,
                "token_endpoint": config.token_url,
                "userinfo_endpoint": config.userinfo_url,
            }
        if config.name not in self._metadata:
            resp = requests.get(config.discovery_url, timeout=_HTTP_TIMEOUT)
            resp.raise_for_status()
            self._metadata[config.name] = resp.json()
        return self._metadata[config.name]

    def _client(self, config: ProviderConfig, redirect_uri: str | None = None) -> OAuth2Session:
        return OAuth2Session(
            client_id=config.client_id,
            client_secret=config.client_secret,
            scope=config.scope,
            redirect_uri=redirect_uri or self.settings.oauth_redirect_uri or None,
        )

    def authorize_url(self, provider: str, redirect_uri: str | None = None) -> tuple[str, str]:
        """Return (url, state). The caller must keep state for the callback."""
        config = self._config(provider)
        try:
            endpoints = self._endpoints(config)
            client = self._client(config, redirect_uri)
            url, state = client.create_authorization_url(endpoints["authorization_endpoint"])
        except (requests.RequestException, KeyError, ValueError) as exc:
            raise OAuthExchangeError(f"{provider} is unavailable.") from exc
        return url, state

    def callback(self, provider: str, params: dict, session_params: dict) -> OAuthCallback:
        config = self._config(provider)

        expected = session_params.get("state")
        received = params.get("state")
        if not expected or not received or not hmac.compare_digest(str(expected), str(received)):
            raise OAuthExchangeError("OAuth state mismatch.")

        if params.get("error"):
            raise OAuthExchangeError(str(params.get("error_description") or params["error"]))

        code = params.get("code")
        if not code:
            raise OAuthExchangeError("OAuth callback is missing the authorization code.")

        try:
            endpoints = self._endpoints(config)
            client = self._client(config, params.get("redirect_uri"))
            token = client.fetch_token(endpoints["token_endpoint"], code=code)
            if provider == "github":
                claims = _github_claims(client, config)
            else:
                resp = client.get(endpoints["userinfo_endpoint"], timeout=_HTTP_TIMEOUT)
                resp.raise_for_status()
                claims = resp.json()
        except (AuthlibBaseError, requests.RequestException, KeyError, ValueError) as exc:
            logger.warning("OAuth token exchange failed for provider %r: %s", provider, exc)
            raise OAuthExchangeError(f"Could not sign in with {provider}.") from exc

        if not isinstance(claims, dict):
            raise OAuthExchangeError(f"{provider} returned an unexpected profile.")
        return OAuthCallback(user=claims, token=dict(token))

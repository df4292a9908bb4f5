"""Unit tests for auth/oauth.py -- provider registry, claim normalization, Authlib bridge.

No network: OAuth2Session is patched wherever a token exchange would happen.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from auth.oauth import (
    AuthlibOAuthBridge,
    OAuthExchangeError,
    ProviderConfig,
    configured_providers,
    get_enabled_providers,
    normalize_identity,
)
from core.config import Settings

_STATIC = ProviderConfig(
    name="oidc",
    label="SSO",
    client_id="client",
    client_secret="secret",
    scope="openid email profile",
    authorize_url="https://idp.example.com/authorize",
    token_url="https://idp.example.com/token",
    userinfo_url="https://idp.example.com/userinfo",
)

_GITHUB = ProviderConfig(
    name="github",
    label="GitHub",
    client_id="client",
    client_secret="secret",
    scope="read:user user:email",
    authorize_url="https://github.com/login/oauth/authorize",
    token_url="https://github.com/login/oauth/access_token",
    userinfo_url="https://api.github.com/user",
)


def _response(payload) -> MagicMock:
    resp = MagicMock()
    resp.json.return_value = payload
    return resp


@pytest.fixture
def bridge() -> AuthlibOAuthBridge:
    return AuthlibOAuthBridge(providers={"oidc": _STATIC, "github": _GITHUB})


# ---------------------------------------------------------------------------
# Provider registry
# ---------------------------------------------------------------------------


def test_no_credentials_means_no_providers():
    settings = Settings(debug=True, secret_key="k" * 32)
    assert configured_providers(settings) == {}


def test_providers_enabled_by_credentials():
    settings = Settings(
        debug=True,
        secret_key="k" * 32,
        github_client_id="gh",
        github_client_secret="gh-secret",
        oidc_client_id="sso",
        oidc_client_secret="sso-secret",
        oidc_discovery_url="https://sso.example.com/.well-known/openid-configuration",
        oidc_display_name="Okta",
    )
    providers = configured_providers(settings)
    assert set(providers) == {"github", "oidc"}
    assert providers["github"].token_url.startswith("https://github.com/")
    assert providers["oidc"].discovery_url.startswith("https://sso.example.com/")
    assert {"name": "oidc", "label": "Okta"} in get_enabled_providers(settings)


def test_oidc_needs_discovery_url():
    settings = Settings(debug=True, secret_key="k" * 32, oidc_client_id="sso", oidc_client_secret="s")
    assert "oidc" not in configured_providers(settings)


# ---------------------------------------------------------------------------
# normalize_identity
# ---------------------------------------------------------------------------


def test_normalize_identity_maps_oidc_claims():
    identity = normalize_identity(
        "google",
        {
            "email": " Ada@Example.COM ",
            "email_verified": True,
            "given_name": "Ada",
            "family_name": "Lovelace",
            "picture": "https://example.com/ada.png",
        },
    )
    assert identity.provider == "google"
    assert identity.email == "ada@example.com"
    assert identity.email_verified is True
    assert (identity.first_name, identity.last_name) == ("Ada", "Lovelace")
    assert identity.avatar == "https://example.com/ada.png"


@pytest.mark.parametrize("flag,expected", [("true", True), ("false", False), (None, False), (1, False)])
def test_email_verified_must_be_explicitly_true(flag, expected):
    assert normalize_identity("oidc", {"email": "a@x.com", "email_verified": flag}).email_verified is expected


def test_blank_names_become_none():
    identity = normalize_identity("github", {"email": "a@x.com", "given_name": "", "family_name": "  "})
    assert identity.first_name is None
    assert identity.last_name is None


@pytest.mark.parametrize("claims", [{}, {"email": ""}, {"email": None}])
def test_missing_email_raises(claims):
    with pytest.raises(OAuthExchangeError):
        normalize_identity("github", claims)


# ---------------------------------------------------------------------------
# AuthlibOAuthBridge.callback -- rejections before any network call
# ---------------------------------------------------------------------------


class TestCallbackRejections:
    def test_unknown_provider(self, bridge):
        with pytest.raises(OAuthExchangeError, match="Unknown OAuth provider"):
            bridge.callback("myspace", {"code": "c", "state": "s"}, {"state": "s"})

    @pytest.mark.parametrize(
        "params,session_params",
        [
            ({"code": "c", "state": "attacker"}, {"state": "s"}),
            ({"code": "c"}, {"state": "s"}),
            ({"code": "c", "state": "s"}, {}),
        ],
    )
    def test_state_mismatch(self, bridge, params, session_params):
        with patch("auth.oauth.OAuth2Session") as session_cls:
            with pytest.raises(OAuthExchangeError, match="state mismatch"):
                bridge.callback("oidc", params, session_params)
        session_cls.assert_not_called()

    def test_provider_reported_error(self, bridge):
        params = {"state": "s", "error": "access_denied", "error_description": "User cancelled"}
        with pytest.raises(OAuthExchangeError, match="User cancelled"):
            bridge.callback("oidc", params, {"state": "s"})

    def test_missing_code(self, bridge):
        with pytest.raises(OAuthExchangeError, match="authorization code"):
            bridge.callback("oidc", {"state": "s"}, {"state": "s"})


# ---------------------------------------------------------------------------
# AuthlibOAuthBridge.callback -- token exchange
# ---------------------------------------------------------------------------


class TestCallbackExchange:
    def test_oidc_userinfo(self, bridge):
        with patch("auth.oauth.OAuth2Session") as session_cls:
            client = session_cls.return_value
            client.fetch_token.return_value = {"access_token": "at"}
            client.get.return_value = _response({"email": "ada@example.com", "email_verified": True})

            result = bridge.callback("oidc", {"code": "abc", "state": "s"}, {"state": "s"})

        client.fetch_token.assert_called_once_with("https://idp.example.com/token", code="abc")
        assert result.user["email"] == "ada@example.com"
        assert result.token == {"access_token": "at"}

    def test_github_uses_primary_email(self, bridge):
        with patch("auth.oauth.OAuth2Session") as session_cls:
            client = session_cls.return_value
            client.fetch_token.return_value = {"access_token": "at"}
            client.get.side_effect = [
                _response({"id": 42, "name": "Ada Lovelace", "avatar_url": "https://avatars.example.com/42"}),
                _response(
                    [
                        {"email": "old@example.com", "primary": False, "verified": True},
                        {"email": "ada@example.com", "primary": True, "verified": True},
                    ]
                ),
            ]

            result = bridge.callback("github", {"code": "abc", "state": "s"}, {"state": "s"})

        identity = normalize_identity("github", result.user)
        assert identity.email == "ada@example.com"
        assert identity.email_verified is True
        assert (identity.first_name, identity.last_name) == ("Ada", "Lovelace")
        assert identity.avatar == "https://avatars.example.com/42"

    def test_github_without_primary_email(self, bridge):
        with patch("auth.oauth.OAuth2Session") as session_cls:
            client = session_cls.return_value
            client.fetch_token.return_value = {"access_token": "at"}
            client.get.side_effect = [_response({"id": 42, "name": "Ada"}), _response([])]
            result = bridge.callback("github", {"code": "abc", "state": "s"}, {"state": "s"})

        with pytest.raises(OAuthExchangeError):
            normalize_identity("github", result.user)

    def test_network_failure_is_exchange_error(self, bridge):
        with patch("auth.oauth.OAuth2Session") as session_cls:
            session_cls.return_value.fetch_token.side_effect = requests.ConnectionError("boom")
            with pytest.raises(OAuthExchangeError, match="Could not sign in with oidc"):
                bridge.callback("oidc", {"code": "abc", "state": "s"}, {"state": "s"})

    def test_non_dict_profile_rejected(self, bridge):
        with patch("auth.oauth.OAuth2Session") as session_cls:
            client = session_cls.return_value
            client.fetch_token.return_value = {"access_token": "at"}
            client.get.return_value = _response(["not", "a", "profile"])
            with pytest.raises(OAuthExchangeError, match="unexpected profile"):
                bridge.callback("oidc", {"code": "abc", "state": "s"}, {"state": "s"})


# ---------------------------------------------------------------------------
# authorize_url
# ---------------------------------------------------------------------------


def test_authorize_url_carries_state(bridge):
    url, state = bridge.authorize_url("oidc", redirect_uri="https://app.example.com/callback")
    assert url.startswith("https://idp.example.com/authorize?")
    assert state
    assert f"state={state}" in url
    assert "client_id=client" in url


def test_authorize_url_unknown_provider(bridge):
    with pytest.raises(OAuthExchangeError):
        bridge.authorize_url("myspace")

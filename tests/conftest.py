"""
tests/conftest.py -- Shared fixtures for the passgate test suite.

This module provides:
  - store: an isolated in-memory AccountStore per test
  - email_sink: a sink that captures deliveries instead of sending them
  - oauth_bridge: a scripted OAuthBridge (no network)
  - service: an AccountService wired to the three above
  - make_user: factory that registers a user through the service

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
PASSWORD_HASH_ROUNDS is lowered to bcrypt's minimum so registration-heavy
tests stay fast.
"""

from __future__ import annotations

import itertools
import os
from collections.abc import Callable, Generator

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("PASSWORD_HASH_ROUNDS", "4")

import pytest

from auth.accounts import AccountService
from auth.models import User
from auth.notifier import EmailKind, EmailMessage, render_message
from auth.oauth import OAuthCallback, OAuthExchangeError
from auth.store import AccountStore

VALID_PASSWORD = "Password1234!"

_counter = itertools.count(1)


def unique_user_email() -> str:
    return f"user{next(_counter)}@example.com"


# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------


class CapturingEmailSink:
    """Records every delivery; messages are rendered exactly as the real sink would."""

    def __init__(self) -> None:
        self.sent: list[tuple[User, EmailKind, str, EmailMessage]] = []

    def deliver(self, user: User, kind: EmailKind, raw_token: str) -> None:
        self.sent.append((user, kind, raw_token, render_message(user, kind, raw_token)))

    @property
    def last(self) -> tuple[User, EmailKind, str, EmailMessage]:
        return self.sent[-1]


class FakeOAuthBridge:
    """Scripted OAuthBridge. Set .claims or .error before calling the service."""

    def __init__(self) -> None:
        self.claims: dict = {
            "email": "oauth.user@example.com",
            "email_verified": True,
            "given_name": "Ada",
            "family_name": "Lovelace",
            "picture": "https://example.com/ada.png",
        }
        self.error: str | None = None
        self.calls: list[tuple[str, dict, dict]] = []

    def authorize_url(self, provider: str, redirect_uri: str | None = None) -> tuple[str, str]:
        return f"https://idp.example.com/{provider}/authorize?state=fixed", "fixed"

    def callback(self, provider: str, params: dict, session_params: dict) -> OAuthCallback:
        self.calls.append((provider, params, session_params))
        if self.error is not None:
            raise OAuthExchangeError(self.error)
        return OAuthCallback(user=dict(self.claims), token={"access_token": "opaque"})


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    s = AccountStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def email_sink() -> CapturingEmailSink:
    return CapturingEmailSink()


@pytest.fixture
def oauth_bridge() -> FakeOAuthBridge:
    return FakeOAuthBridge()


@pytest.fixture
def service(store: AccountStore, email_sink: CapturingEmailSink, oauth_bridge: FakeOAuthBridge) -> AccountService:
    return AccountService(store, email_sink=email_sink, oauth=oauth_bridge)


@pytest.fixture
def make_user(service: AccountService) -> Callable[..., User]:
    """Register a user through the service; keyword arguments override the defaults."""

    def _make(**attrs) -> User:
        params = {
            "identifier": unique_user_email(),
            "password": VALID_PASSWORD,
            "first_name": "John",
            "last_name": "Doe",
        }
        params.update(attrs)
        result = service.register(params)
        assert result.ok, result
        return result.value

    return _make


@pytest.fixture
def user(make_user) -> User:
    return make_user()

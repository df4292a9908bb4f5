"""Unit tests for auth/passwords.py -- bcrypt hashing and credential verification.

Covers:
- hash/verify round trip and malformed-hash tolerance
- verify_credentials by email (case-insensitive) and by phone
- Timing equalization: exactly one bcrypt comparison on every path,
  including unknown identifiers and OAuth-only accounts
"""

from unittest.mock import patch

import bcrypt
import pytest

from auth.models import User
from auth.passwords import hash_password, verify_credentials, verify_password

VALID_PASSWORD = "Password1234!"


def test_hash_is_not_plaintext_and_verifies():
    hashed = hash_password(VALID_PASSWORD)
    assert hashed != VALID_PASSWORD
    assert verify_password(VALID_PASSWORD, hashed)
    assert not verify_password("wrong password!", hashed)


def test_verify_password_never_raises_on_bad_hash():
    assert verify_password(VALID_PASSWORD, "not-a-bcrypt-hash") is False


def test_verify_credentials_by_email_ignores_case(store, user):
    found = verify_credentials(store, user.email.upper(), VALID_PASSWORD)
    assert found is not None
    assert found.id == user.id


def test_verify_credentials_by_phone(store, make_user):
    phone_user = make_user(identifier="+1 555-010-9999")
    assert phone_user.phone == "+15550109999"
    found = verify_credentials(store, "+15550109999", VALID_PASSWORD)
    assert found is not None
    assert found.id == phone_user.id


def test_wrong_password_returns_none(store, user):
    assert verify_credentials(store, user.email, "wrong password!") is None


class TestTimingEqualization:
    """Every path runs bcrypt exactly once, so response time does not reveal account existence."""

    def _count_checks(self, store, identifier: str, password: str) -> int:
        with patch("auth.passwords.bcrypt.checkpw", wraps=bcrypt.checkpw) as spy:
            verify_credentials(store, identifier, password)
        return spy.call_count

    def test_unknown_identifier_still_runs_bcrypt(self, store, user):
        # Warm the decoy hash so its one-time creation is not counted.
        verify_credentials(store, "warmup@example.com", "anything")
        assert self._count_checks(store, "nobody@example.com", "anything at all") == 1

    def test_wrong_password_runs_bcrypt_once(self, store, user):
        assert self._count_checks(store, user.email, "wrong password!") == 1

    def test_correct_password_runs_bcrypt_once(self, store, user):
        assert self._count_checks(store, user.email, VALID_PASSWORD) == 1

    def test_oauth_only_account_runs_decoy(self, store):
        oauth_user = store.create_user(User(email="oauth-only@example.com"))
        verify_credentials(store, "warmup@example.com", "anything")
        assert self._count_checks(store, oauth_user.email, "anything at all") == 1
        assert verify_credentials(store, oauth_user.email, "anything at all") is None


@pytest.mark.parametrize("password", ["", " ", "x" * 500])
def test_odd_passwords_fail_without_raising(store, user, password):
    assert verify_credentials(store, user.email, password) is None

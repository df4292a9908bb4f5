"""
auth/passwords.py -- Password hashing and credential verification.

Passwords: bcrypt, used directly (no passlib wrapper). The cost factor comes
from Settings.password_hash_rounds so the test suite can run at the minimum
cost while production keeps the default.

Timing equalization: verify_credentials() always runs one bcrypt comparison,
against the user's hash or against a decoy hash of the same cost when there
is no user or the user has no password. Response time therefore does not
reveal whether an identifier is registered.

Layer rule: may import from core/ and auth/ leaf modules; never from auth.accounts.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import TYPE_CHECKING

import bcrypt

from auth.validation import normalize_identifier
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import AccountStore

logger = logging.getLogger("passgate.auth")


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes; the password forms reject longer
    input before it gets here.
    """
    rounds = get_settings().password_hash_rounds
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Never raises: a malformed hash or an over-long password is a mismatch.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    # Built on first use rather than at import so it picks up the configured
    # cost factor; every comparison against it costs the same as a real one.
    return hash_password("passgate-timing-decoy")


def valid_password(user: User | None, password: str) -> bool:
    """Check password against user's hash, burning a decoy comparison when there is none."""
    if user is None or user.password_hash is None:
        verify_password(password, _dummy_hash())
        return False
    return verify_password(password, user.password_hash)


def verify_credentials(store: AccountStore, identifier: str, password: str) -> User | None:
    """Return the user identified by email or phone if password matches, else None.

    Always runs bcrypt whether or not the user exists:
    - Unknown identifier: bcrypt runs against the decoy hash (same cost)
    - OAuth-only account: same as unknown identifier
    - Wrong password: bcrypt runs against the real hash (same cost)
    """
    user = store.get_user_by_identifier(normalize_identifier(identifier))
    if not valid_password(user, password):
        return None
    return user

"""
auth/tokens.py -- Opaque token generation, hashing, and verification.

Security design decisions:
  Entropy: every token starts as secrets.token_bytes(Settings.token_bytes)
       (32 bytes by default, never fewer than 24). Brute-force is
       computationally infeasible.

  Storage: only SHA-256(raw bytes) is persisted, hex encoded. A leaked
       database does not yield usable tokens. bcrypt's intentional slowness is
       unnecessary here -- the input is high-entropy random data, not a
       password.

  Email tokens (confirm, reset_password, change:<email>): the raw bytes are
       sent URL-safe base64 encoded. Lookup is by digest + context + age.

  Session tokens: the raw bytes are wrapped in a compact JWS (python-jose,
       HS256 over SECRET_KEY) carrying a format version. A forged or
       truncated session token is rejected before any database query, but a
       valid signature alone is never trusted -- the store lookup (digest,
       context, age) is authoritative, which is what makes logout and
       password changes effective immediately.

  Validity windows: each purpose has its own window (see core/config.py).
       verify_token() returns None for unknown, wrong-purpose, and expired
       tokens alike so callers cannot tell them apart.

Layer rule: may import from core/ and auth/ leaf modules; never from
auth.accounts.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import secrets
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING

from jose import JWSError, jws

from auth.models import SESSION, TokenContext, TokenKind, UserToken
from core.config import Settings, get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import AccountStore

logger = logging.getLogger("passgate.auth")

_ALGORITHM = "HS256"
_SESSION_TOKEN_VERSION = 1
_MIN_TOKEN_BYTES = 24

# ---------------------------------------------------------------------------
# Raw token encoding
# ---------------------------------------------------------------------------


def generate_token_bytes() -> bytes:
    return secrets.token_bytes(max(get_settings().token_bytes, _MIN_TOKEN_BYTES))


def encode_token(raw: bytes) -> str:
    """URL-safe base64 without padding, safe to drop into a link."""
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def decode_token(encoded: str) -> bytes | None:
    """Inverse of encode_token(). Returns None on anything that is not a well-formed token."""
    if not isinstance(encoded, str):
        return None
    padded = encoded + "=" * (-len(encoded) % 4)
    try:
        raw = base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError):
        return None
    if len(raw) < _MIN_TOKEN_BYTES:
        return None
    return raw


def hash_token_bytes(raw: bytes) -> str:
    return hashlib.sha256(raw).hexdigest()


# ---------------------------------------------------------------------------
# Session token signing
# ---------------------------------------------------------------------------


def sign_session_token(raw: bytes) -> str:
    payload = {"v": _SESSION_TOKEN_VERSION, "sid": encode_token(raw)}
    return jws.sign(payload, get_settings().secret_key, algorithm=_ALGORITHM)


def unsign_session_token(token: str) -> bytes | None:
    """Check the signature and version and return the embedded raw bytes, or None."""
    if not isinstance(token, str) or not token:
        return None
    try:
        payload = jws.verify(token, get_settings().secret_key, algorithms=[_ALGORITHM])
    except JWSError:
        return None
    try:
        claims = json.loads(payload)
    except ValueError:
        return None
    if not isinstance(claims, dict) or claims.get("v") != _SESSION_TOKEN_VERSION:
        return None
    return decode_token(claims.get("sid"))


# ---------------------------------------------------------------------------
# Issuance
# ---------------------------------------------------------------------------


def build_session_token(user: User) -> tuple[str, UserToken]:
    """Return (signed_token, record) for a new session.

    The record gets a fresh tracking_id so this one login can later be
    listed and revoked without knowing its token value.
    """
    raw = generate_token_bytes()
    record = UserToken(
        user_id=user.id,
        hashed_token=hash_token_bytes(raw),
        context=SESSION,
        tracking_id=str(uuid.uuid4()),
    )
    return sign_session_token(raw), record


def build_email_token(user: User, context: TokenContext) -> tuple[str, UserToken]:
    """Return (encoded_token, record) for a token delivered by email.

    sent_to snapshots user.email. For email changes the caller passes the
    user carrying the NEW address, so sent_to is where the account moves to.
    """
    if context.kind is TokenKind.session:
        raise ValueError("Session tokens are built with build_session_token()")
    raw = generate_token_bytes()
    record = UserToken(
        user_id=user.id,
        hashed_token=hash_token_bytes(raw),
        context=context,
        sent_to=user.email,
    )
    return encode_token(raw), record


# ---------------------------------------------------------------------------
# Hashing and verification
# ---------------------------------------------------------------------------


def hash_token(token: str, context: TokenContext) -> str | None:
    """Return the stored digest for a raw token of the given purpose.

    Deterministic: the same token always hashes to the same digest. Returns
    None for malformed input (bad encoding, bad signature).
    """
    if context.kind is TokenKind.session:
        raw = unsign_session_token(token)
    else:
        raw = decode_token(token)
    return hash_token_bytes(raw) if raw is not None else None


def max_age_for(context: TokenContext, settings: Settings | None = None) -> timedelta:
    """Validity window for a token purpose."""
    settings = settings or get_settings()
    if context.kind is TokenKind.session:
        return settings.session_max_age
    if context.kind is TokenKind.confirm:
        return settings.confirm_max_age
    if context.kind is TokenKind.reset_password:
        return settings.reset_password_max_age
    if context.kind is TokenKind.change_email:
        return settings.change_email_max_age
    raise ValueError(f"Unknown token context: {context!r}")


def verify_token(
    store: AccountStore,
    token: str,
    context: TokenContext,
    max_age: timedelta | None = None,
) -> tuple[User, UserToken] | None:
    """Resolve a raw token to (owner, record), or None.

    None covers every failure -- malformed, never issued, wrong purpose,
    consumed, expired -- so callers cannot distinguish them.

    Confirm and reset tokens must still match the owner's current email.
    Change-email tokens point at the new address by design, so they do not.
    """
    digest = hash_token(token, context)
    if digest is None:
        return None
    window = max_age if max_age is not None else max_age_for(context)
    match_sent_to = context.kind in (TokenKind.confirm, TokenKind.reset_password)
    return store.get_user_by_token(digest, context, window, match_sent_to=match_sent_to)

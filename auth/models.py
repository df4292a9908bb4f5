"""
auth/models.py -- Domain dataclasses for identity and token entities.

Pattern: Data class. Stores and the account service do the work; these types
own the domain shape. The two exceptions are construction-time checks that
must hold no matter where a record comes from:
  - User: exactly one of email / phone is set.
  - TokenContext: a closed set of purposes, so no code path compares
    free-form context strings.

Layer rule: no imports from core/ or any other auth/ module.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------


@dataclass
class User:
    """An account that can authenticate.

    Exactly one of email / phone identifies the user; both-set and both-unset
    are rejected at construction time so the rule holds even for records
    that never touch the database.

    password_hash is None for OAuth-only accounts (they have no local password).
    confirmed_at is None until the email address has been confirmed.
    """

    email: str | None = None
    phone: str | None = None
    id: int | None = None
    password_hash: str | None = None  # None = OAuth-only user
    confirmed_at: str | None = None  # ISO 8601; None = unconfirmed
    first_name: str | None = None
    last_name: str | None = None
    avatar: str | None = None
    is_admin: bool = False
    inserted_at: str | None = None
    updated_at: str | None = None

    def __post_init__(self) -> None:
        if (self.email is None) == (self.phone is None):
            raise ValueError("User requires exactly one identifier: email or phone.")

    @property
    def identifier(self) -> str:
        return self.email if self.email is not None else self.phone  # type: ignore[return-value]

    @property
    def is_confirmed(self) -> bool:
        return self.confirmed_at is not None


# ---------------------------------------------------------------------------
# Token context
# ---------------------------------------------------------------------------


class TokenKind(str, Enum):
    session = "session"
    confirm = "confirm"
    reset_password = "reset_password"
    change_email = "change"


@dataclass(frozen=True)
class TokenContext:
    """The purpose a token was issued for.

    change_email carries the address the account had when the token was
    issued; its stored form is "change:<email>". Every other kind has no
    payload. Use the module-level constants or TokenContext.change_email()
    rather than constructing instances directly.
    """

    kind: TokenKind
    email: str | None = None

    def __post_init__(self) -> None:
        if (self.kind is TokenKind.change_email) != (self.email is not None):
            raise ValueError("Only change_email contexts carry an email address.")

    @classmethod
    def change_email(cls, current_email: str) -> TokenContext:
        return cls(TokenKind.change_email, current_email)

    @classmethod
    def parse(cls, value: str) -> TokenContext:
        """Rebuild a context from its stored string form. Raises ValueError on unknown values."""
        prefix = f"{TokenKind.change_email.value}:"
        if value.startswith(prefix):
            return cls.change_email(value[len(prefix) :])
        kind = TokenKind(value)
        if kind is TokenKind.change_email:
            raise ValueError("change context requires an email address")
        return cls(kind)

    def __str__(self) -> str:
        if self.kind is TokenKind.change_email:
            return f"{self.kind.value}:{self.email}"
        return self.kind.value


SESSION = TokenContext(TokenKind.session)
CONFIRM = TokenContext(TokenKind.confirm)
RESET_PASSWORD = TokenContext(TokenKind.reset_password)


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


@dataclass
class UserToken:
    """A capability record binding a random secret to a purpose.

    hashed_token is SHA-256 of the raw token bytes, hex encoded. The raw token
    is returned ONCE at issuance and never persisted.

    sent_to snapshots the email address the token was mailed to. Confirm and
    reset lookups require it to still match the account's email, so a link
    sent before an address change stops working.

    tracking_id is set only for session tokens: a stable handle for one
    login that lets the owner revoke it without knowing the token value.
    """

    user_id: int
    hashed_token: str
    context: TokenContext
    id: int | None = None
    sent_to: str | None = None
    tracking_id: str | None = None
    inserted_at: str | None = None  # ISO 8601, set by store on insert when empty


# ---------------------------------------------------------------------------
# OAuth identity
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OAuthIdentity:
    """Provider-independent view of an external identity.

    Built once at the OAuth boundary (auth.oauth.normalize_identity) so the
    rest of the code never touches provider claim names.
    """

    provider: str
    email: str
    email_verified: bool = False
    first_name: str | None = None
    last_name: str | None = None
    avatar: str | None = None

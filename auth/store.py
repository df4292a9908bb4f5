"""
auth/store.py -- SQLAlchemy Core persistence layer for users and tokens.

Pattern: Repository + Data Mapper. AccountStore is the repository;
_row_to_user / _row_to_token are the mappers. The account service never
touches SQL directly -- it calls the semantic operations below.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Only hashed tokens are stored. (context, hashed_token) is UNIQUE, so the
  same digest can never resolve to two records of one purpose.

  The identifier rule (exactly one of email / phone) is enforced three times:
  by the User dataclass, by the registration form, and by a CHECK constraint.

Transactions:
  Single-statement operations use engine.connect() + commit, as elsewhere.
  Multi-step mutations go through atomically(), which runs inside
  engine.begin(): the claimed token is deleted first and its rowcount checked,
  so when two requests race to consume the same token only one sees a row and
  the other gets None without changing anything.

Timestamps are ISO 8601 UTC strings with fixed microsecond precision so that
string comparison matches chronological order.

Layer rule: may import from core/ and auth.models only.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Literal, Union

from sqlalchemy import (
    CheckConstraint,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth.models import SESSION, TokenContext, User, UserToken
from core.config import get_settings

logger = logging.getLogger("passgate.auth.store")

ALL_CONTEXTS: Literal["all"] = "all"

TokenScope = Union[Sequence[TokenContext], Literal["all"]]

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(160), unique=True),
    Column("phone", String(20), unique=True),
    Column("password_hash", Text),  # NULL for OAuth-only users
    Column("confirmed_at", String(32)),
    Column("first_name", String(255)),
    Column("last_name", String(255)),
    Column("avatar", Text),
    Column("is_admin", Integer, nullable=False, server_default="0"),
    Column("inserted_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    CheckConstraint("(email IS NULL) <> (phone IS NULL)", name="valid_identifier"),
)

_user_tokens = Table(
    "user_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("hashed_token", String(64), nullable=False),  # SHA-256 hex
    Column("context", String(255), nullable=False),
    Column("sent_to", String(160)),
    Column("tracking_id", String(36)),  # session tokens only
    Column("inserted_at", String(32), nullable=False),
    UniqueConstraint("context", "hashed_token", name="user_tokens_context_token_key"),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. foreign_keys=ON is what makes deleting a user
    cascade to its tokens.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def iso_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return iso_timestamp(datetime.now(timezone.utc))


def _cutoff_iso(max_age: timedelta) -> str:
    return iso_timestamp(datetime.now(timezone.utc) - max_age)


def _context_values(contexts: Iterable[TokenContext]) -> list[str]:
    return [str(c) for c in contexts]


def _scope_clause(user_id: int, contexts: TokenScope):
    clause = _user_tokens.c.user_id == user_id
    if contexts == ALL_CONTEXTS:
        return clause
    return clause & _user_tokens.c.context.in_(_context_values(contexts))


_USER_FIELDS = {
    "email",
    "phone",
    "password_hash",
    "confirmed_at",
    "first_name",
    "last_name",
    "avatar",
    "is_admin",
}


def _user_values(fields: dict) -> dict:
    unknown = set(fields) - _USER_FIELDS
    if unknown:
        raise ValueError(f"Unknown user fields: {unknown!r}")
    values = dict(fields)
    if "is_admin" in values:
        values["is_admin"] = 1 if values["is_admin"] else 0
    values["updated_at"] = _now_iso()
    return values


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for User and UserToken entities.

    Usage:
        store = AccountStore("sqlite:///:memory:")
        user = store.create_user(User(email="a@x.com", password_hash=hash_password("...")))
        store.insert_token(UserToken(user_id=user.id, hashed_token=digest, context=SESSION))
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        """Insert a new user and return it with id and timestamps filled in.

        Raises sqlalchemy.exc.IntegrityError if the email or phone is already
        taken. The account service turns that into a field error.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    phone=user.phone,
                    password_hash=user.password_hash,
                    confirmed_at=user.confirmed_at,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    avatar=user.avatar,
                    is_admin=1 if user.is_admin else 0,
                    inserted_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
        return replace(user, id=result.inserted_primary_key[0], inserted_at=now, updated_at=now)

    def get_user_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, email: str) -> User | None:
        """Exact-match lookup. Callers normalize case before calling."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_phone(self, phone: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.phone == phone)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_identifier(self, identifier: str) -> User | None:
        """Look up the user whose email OR phone equals identifier."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.email == identifier) | (_users.c.phone == identifier))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: int, **fields) -> User | None:
        """Update mutable fields on a user. Returns the updated user, or None if not found.

        Accepted fields: email, phone, password_hash, confirmed_at, first_name,
        last_name, avatar, is_admin. Anything else raises ValueError.
        """
        values = _user_values(fields)
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            if result.rowcount == 0:
                conn.commit()
                return None
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            conn.commit()
        return _row_to_user(row)

    # ------------------------------------------------------------------
    # Token queries
    # ------------------------------------------------------------------

    def insert_token(self, token: UserToken) -> UserToken:
        """Persist a token record. inserted_at defaults to now when empty.

        Raises sqlalchemy.exc.IntegrityError on a (context, hashed_token)
        collision, which with 256-bit random tokens means a bug, not bad luck.
        """
        inserted_at = token.inserted_at or _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_tokens.insert().values(
                    user_id=token.user_id,
                    hashed_token=token.hashed_token,
                    context=str(token.context),
                    sent_to=token.sent_to,
                    tracking_id=token.tracking_id,
                    inserted_at=inserted_at,
                )
            )
            conn.commit()
        return replace(token, id=result.inserted_primary_key[0], inserted_at=inserted_at)

    def get_token(self, hashed_token: str, context: TokenContext, max_age: timedelta) -> UserToken | None:
        """Return the token with this digest and context if it is younger than max_age."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _user_tokens.select().where(
                    (_user_tokens.c.hashed_token == hashed_token)
                    & (_user_tokens.c.context == str(context))
                    & (_user_tokens.c.inserted_at > _cutoff_iso(max_age))
                )
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    def get_user_by_token(
        self,
        hashed_token: str,
        context: TokenContext,
        max_age: timedelta,
        match_sent_to: bool = False,
    ) -> tuple[User, UserToken] | None:
        """Resolve a live token and its owner in one query.

        match_sent_to additionally requires the token's sent_to to equal the
        owner's current email, voiding links mailed before an address change.
        """
        query = (
            select(
                _users,
                _user_tokens.c.id.label("token_id"),
                _user_tokens.c.hashed_token,
                _user_tokens.c.context,
                _user_tokens.c.sent_to,
                _user_tokens.c.tracking_id,
                _user_tokens.c.inserted_at.label("token_inserted_at"),
            )
            .select_from(_user_tokens.join(_users, _users.c.id == _user_tokens.c.user_id))
            .where(
                (_user_tokens.c.hashed_token == hashed_token)
                & (_user_tokens.c.context == str(context))
                & (_user_tokens.c.inserted_at > _cutoff_iso(max_age))
            )
        )
        if match_sent_to:
            query = query.where(_user_tokens.c.sent_to == _users.c.email)
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        if row is None:
            return None
        token = UserToken(
            id=row.token_id,
            user_id=row.id,
            hashed_token=row.hashed_token,
            context=TokenContext.parse(row.context),
            sent_to=row.sent_to,
            tracking_id=row.tracking_id,
            inserted_at=row.token_inserted_at,
        )
        return _row_to_user(row), token

    def list_tokens(self, user_id: int, contexts: TokenScope = ALL_CONTEXTS) -> list[UserToken]:
        """Return a user's tokens in the given contexts (newest first)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _user_tokens.select()
                .where(_scope_clause(user_id, contexts))
                .order_by(_user_tokens.c.inserted_at.desc(), _user_tokens.c.id.desc())
            ).fetchall()
        return [_row_to_token(r) for r in rows]

    def get_session_by_tracking_id(self, user_id: int, tracking_id: str) -> UserToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _user_tokens.select().where(
                    (_user_tokens.c.user_id == user_id)
                    & (_user_tokens.c.context == str(SESSION))
                    & (_user_tokens.c.tracking_id == tracking_id)
                )
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    def get_session_by_hash(self, user_id: int, hashed_token: str) -> UserToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _user_tokens.select().where(
                    (_user_tokens.c.user_id == user_id)
                    & (_user_tokens.c.context == str(SESSION))
                    & (_user_tokens.c.hashed_token == hashed_token)
                )
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    # ------------------------------------------------------------------
    # Token deletion
    # ------------------------------------------------------------------

    def delete_token(self, hashed_token: str, context: TokenContext) -> int:
        """Delete the token with this digest and context. Returns rows removed (0 or 1)."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_tokens.delete().where(
                    (_user_tokens.c.hashed_token == hashed_token) & (_user_tokens.c.context == str(context))
                )
            )
            conn.commit()
        return result.rowcount

    def delete_tokens(self, user_id: int, contexts: TokenScope = ALL_CONTEXTS) -> int:
        """Delete every token of a user in the given contexts. Returns rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_user_tokens.delete().where(_scope_clause(user_id, contexts)))
            conn.commit()
        return result.rowcount

    def delete_session_by_tracking_id(self, user_id: int, tracking_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_tokens.delete().where(
                    (_user_tokens.c.user_id == user_id)
                    & (_user_tokens.c.context == str(SESSION))
                    & (_user_tokens.c.tracking_id == tracking_id)
                )
            )
            conn.commit()
        return result.rowcount

    def delete_sessions_except(self, user_id: int, hashed_token: str) -> int:
        """Delete every session of a user except the one with this digest."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_tokens.delete().where(
                    (_user_tokens.c.user_id == user_id)
                    & (_user_tokens.c.context == str(SESSION))
                    & (_user_tokens.c.hashed_token != hashed_token)
                )
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Atomic mutation
    # ------------------------------------------------------------------

    def atomically(
        self,
        user_id: int,
        changes: dict,
        invalidate: TokenScope,
        claim: UserToken | None = None,
    ) -> User | None:
        """Apply user changes and token invalidation as one transaction.

        Steps, all inside engine.begin():
          1. If claim is given, delete that token row. Zero rows means another
             request consumed it first: return None with nothing changed.
          2. Apply changes to the user row (skipped when empty).
          3. Delete the user's tokens in the invalidate scope
             (ALL_CONTEXTS or a list of contexts).

        Returns the user as stored after the commit, or None when the claim
        was lost or the user no longer exists (a claimed token cannot outlive
        its user, so the latter only happens without a claim and nothing has
        been written by then). IntegrityError from step 2
        (e.g. the new email was taken meanwhile) rolls everything back and
        propagates.
        """
        with self.engine.begin() as conn:
            if claim is not None:
                claimed = conn.execute(_user_tokens.delete().where(_user_tokens.c.id == claim.id)).rowcount
                if claimed == 0:
                    return None
            if changes:
                updated = conn.execute(
                    _users.update().where(_users.c.id == user_id).values(**_user_values(changes))
                ).rowcount
                if updated == 0:
                    return None
            removed = conn.execute(_user_tokens.delete().where(_scope_clause(user_id, invalidate))).rowcount
            row = self._fetch_user(conn, user_id)
        logger.debug("Atomic update for user %s removed %d token(s)", user_id, removed + (1 if claim else 0))
        return _row_to_user(row) if row is not None else None

    def _fetch_user(self, conn: Connection, user_id: int):
        return conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        phone=row.phone,
        password_hash=row.password_hash,
        confirmed_at=row.confirmed_at,
        first_name=row.first_name,
        last_name=row.last_name,
        avatar=row.avatar,
        is_admin=bool(row.is_admin),
        inserted_at=row.inserted_at,
        updated_at=row.updated_at,
    )


def _row_to_token(row) -> UserToken:
    return UserToken(
        id=row.id,
        user_id=row.user_id,
        hashed_token=row.hashed_token,
        context=TokenContext.parse(row.context),
        sent_to=row.sent_to,
        tracking_id=row.tracking_id,
        inserted_at=row.inserted_at,
    )

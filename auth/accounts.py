"""
auth/accounts.py -- Account flows: authentication, registration, tokens, sessions.

AccountService is the only entry point the outer application needs. Every
flow returns a typed result from auth/results.py; expected failures never
raise. Store failures inside a flow are logged and returned as
UpstreamError -- no SQLAlchemy exception crosses this boundary from a flow.

Invalidation rule:
  Whenever a flow changes a credential (password) or a trust boundary
  (email, confirmed_at), the tokens that change would leave stale are
  deleted in the SAME transaction, via AccountStore.atomically():

    confirm_email     -> confirmed_at      + all confirm tokens
    update_email      -> email, confirmed  + that change:<email> context
    reset_password    -> password_hash     + every token of every context
    update_password   -> password_hash     + every token of every context

  Token-consuming flows pass the verified token as the claim, so when two
  requests race on one token exactly one succeeds and the other gets the
  generic NotFound.

Messages are deliberately non-enumerating: authentication failures never
say which field was wrong, and token failures never say whether a token
expired or never existed.

Usage:
    service = AccountService(AccountStore(), email_sink=LoggingEmailSink(), oauth=AuthlibOAuthBridge())
    result = service.register({"identifier": "a@x.com", "password": "Password1234!"})
    if result.ok:
        token = service.create_session_token(result.value).value
"""

from __future__ import annotations

import functools
import hmac
import logging
from dataclasses import replace
from datetime import datetime, timezone

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import CONFIRM, RESET_PASSWORD, SESSION, OAuthIdentity, TokenContext, User, UserToken
from auth.notifier import EmailDeliveryError, EmailKind, EmailSink, LoggingEmailSink
from auth.oauth import OAuthBridge, OAuthExchangeError, normalize_identity
from auth.passwords import hash_password, valid_password, verify_credentials
from auth.results import (
    AlreadyConfirmed,
    NotFound,
    Ok,
    Rejected,
    Result,
    Unauthorized,
    UpstreamError,
    ValidationFailed,
)
from auth.store import ALL_CONTEXTS, AccountStore, iso_timestamp
from auth.tokens import build_email_token, build_session_token, hash_token, verify_token
from auth.validation import (
    EmailForm,
    OAuthRegistrationForm,
    PasswordForm,
    RegistrationForm,
    field_errors,
    merge_errors,
    normalize_email,
    normalize_identifier,
)

logger = logging.getLogger("passgate.auth")

_CONFIRM_INVALID = "Your link is either invalid, or your email has already been confirmed."
_RESET_INVALID = "Reset password link is invalid or it has expired."
_CHANGE_INVALID = "Invalid link. Please generate a new one."
_SESSION_INVALID = "Session is invalid or it has expired."
_TAKEN = "has already been taken"


def _now_iso() -> str:
    return iso_timestamp(datetime.now(timezone.utc))


def _store_guard(method):
    """Return UpstreamError instead of letting a store exception escape a flow."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except SQLAlchemyError:
            logger.exception("Store failure during %s", method.__name__)
            return UpstreamError()

    return wrapper


class AccountService:
    def __init__(
        self,
        store: AccountStore,
        email_sink: EmailSink | None = None,
        oauth: OAuthBridge | None = None,
    ) -> None:
        self.store = store
        self.email_sink = email_sink or LoggingEmailSink()
        self.oauth = oauth

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    @_store_guard
    def authenticate(self, identifier: str, password: str) -> Result:
        """Password login by email or phone.

        Both arguments must be str; anything else is a caller bug and raises
        TypeError. Every credential failure returns the same Unauthorized.
        """
        if not isinstance(identifier, str) or not isinstance(password, str):
            raise TypeError("identifier and password must be str")
        user = verify_credentials(self.store, identifier, password)
        if user is None:
            logger.warning("Password authentication failed")
            return Unauthorized()
        logger.info("User %s authenticated with password", user.id)
        return Ok(user)

    @_store_guard
    def authenticate_oauth(self, provider: str, params: dict, session_params: dict) -> Result:
        """OAuth login, registering on first sight of an email.

        - provider exchange fails      -> UpstreamError with the bridge's reason
        - no local user with the email -> register (confirmed if the provider
                                          asserts the email is verified)
        - local user unconfirmed       -> Unauthorized naming the provider
        - local user confirmed         -> Ok(user)
        """
        if self.oauth is None:
            return UpstreamError("OAuth sign-in is not configured.")
        try:
            callback = self.oauth.callback(provider, params, session_params)
            identity = normalize_identity(provider, callback.user)
        except OAuthExchangeError as exc:
            logger.warning("OAuth sign-in via %r failed: %s", provider, exc)
            return UpstreamError(str(exc))

        user = self.store.get_user_by_email(identity.email)
        if user is None:
            return self.register_oauth(identity)
        if not user.is_confirmed:
            logger.warning("OAuth sign-in via %r rejected for unconfirmed user %s", provider, user.id)
            return Unauthorized(f"Please confirm your email with {provider}.")
        logger.info("User %s authenticated via %s", user.id, provider)
        return Ok(user)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    @_store_guard
    def register(self, attrs: dict) -> Result:
        """Register with identifier (email or phone) and password."""
        try:
            form = RegistrationForm.model_validate(attrs)
        except ValidationError as exc:
            return ValidationFailed(errors=field_errors(exc))
        user = User(
            email=form.email,
            phone=form.phone,
            password_hash=hash_password(form.password),
            first_name=form.first_name,
            last_name=form.last_name,
            avatar=form.avatar,
        )
        return self._insert_user(user, "identifier")

    @_store_guard
    def register_oauth(self, identity: OAuthIdentity) -> Result:
        """Register from a normalized OAuth identity. The account has no password."""
        try:
            form = OAuthRegistrationForm(
                email=identity.email,
                email_verified=identity.email_verified,
                first_name=identity.first_name,
                last_name=identity.last_name,
                avatar=identity.avatar,
            )
        except ValidationError as exc:
            return ValidationFailed(errors=field_errors(exc))
        user = User(
            email=form.email,
            confirmed_at=_now_iso() if form.email_verified else None,
            first_name=form.first_name,
            last_name=form.last_name,
            avatar=form.avatar,
        )
        return self._insert_user(user, "email")

    def _insert_user(self, user: User, field: str) -> Result:
        try:
            created = self.store.create_user(user)
        except IntegrityError:
            return ValidationFailed(errors={field: [_TAKEN]})
        logger.info("Registered user %s", created.id)
        return Ok(created)

    # ------------------------------------------------------------------
    # Lookups (store errors propagate)
    # ------------------------------------------------------------------

    def get_by_id(self, user_id: int) -> User | None:
        return self.store.get_user_by_id(user_id)

    def get_by_email(self, email: str) -> User | None:
        return self.store.get_user_by_email(normalize_email(email))

    def get_by_phone(self, phone: str) -> User | None:
        return self.store.get_user_by_phone(normalize_identifier(phone))

    def get_by_identifier(self, identifier: str) -> User | None:
        return self.store.get_user_by_identifier(normalize_identifier(identifier))

    def list_tokens(self, user: User) -> list[UserToken]:
        return self.store.list_tokens(user.id)

    def list_sessions(self, user: User) -> list[UserToken]:
        return self.store.list_tokens(user.id, [SESSION])

    def find_session(self, user: User, *, tracking_id: str | None = None, token: str | None = None) -> UserToken | None:
        """Find one of the user's sessions by tracking_id or by raw session token."""
        if tracking_id is not None:
            return self.store.get_session_by_tracking_id(user.id, tracking_id)
        if token is not None:
            digest = hash_token(token, SESSION)
            return self.store.get_session_by_hash(user.id, digest) if digest is not None else None
        raise TypeError("find_session() needs tracking_id or token")

    # ------------------------------------------------------------------
    # Email delivery
    # ------------------------------------------------------------------

    def _deliver(self, user: User, context: TokenContext, kind: EmailKind) -> Result:
        if user.email is None:
            return Rejected("This account has no email address.")
        encoded, record = build_email_token(user, context)
        self.store.insert_token(record)
        try:
            self.email_sink.deliver(user, kind, encoded)
        except EmailDeliveryError as exc:
            logger.warning("Email %s for user %s could not be delivered: %s", kind.value, user.id, exc)
            return UpstreamError("Email could not be delivered. Please try again.")
        return Ok(encoded)

    @_store_guard
    def deliver_confirmation_instructions(self, user: User) -> Result:
        if user.is_confirmed:
            return AlreadyConfirmed()
        return self._deliver(user, CONFIRM, EmailKind.confirmation)

    @_store_guard
    def deliver_password_reset_instructions(self, user: User) -> Result:
        return self._deliver(user, RESET_PASSWORD, EmailKind.password_reset)

    @_store_guard
    def deliver_email_update_instructions(self, user: User, current_email: str) -> Result:
        """Mail a change-email link to user.email (the NEW address, see prepare_email_update).

        The token is scoped to change:<current_email>, so it only works while
        the account still has the address it had when the link was issued.
        """
        return self._deliver(user, TokenContext.change_email(current_email), EmailKind.email_update)

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    @_store_guard
    def confirm_email(self, token: str) -> Result:
        """Mark the token owner confirmed and delete all of their confirm tokens.

        A still-valid token for an account that is already confirmed (e.g.
        confirmed through an email change) is consumed and answered with
        AlreadyConfirmed.
        """
        found = verify_token(self.store, token, CONFIRM)
        if found is None:
            return NotFound(_CONFIRM_INVALID)
        user, record = found
        changes = {} if user.is_confirmed else {"confirmed_at": _now_iso()}
        updated = self.store.atomically(user.id, changes, [CONFIRM], claim=record)
        if updated is None:
            return NotFound(_CONFIRM_INVALID)
        if not changes:
            return AlreadyConfirmed()
        logger.info("User %s confirmed their email", updated.id)
        return Ok(updated)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    @_store_guard
    def get_user_by_reset_password_token(self, token: str) -> Result:
        found = verify_token(self.store, token, RESET_PASSWORD)
        if found is None:
            return NotFound(_RESET_INVALID)
        return Ok(found[0])

    @_store_guard
    def reset_password(self, user: User, attrs: dict, token: str | None = None) -> Result:
        """Set a new password and delete every token the user has.

        When the reset token is passed it is claimed inside the same
        transaction, so two concurrent resets with one link cannot both win.
        """
        try:
            form = PasswordForm.model_validate(attrs)
        except ValidationError as exc:
            return ValidationFailed(errors=field_errors(exc))

        claim = None
        if token is not None:
            found = verify_token(self.store, token, RESET_PASSWORD)
            if found is None or found[0].id != user.id:
                return NotFound(_RESET_INVALID)
            claim = found[1]

        updated = self.store.atomically(
            user.id, {"password_hash": hash_password(form.password)}, ALL_CONTEXTS, claim=claim
        )
        if updated is None:
            return NotFound(_RESET_INVALID)
        logger.info("Password reset for user %s; all tokens revoked", user.id)
        return Ok(updated)

    # ------------------------------------------------------------------
    # Credential changes (authenticated)
    # ------------------------------------------------------------------

    @_store_guard
    def prepare_email_update(self, user: User, password: str, attrs: dict) -> Result:
        """Validate a new email and the current password without saving anything.

        Returns Ok(copy of user carrying the new email), ready to be passed
        to deliver_email_update_instructions().
        """
        errors: dict[str, list[str]] = {}
        form = None
        try:
            form = EmailForm.model_validate(attrs)
        except ValidationError as exc:
            errors = field_errors(exc)

        if form is not None:
            if user.email is None:
                errors["email"] = ["cannot be added to a phone number account"]
            elif form.email == user.email:
                errors["email"] = ["did not change"]
            elif self.store.get_user_by_email(form.email) is not None:
                errors["email"] = [_TAKEN]

        if not isinstance(password, str) or not valid_password(user, password):
            errors = merge_errors(errors, {"current_password": ["is not valid"]})
        if errors:
            return ValidationFailed(errors=errors)
        return Ok(replace(user, email=form.email))

    @_store_guard
    def update_email(self, user: User, token: str) -> Result:
        """Move the account to the address the change link was sent to.

        The token must belong to this user and to change:<user's current
        email>. On success the email is replaced, the account counts as
        confirmed, and every token of that change context is deleted.
        """
        if user.email is None:
            return NotFound(_CHANGE_INVALID)
        context = TokenContext.change_email(user.email)
        found = verify_token(self.store, token, context)
        if found is None or found[0].id != user.id or not found[1].sent_to:
            return NotFound(_CHANGE_INVALID)
        record = found[1]
        try:
            updated = self.store.atomically(
                user.id, {"email": record.sent_to, "confirmed_at": _now_iso()}, [context], claim=record
            )
        except IntegrityError:
            return NotFound(_CHANGE_INVALID)
        if updated is None:
            return NotFound(_CHANGE_INVALID)
        logger.info("User %s changed their email", user.id)
        return Ok(updated)

    @_store_guard
    def update_password(self, user: User, current_password: str, attrs: dict) -> Result:
        """Change the password after re-checking the current one; revokes every token.

        A wrong current password is reported as a field error alongside any
        policy errors on the new password.
        """
        errors: dict[str, list[str]] = {}
        form = None
        try:
            form = PasswordForm.model_validate(attrs)
        except ValidationError as exc:
            errors = field_errors(exc)
        if not isinstance(current_password, str) or not valid_password(user, current_password):
            errors = merge_errors(errors, {"current_password": ["is not valid"]})
        if errors:
            return ValidationFailed(errors=errors)

        updated = self.store.atomically(user.id, {"password_hash": hash_password(form.password)}, ALL_CONTEXTS)
        if updated is None:
            return NotFound("Account does not exist.")
        logger.info("Password updated for user %s; all tokens revoked", user.id)
        return Ok(updated)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @_store_guard
    def create_session_token(self, user: User) -> Result:
        """Issue a session token bound to a fresh tracking_id. Ok(raw_token)."""
        token, record = build_session_token(user)
        self.store.insert_token(record)
        return Ok(token)

    @_store_guard
    def find_by_session_token(self, token: str) -> Result:
        """Resolve a session token to its user. The store check is authoritative."""
        found = verify_token(self.store, token, SESSION)
        if found is None:
            return NotFound(_SESSION_INVALID)
        return Ok(found[0])

    @_store_guard
    def delete_session_token(self, token: str) -> Result:
        """Log out. Idempotent: unknown or malformed tokens are a no-op."""
        digest = hash_token(token, SESSION)
        if digest is not None:
            self.store.delete_token(digest, SESSION)
        return Ok()

    @_store_guard
    def delete_session(self, user: User, tracking_id: str, current_token: str) -> Result:
        """Revoke one of the user's other sessions by tracking_id.

        Refuses to revoke the session the caller is using right now; logging
        out is delete_session_token().
        """
        session = self.store.get_session_by_tracking_id(user.id, tracking_id)
        if session is None:
            return NotFound("Session does not exist.")
        current = hash_token(current_token, SESSION)
        if current is not None and hmac.compare_digest(session.hashed_token, current):
            return Rejected("Cannot delete the current session.")
        self.store.delete_session_by_tracking_id(user.id, tracking_id)
        return Ok()

    @_store_guard
    def delete_other_sessions(self, user: User, current_token: str) -> Result:
        """Revoke every session except the current one. Ok(remaining session record or None)."""
        current = hash_token(current_token, SESSION)
        if current is None:
            self.store.delete_tokens(user.id, [SESSION])
            return Ok(None)
        removed = self.store.delete_sessions_except(user.id, current)
        logger.info("Revoked %d other session(s) for user %s", removed, user.id)
        return Ok(self.store.get_session_by_hash(user.id, current))

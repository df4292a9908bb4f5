"""
auth/notifier.py -- Email sink contract and a logging implementation.

The account service calls EmailSink.deliver(user, kind, raw_token) after a
token is persisted. Rendering the message (links, HTML, localization) and
actually sending it belong to the sink, not to the account flows.

LoggingEmailSink renders plain-text instructions from per-kind templates
containing a {token} placeholder and logs the delivery. The body (which
carries a live token) is logged at DEBUG only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User

logger = logging.getLogger("passgate.notifier")


class EmailKind(str, Enum):
    confirmation = "confirmation"
    password_reset = "password_reset"
    email_update = "email_update"


class EmailDeliveryError(Exception):
    """The sink could not hand the message off."""


class EmailSink(Protocol):
    def deliver(self, user: User, kind: EmailKind, raw_token: str) -> None: ...


_DEFAULT_TEMPLATES: dict[EmailKind, tuple[str, str]] = {
    EmailKind.confirmation: (
        "Confirm your account",
        "You can confirm your account by visiting the link below:\n\n{token}\n\n"
        "If you didn't create an account with us, please ignore this.",
    ),
    EmailKind.password_reset: (
        "Reset your password",
        "You can reset your password by visiting the link below:\n\n{token}\n\n"
        "If you didn't request this change, please ignore this.",
    ),
    EmailKind.email_update: (
        "Update your email",
        "You can change your email by visiting the link below:\n\n{token}\n\n"
        "If you didn't request this change, please ignore this.",
    ),
}


@dataclass(frozen=True)
class EmailMessage:
    to: str
    sender: str
    subject: str
    text_body: str


def render_message(user: User, kind: EmailKind, raw_token: str, templates: dict | None = None) -> EmailMessage:
    """Build the message for one delivery. templates maps kind -> (subject, body with {token})."""
    if user.email is None:
        raise EmailDeliveryError("User has no email address.")
    subject, body = (templates or _DEFAULT_TEMPLATES)[kind]
    name = user.first_name or user.email
    return EmailMessage(
        to=user.email,
        sender=get_settings().mail_from,
        subject=subject,
        text_body=f"Hi {name},\n\n" + body.format(token=raw_token),
    )


class LoggingEmailSink:
    """Development sink: renders messages and logs them instead of sending."""

    def __init__(self, templates: dict | None = None) -> None:
        self.templates = templates

    def deliver(self, user: User, kind: EmailKind, raw_token: str) -> None:
        message = render_message(user, kind, raw_token, self.templates)
        logger.info("Email %s queued for user %s", kind.value, user.id)
        logger.debug("To: %s\nSubject: %s\n\n%s", message.to, message.subject, message.text_body)

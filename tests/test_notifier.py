"""Unit tests for auth/notifier.py -- message rendering and the logging sink."""

import logging

import pytest

from auth.models import User
from auth.notifier import EmailDeliveryError, EmailKind, LoggingEmailSink, render_message


def _user(**kwargs) -> User:
    kwargs.setdefault("email", "ada@example.com")
    return User(id=1, **kwargs)


def test_render_message_addresses_user_and_embeds_token():
    message = render_message(_user(first_name="Ada"), EmailKind.password_reset, "tok-123")
    assert message.to == "ada@example.com"
    assert message.subject == "Reset your password"
    assert message.text_body.startswith("Hi Ada,")
    assert "tok-123" in message.text_body


def test_render_message_falls_back_to_email_for_name():
    message = render_message(_user(), EmailKind.confirmation, "tok")
    assert message.text_body.startswith("Hi ada@example.com,")


def test_custom_templates():
    templates = {EmailKind.email_update: ("Subject", "Use {token} now.")}
    message = render_message(_user(), EmailKind.email_update, "tok", templates)
    assert message.subject == "Subject"
    assert message.text_body.endswith("Use tok now.")


def test_phone_only_user_cannot_be_emailed():
    with pytest.raises(EmailDeliveryError):
        render_message(User(id=2, phone="+15550100001"), EmailKind.confirmation, "tok")


def test_logging_sink_keeps_token_out_of_info_logs(caplog):
    sink = LoggingEmailSink()
    with caplog.at_level(logging.INFO, logger="passgate.notifier"):
        sink.deliver(_user(), EmailKind.confirmation, "secret-token-value")
    assert "confirmation" in caplog.text
    assert "secret-token-value" not in caplog.text


def test_logging_sink_logs_body_at_debug(caplog):
    with caplog.at_level(logging.DEBUG, logger="passgate.notifier"):
        LoggingEmailSink().deliver(_user(), EmailKind.confirmation, "secret-token-value")
    assert "secret-token-value" in caplog.text

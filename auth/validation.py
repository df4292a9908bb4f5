"""
auth/validation.py -- Pydantic v2 forms for user-supplied attributes.

These models define what the account flows accept. They are intentionally
separate from the dataclasses in auth/models.py, which own the domain shape.
The account service validates input through a form, then maps the form onto
the domain record.

Password policy: 12 to 72 bytes. bcrypt ignores everything past 72 bytes, so
longer passwords are rejected rather than silently truncated.

field_errors() flattens a pydantic ValidationError into {field: [messages]}
so callers can render errors next to inputs without knowing about pydantic.
"""

from __future__ import annotations

import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{6,14}$")

_PASSWORD_MIN = 12
_PASSWORD_MAX_BYTES = 72


def normalize_email(value: str) -> str:
    return value.strip().lower()


def normalize_phone(value: str) -> str:
    return re.sub(r"[\s\-().]", "", value)


def normalize_identifier(value: str) -> str:
    """Canonical lookup form of an email address or phone number."""
    return normalize_email(value) if "@" in value else normalize_phone(value)


def _check_email(value: str) -> str:
    value = normalize_email(value)
    if len(value) > 160:
        raise ValueError("should be at most 160 character(s)")
    if not EMAIL_PATTERN.match(value):
        raise ValueError("must have the @ sign and no spaces")
    return value


def _check_password(value: str) -> str:
    if len(value) < _PASSWORD_MIN:
        raise ValueError(f"should be at least {_PASSWORD_MIN} character(s)")
    if len(value.encode("utf-8")) > _PASSWORD_MAX_BYTES:
        raise ValueError(f"should be at most {_PASSWORD_MAX_BYTES} byte(s)")
    return value


# ---------------------------------------------------------------------------
# Forms
# ---------------------------------------------------------------------------


class RegistrationForm(BaseModel):
    """Password registration.

    identifier is either an email address or a phone number; the validator
    classifies it so exactly one of .email / .phone is populated.
    Whitespace is not stripped globally because it is significant in passwords.
    """

    model_config = ConfigDict(extra="ignore")

    identifier: str
    password: str
    first_name: Optional[str] = Field(default=None, max_length=255)
    last_name: Optional[str] = Field(default=None, max_length=255)
    avatar: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("identifier")
    @classmethod
    def classify_identifier(cls, value: str) -> str:
        value = value.strip()
        if "@" in value:
            return _check_email(value)
        compact = normalize_phone(value)
        if not PHONE_PATTERN.match(compact):
            raise ValueError("must be a valid email address or phone number")
        return compact

    @field_validator("password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        return _check_password(value)

    @property
    def email(self) -> str | None:
        return self.identifier if "@" in self.identifier else None

    @property
    def phone(self) -> str | None:
        return None if "@" in self.identifier else self.identifier


class OAuthRegistrationForm(BaseModel):
    """Registration from a normalized OAuth identity. No password is accepted."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    email: str
    email_verified: bool = False
    first_name: Optional[str] = Field(default=None, max_length=255)
    last_name: Optional[str] = Field(default=None, max_length=255)
    avatar: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _check_email(value)


class PasswordForm(BaseModel):
    """New password, with an optional confirmation that must match when given."""

    model_config = ConfigDict(extra="ignore")

    password: str
    password_confirmation: Optional[str] = None

    @field_validator("password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        return _check_password(value)

    @model_validator(mode="after")
    def confirmation_matches(self) -> "PasswordForm":
        if self.password_confirmation is not None and self.password_confirmation != self.password:
            raise ValueError("password_confirmation: does not match password")
        return self


class EmailForm(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    email: str

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _check_email(value)


# ---------------------------------------------------------------------------
# Error flattening
# ---------------------------------------------------------------------------


def field_errors(exc: ValidationError) -> dict[str, list[str]]:
    """Flatten a pydantic ValidationError into {field: [messages]}.

    Model-level errors carry no location; they use the "field: message"
    convention (see PasswordForm.confirmation_matches) to name their field.
    pydantic's "Value error, " prefix is stripped so messages read as plain
    sentence fragments ("should be at least 12 character(s)").
    """
    errors: dict[str, list[str]] = {}
    for err in exc.errors():
        msg = str(err.get("msg", "is invalid")).removeprefix("Value error, ")
        loc = err.get("loc") or ()
        if loc:
            name = ".".join(str(part) for part in loc)
        elif ": " in msg:
            name, msg = msg.split(": ", 1)
        else:
            name = "__all__"
        errors.setdefault(name, []).append(msg)
    return errors


def merge_errors(*groups: dict[str, list[str]]) -> dict[str, list[str]]:
    merged: dict[str, list[str]] = {}
    for group in groups:
        for name, messages in group.items():
            merged.setdefault(name, []).extend(messages)
    return merged

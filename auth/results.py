"""
auth/results.py -- Typed outcomes returned by AccountService flows.

Every flow returns either Ok or one of the Failure subclasses; none of them
raise for expected outcomes. Failure messages are intentionally vague where
precision would leak information:
  - Unauthorized never says whether the identifier exists.
  - NotFound covers "never existed", "wrong purpose" and "expired" alike.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Ok:
    value: Any = None
    ok = True


@dataclass(frozen=True)
class Failure:
    message: str = "Request failed."
    ok = False


@dataclass(frozen=True)
class Unauthorized(Failure):
    message: str = "Email or Password is incorrect."


@dataclass(frozen=True)
class NotFound(Failure):
    message: str = "Link is invalid or it has expired."


@dataclass(frozen=True)
class ValidationFailed(Failure):
    """Field-level validation errors, e.g. {"password": ["should be at least 12 character(s)"]}."""

    message: str = "Invalid attributes."
    errors: dict[str, list[str]] = field(default_factory=dict)


@dataclass(frozen=True)
class AlreadyConfirmed(Failure):
    message: str = "Your email has already been confirmed."


@dataclass(frozen=True)
class Rejected(Failure):
    message: str = "Request rejected."


@dataclass(frozen=True)
class UpstreamError(Failure):
    message: str = "A dependent service failed. Please try again."


Result = Ok | Unauthorized | NotFound | ValidationFailed | AlreadyConfirmed | Rejected | UpstreamError

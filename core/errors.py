"""
core/errors.py -- Application exception hierarchy.

Every error that should reach a client as a structured response derives from
AppError. Each subclass fixes its HTTP status; api/main.py turns any AppError
into

    {"success": false, "message": <message>, "error": <detail>}

where "error" is only included outside production.

Layer rule: core/ is the kernel. No framework imports here -- auth/ and api/
raise these, api/main.py maps them to responses.
"""

from __future__ import annotations

from typing import Any


class AppError(Exception):
    """Base class for errors with a client-facing message."""

    status_code: int = 500

    def __init__(self, message: str, detail: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationFailed(AppError):
    status_code = 400


class Conflict(AppError):
    """Uniqueness or invariant violation (duplicate email, last admin)."""

    status_code = 400


class Unauthorized(AppError):
    status_code = 401


class Forbidden(AppError):
    status_code = 403


class NotFound(AppError):
    status_code = 404


class DeliveryError(AppError):
    """An outbound mail or SMS transport failed.

    Account flows log and skip it; the contact form lets it surface as a 502
    so the visitor knows the message was not forwarded.
    """

    status_code = 502

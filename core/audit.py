"""
core/audit.py -- Append-only security audit trail.

Every security-relevant decision (login outcome, access denial, admin action,
data access) is recorded as one AuditEvent serialized to a single JSON line on
the "farmassist.audit" logger. Operators route that logger wherever they keep
audit data; configure_audit_sink() adds an append-only JSONL file handler.

Event shape:
    {"type": "auth.failure", "ip": "...", "method": "POST", "path": "/api/auth/login",
     "userId": null, "timestamp": "2026-...Z", "reason": "status=401"}

Security notes:
  [A1] The path never carries the query string. Verification and reset
       tokens travel in the query string, so the raw URL is not safe to log.
  [A2] Detail keys that may carry credentials are redacted before the event
       is built. Strings become "[redacted]", containers "[object redacted]".
  [A3] Emitting never raises. A broken sink must not turn an allowed request
       into a 500 or mask the original error; failures are reported on the
       "farmassist.audit.errors" logger instead.

The request argument is duck-typed (client.host, method, url.path, state.user)
so this module stays framework-free.

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger("farmassist.audit")
_error_logger = logging.getLogger("farmassist.audit.errors")

_SENSITIVE_KEYS = frozenset(
    {
        "password",
        "newpassword",
        "currentpassword",
        "token",
        "access_token",
        "authorization",
        "secret",
        "body",
        "cookie",
    }
)


class AuditEventType(str, Enum):
    AUTH_SUCCESS = "auth.success"
    AUTH_FAILURE = "auth.failure"
    ACCESS_DENIED = "access.denied"
    SENSITIVE_ACTION = "sensitive.action"
    DATA_READ = "data.read"
    DATA_WRITE = "data.write"


@dataclass(frozen=True)
class AuditEvent:
    """One immutable audit record."""

    type: AuditEventType
    ip: str | None
    method: str | None
    path: str | None
    user_id: int | str | None
    timestamp: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        record = asdict(self)
        details = record.pop("details")
        record["type"] = self.type.value
        record["userId"] = record.pop("user_id")
        for key, value in details.items():
            record.setdefault(key, value)
        return json.dumps(record, default=str, separators=(",", ":"))


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


def redact(value: Any) -> str | None:
    """Replace a sensitive value with a placeholder that keeps only its kind."""
    if value is None:
        return None
    if isinstance(value, (dict, list, tuple, set)):
        return "[object redacted]"
    return "[redacted]"


def redact_details(details: dict[str, Any]) -> dict[str, Any]:
    return {key: redact(value) if key.lower() in _SENSITIVE_KEYS else value for key, value in details.items()}


# ---------------------------------------------------------------------------
# Sink configuration
# ---------------------------------------------------------------------------


def configure_audit_sink(path: str) -> None:
    """Append audit events as JSON lines to the given file.

    Idempotent: a second call with the same path does not add a duplicate
    handler.
    """
    if not path:
        return
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename.endswith(path):
            return
    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


# ---------------------------------------------------------------------------
# Emitter
# ---------------------------------------------------------------------------


def _request_context(request: Any) -> tuple[str | None, str | None, str | None, int | str | None]:
    client = getattr(request, "client", None)
    ip = getattr(client, "host", None) if client else None
    method = getattr(request, "method", None)
    url = getattr(request, "url", None)
    path = getattr(url, "path", None) if url is not None else None
    state = getattr(request, "state", None)
    user = getattr(state, "user", None) if state is not None else None
    user_id = getattr(user, "id", None) if user is not None else None
    return ip, method, path, user_id


class AuditTrail:
    """Builds and emits audit events for a request.

    One instance is created at startup and shared; it holds no per-request
    state.
    """

    def __init__(self, sink: logging.Logger | None = None) -> None:
        self._sink = sink or logger

    def emit(self, event_type: AuditEventType, request: Any = None, **details: Any) -> AuditEvent | None:
        try:
            ip, method, path, user_id = _request_context(request)
            event = AuditEvent(
                type=event_type,
                ip=ip,
                method=method,
                path=path,
                user_id=user_id,
                timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                details=redact_details(details),
            )
            self._sink.info(event.to_json())
            return event
        except Exception:  # [A3]
            _error_logger.exception("Failed to emit audit event %s", getattr(event_type, "value", event_type))
            return None

    def auth_success(self, request: Any, **details: Any) -> AuditEvent | None:
        return self.emit(AuditEventType.AUTH_SUCCESS, request, **details)

    def auth_failure(self, request: Any, reason: str) -> AuditEvent | None:
        return self.emit(AuditEventType.AUTH_FAILURE, request, reason=reason)

    def access_denied(self, request: Any, reason: str) -> AuditEvent | None:
        return self.emit(AuditEventType.ACCESS_DENIED, request, reason=reason)

    def sensitive_action(self, request: Any, action: str, **details: Any) -> AuditEvent | None:
        return self.emit(AuditEventType.SENSITIVE_ACTION, request, action=action, **details)

    def data_read(self, request: Any, resource: str, resource_id: Any = None) -> AuditEvent | None:
        return self.emit(AuditEventType.DATA_READ, request, resource=resource, id=resource_id)

    def data_write(self, request: Any, resource: str, resource_id: Any = None) -> AuditEvent | None:
        return self.emit(AuditEventType.DATA_WRITE, request, resource=resource, id=resource_id)

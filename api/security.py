"""
api/security.py -- Request hardening pipeline and security response headers.

Two middlewares live here:

  SecurityHeadersMiddleware -- adds the browser hardening header set to every
      response, including error responses produced further in.

  HardeningMiddleware -- buffers the request once, builds a RequestEnvelope
      and runs it through HARDENING_STEPS in order. Each step is a pure
      function `step(envelope) -> envelope | Rejection`. The first Rejection
      short-circuits into a {"success": false, "message": ...} response;
      otherwise the sanitized query string and body replace the originals
      before the request reaches routing.

Step order (request side):
   3. escape_markup            -- "<" / ">" become "&lt;" / "&gt;" in every string
   4. collapse_repeated_params -- ?a=1&a=2 becomes ?a=1, {"a": [1, 2]} becomes {"a": 1}
   5. strip_operator_keys      -- drop keys starting with "$" or containing "."
   6. validate_input           -- a JSON (or untyped) body must parse
   7. scan_injection_patterns  -- reject ; -- /* */ xp_ (case-insensitive)
   8. enforce_payload_size     -- reject a declared length over the ceiling
   9. log_security_event       -- one "SECURITY:" line per request
  10. enforce_json_content     -- POST/PUT/PATCH under JSON-only groups need JSON
Steps 1-2 are the response-side headers and compression. The slowapi
limiter (step 11) sits outside this middleware, so the application-wide
limit refuses a throttled client before its body is buffered. Group limits
(auth, contact) are checked by the route decorators, after hardening.

Scope decisions:
  Sanitization covers the query string and the JSON body. Path parameters are
  typed by the route signatures (integer ids) and never reach a query
  unconverted.
  The injection scan ignores the "&lt;" / "&gt;" entities produced by step 3,
  otherwise every escaped "<" would trip the ";" pattern.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, Union
from urllib.parse import parse_qsl, urlencode

from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger("farmassist.security")

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH"})

_INJECTION_PATTERN = re.compile(r"(;|--|/\*|\*/|xp_)", re.IGNORECASE)
_ESCAPED_ENTITIES = re.compile(r"&(lt|gt);")

SECURITY_HEADERS: dict[str, str] = {
    "Content-Security-Policy": (
        "default-src 'self'; base-uri 'self'; font-src 'self' https: data:; "
        "form-action 'self'; frame-ancestors 'self'; img-src 'self' data:; "
        "object-src 'none'; script-src 'self'; script-src-attr 'none'; "
        "style-src 'self' https: 'unsafe-inline'; upgrade-insecure-requests"
    ),
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}


# =============================================================================
# Envelope
# =============================================================================


@dataclass(frozen=True)
class RequestEnvelope:
    """What the hardening steps see of a request.

    query keeps every value for a key (in arrival order) until
    collapse_repeated_params runs. body is the parsed JSON document, or None
    when the body is empty, not JSON, or was not buffered.
    """

    method: str
    path: str
    client_host: str
    content_type: str
    content_length: int | None
    query: dict[str, list[str]] = field(default_factory=dict)
    body: Any = None
    raw_body: bytes = b""
    body_error: str | None = None


@dataclass(frozen=True)
class Rejection:
    status_code: int
    message: str


StepResult = Union[RequestEnvelope, Rejection]
Step = Callable[[RequestEnvelope], StepResult]


def _map_strings(value: Any, fn: Callable[[str], str]) -> Any:
    if isinstance(value, str):
        return fn(value)
    if isinstance(value, list):
        return [_map_strings(v, fn) for v in value]
    if isinstance(value, dict):
        return {k: _map_strings(v, fn) for k, v in value.items()}
    return value


def _iter_strings(value: Any):
    if isinstance(value, str):
        yield value
    elif isinstance(value, list):
        for v in value:
            yield from _iter_strings(v)
    elif isinstance(value, dict):
        for k, v in value.items():
            yield k
            yield from _iter_strings(v)


def is_operator_key(key: str) -> bool:
    return key.startswith("$") or "." in key


def strip_operators(value: Any) -> Any:
    if isinstance(value, list):
        return [strip_operators(v) for v in value]
    if isinstance(value, dict):
        return {k: strip_operators(v) for k, v in value.items() if not is_operator_key(k)}
    return value


def escape_text(text: str) -> str:
    return text.replace("<", "&lt;").replace(">", "&gt;")


def contains_injection_pattern(text: str) -> bool:
    return _INJECTION_PATTERN.search(_ESCAPED_ENTITIES.sub("", text)) is not None


# =============================================================================
# Steps
# =============================================================================


def escape_markup(envelope: RequestEnvelope) -> StepResult:
    return replace(
        envelope,
        query={k: [escape_text(v) for v in vs] for k, vs in envelope.query.items()},
        body=_map_strings(envelope.body, escape_text),
    )


def collapse_repeated_params(envelope: RequestEnvelope) -> StepResult:
    body = envelope.body
    if isinstance(body, dict):
        body = {k: v[0] if isinstance(v, list) and v else v for k, v in body.items()}
    return replace(envelope, query={k: vs[:1] for k, vs in envelope.query.items()}, body=body)


def strip_operator_keys(envelope: RequestEnvelope) -> StepResult:
    return replace(
        envelope,
        query={k: vs for k, vs in envelope.query.items() if not is_operator_key(k)},
        body=strip_operators(envelope.body),
    )


def validate_input(envelope: RequestEnvelope) -> StepResult:
    if envelope.body_error is not None:
        return Rejection(400, "Malformed JSON body")
    return envelope


def scan_injection_patterns(envelope: RequestEnvelope) -> StepResult:
    for key, values in envelope.query.items():
        if contains_injection_pattern(key) or any(contains_injection_pattern(v) for v in values):
            return Rejection(400, "Potentially malicious input detected")
    if any(contains_injection_pattern(s) for s in _iter_strings(envelope.body)):
        return Rejection(400, "Potentially malicious input detected")
    return envelope


def enforce_payload_size(max_bytes: int) -> Step:
    def _enforce_payload_size(envelope: RequestEnvelope) -> StepResult:
        if envelope.content_length is not None and envelope.content_length > max_bytes:
            return Rejection(413, "Payload too large")
        return envelope

    return _enforce_payload_size


def log_security_event(envelope: RequestEnvelope) -> StepResult:
    logger.info("SECURITY: %s %s ip=%s", envelope.method, envelope.path, envelope.client_host)
    return envelope


def enforce_json_content(prefixes: Sequence[str]) -> Step:
    prefixes = tuple(prefixes)

    def _enforce_json_content(envelope: RequestEnvelope) -> StepResult:
        if envelope.method not in MUTATING_METHODS or not envelope.path.startswith(prefixes):
            return envelope
        media_type = envelope.content_type.split(";", 1)[0].strip().lower()
        if media_type != "application/json":
            return Rejection(415, "Content-Type must be application/json")
        return envelope

    return _enforce_json_content


def build_steps(
    max_body_bytes: int,
    json_only_prefixes: Sequence[str],
    injection_scan: bool = True,
) -> tuple[Step, ...]:
    """Return the ordered request-side hardening steps."""
    steps: list[Step] = [
        escape_markup,
        collapse_repeated_params,
        strip_operator_keys,
        validate_input,
    ]
    if injection_scan:
        steps.append(scan_injection_patterns)
    steps += [
        enforce_payload_size(max_body_bytes),
        log_security_event,
        enforce_json_content(json_only_prefixes),
    ]
    return tuple(steps)


def run_steps(envelope: RequestEnvelope, steps: Sequence[Step]) -> StepResult:
    for step in steps:
        result = step(envelope)
        if isinstance(result, Rejection):
            return result
        envelope = result
    return envelope


# =============================================================================
# Middleware
# =============================================================================


def _is_json(content_type: str) -> bool:
    """A body without a declared type is parsed as JSON, the same as FastAPI does."""
    media_type = content_type.split(";", 1)[0].strip().lower()
    return not media_type or media_type == "application/json" or media_type.endswith("+json")


class HardeningMiddleware:
    """Pure ASGI middleware that runs the hardening steps on every HTTP request."""

    def __init__(self, app: ASGIApp, steps: Sequence[Step], max_body_bytes: int) -> None:
        self.app = app
        self.steps = tuple(steps)
        self.max_body_bytes = max_body_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        content_type = headers.get("content-type", "")
        declared = headers.get("content-length")
        try:
            content_length = int(declared) if declared is not None else None
        except ValueError:
            content_length = None

        raw_body = b""
        if content_length is None or content_length <= self.max_body_bytes:
            raw_body, overflow = await self._read_body(receive)
            if overflow:
                content_length = len(raw_body)
            elif content_length is None:
                content_length = len(raw_body) if raw_body else None

        body: Any = None
        body_error = None
        if raw_body and _is_json(content_type):
            try:
                body = json.loads(raw_body)
            except ValueError as e:
                body_error = str(e)

        client = scope.get("client")
        envelope = RequestEnvelope(
            method=scope["method"].upper(),
            path=scope["path"],
            client_host=client[0] if client else "unknown",
            content_type=content_type,
            content_length=content_length,
            query=_parse_query(scope.get("query_string", b"")),
            body=body,
            raw_body=raw_body,
            body_error=body_error,
        )

        result = run_steps(envelope, self.steps)
        if isinstance(result, Rejection):
            logger.warning(
                "SECURITY: rejected %s %s ip=%s status=%d (%s)",
                envelope.method,
                envelope.path,
                envelope.client_host,
                result.status_code,
                result.message,
            )
            response = JSONResponse({"success": False, "message": result.message}, status_code=result.status_code)
            await response(scope, receive, send)
            return

        new_body = result.raw_body
        if result.body is not None:
            new_body = json.dumps(result.body, separators=(",", ":")).encode("utf-8")

        scope = dict(scope)
        scope["query_string"] = urlencode([(k, v) for k, vs in result.query.items() for v in vs]).encode("latin-1")
        scope["headers"] = [(k, v) for k, v in scope["headers"] if k.lower() != b"content-length"]
        if new_body or declared is not None:
            scope["headers"].append((b"content-length", str(len(new_body)).encode("latin-1")))

        await self.app(scope, _replay(new_body, receive), send)

    async def _read_body(self, receive: Receive) -> tuple[bytes, bool]:
        """Buffer the body, stopping one byte past the ceiling."""
        chunks: list[bytes] = []
        size = 0
        more_body = True
        while more_body:
            message = await receive()
            if message["type"] != "http.request":
                break
            chunk = message.get("body", b"")
            size += len(chunk)
            chunks.append(chunk)
            more_body = message.get("more_body", False)
            if size > self.max_body_bytes:
                return b"".join(chunks), True
        return b"".join(chunks), False


def _parse_query(query_string: bytes) -> dict[str, list[str]]:
    query: dict[str, list[str]] = {}
    for key, value in parse_qsl(query_string.decode("latin-1"), keep_blank_values=True):
        query.setdefault(key, []).append(value)
    return query


def _replay(body: bytes, receive: Receive) -> Receive:
    sent = False

    async def replay() -> Message:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds SECURITY_HEADERS to every response that does not already set them."""

    def __init__(self, app: ASGIApp, headers: dict[str, str] | None = None) -> None:
        super().__init__(app)
        self.headers = headers or SECURITY_HEADERS

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        for name, value in self.headers.items():
            response.headers.setdefault(name, value)
        return response

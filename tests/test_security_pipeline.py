"""
tests/test_security_pipeline.py -- Request hardening pipeline and security headers.

Covers:
  - Each hardening step in isolation (pure functions over RequestEnvelope);
    a second sanitizing pass is a no-op
  - HardeningMiddleware on a minimal echo app: rewritten query/body,
    413 / 415 / 400 short-circuits with the {"success": false} envelope;
    a body sent without Content-Type is still parsed and sanitized
  - The full FarmAssist app: security headers present, malicious query
    rejected, markup escaped before it is stored,
    repeated body fields collapsed to their first value
"""

from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from api.security import (
    HardeningMiddleware,
    Rejection,
    RequestEnvelope,
    build_steps,
    collapse_repeated_params,
    contains_injection_pattern,
    enforce_json_content,
    enforce_payload_size,
    escape_markup,
    is_operator_key,
    run_steps,
    scan_injection_patterns,
    strip_operator_keys,
    validate_input,
)
from conftest import ADMIN_EMAIL, ADMIN_PASSWORD


def _envelope(**overrides) -> RequestEnvelope:
    values = {
        "method": "POST",
        "path": "/api/things",
        "client_host": "127.0.0.1",
        "content_type": "application/json",
        "content_length": 2,
    }
    values.update(overrides)
    return RequestEnvelope(**values)


# ---------------------------------------------------------------------------
# Pure steps
# ---------------------------------------------------------------------------


class TestSteps:
    def test_escape_markup_in_query_and_nested_body(self) -> None:
        env = escape_markup(
            _envelope(query={"q": ["<b>"]}, body={"a": "<script>", "list": ["x>y"], "n": 3})
        )
        assert env.query == {"q": ["&lt;b&gt;"]}
        assert env.body == {"a": "&lt;script&gt;", "list": ["x&gt;y"], "n": 3}

    def test_collapse_keeps_first_value(self) -> None:
        env = collapse_repeated_params(
            _envelope(
                query={"role": ["farmer", "admin"], "page": ["2"]},
                body={"email": ["a@b.io", "c@d.io"], "tags": [], "n": 1},
            )
        )
        assert env.query == {"role": ["farmer"], "page": ["2"]}
        assert env.body == {"email": "a@b.io", "tags": [], "n": 1}

    def test_collapse_only_touches_top_level_fields(self) -> None:
        env = collapse_repeated_params(_envelope(body={"profile": {"phones": ["1", "2"]}}))
        assert env.body == {"profile": {"phones": ["1", "2"]}}
        assert collapse_repeated_params(_envelope(body=["a", "b"])).body == ["a", "b"]

    def test_strip_operator_keys_recursively(self) -> None:
        body = {"email": "a@b.io", "$where": "1", "profile": {"a.b": 1, "ok": [{"$gt": ""}, {"x": 1}]}}
        env = strip_operator_keys(_envelope(query={"$ne": ["1"], "page": ["1"]}, body=body))
        assert env.query == {"page": ["1"]}
        assert env.body == {"email": "a@b.io", "profile": {"ok": [{}, {"x": 1}]}}

    def test_operator_key_predicate(self) -> None:
        assert is_operator_key("$gt")
        assert is_operator_key("profile.role")
        assert not is_operator_key("firstName")

    def test_validate_input_rejects_unparseable_body(self) -> None:
        result = validate_input(_envelope(body_error="Expecting value"))
        assert result == Rejection(400, "Malformed JSON body")

    @pytest.mark.parametrize("text", ["1; DROP TABLE users", "admin'--", "/* x */", "XP_cmdshell"])
    def test_injection_patterns_detected(self, text: str) -> None:
        assert contains_injection_pattern(text)
        result = scan_injection_patterns(_envelope(body={"name": text}))
        assert isinstance(result, Rejection) and result.status_code == 400

    def test_escaped_markup_is_not_an_injection(self) -> None:
        """The entities produced by escape_markup must not trip the ';' pattern."""
        env = escape_markup(_envelope(body={"bio": "<b>Tea grower</b>"}))
        assert scan_injection_patterns(env) is env

    def test_injection_in_query_key_detected(self) -> None:
        result = scan_injection_patterns(_envelope(query={"a;b": ["1"]}))
        assert isinstance(result, Rejection)

    def test_payload_size(self) -> None:
        step = enforce_payload_size(10)
        assert step(_envelope(content_length=10)).content_length == 10
        assert step(_envelope(content_length=11)) == Rejection(413, "Payload too large")
        assert step(_envelope(content_length=None)).content_length is None

    def test_json_content_only_for_mutating_requests_under_prefix(self) -> None:
        step = enforce_json_content(["/api/admin"])
        form = "application/x-www-form-urlencoded"
        assert step(_envelope(path="/api/admin/users/2/role", method="PUT", content_type=form)) == Rejection(
            415, "Content-Type must be application/json"
        )
        assert isinstance(step(_envelope(path="/api/admin/users", method="GET", content_type="")), RequestEnvelope)
        assert isinstance(step(_envelope(path="/api/contact", content_type=form)), RequestEnvelope)
        ok = step(_envelope(path="/api/admin/x", method="PUT", content_type="application/json; charset=utf-8"))
        assert isinstance(ok, RequestEnvelope)

    def test_run_steps_stops_at_first_rejection(self) -> None:
        calls = []

        def record(env):
            calls.append(env)
            return env

        result = run_steps(_envelope(body_error="bad"), (validate_input, record))
        assert isinstance(result, Rejection)
        assert calls == []

    def test_scan_can_be_disabled(self) -> None:
        steps = build_steps(max_body_bytes=100, json_only_prefixes=[], injection_scan=False)
        result = run_steps(_envelope(body={"name": "a; b"}), steps)
        assert isinstance(result, RequestEnvelope)

    def test_sanitizing_twice_changes_nothing(self) -> None:
        env = _envelope(
            query={"q": ["<b>", "x"], "$ne": ["1"]},
            body={"name": "<i>Asha</i>", "tags": ["a", "b"], "profile": {"$gt": 1, "bio": "x>y"}},
        )
        escaped = escape_markup(env)
        assert escape_markup(escaped) == escaped
        stripped = strip_operator_keys(env)
        assert strip_operator_keys(stripped) == stripped

        steps = build_steps(max_body_bytes=1000, json_only_prefixes=[])
        once = run_steps(env, steps)
        assert isinstance(once, RequestEnvelope)
        assert run_steps(once, steps) == once


# ---------------------------------------------------------------------------
# Middleware on a minimal app
# ---------------------------------------------------------------------------


async def _echo(request: Request) -> JSONResponse:
    raw = await request.body()
    return JSONResponse(
        {
            "query": list(request.query_params.multi_items()),
            "body": json.loads(raw) if raw else None,
            "length": request.headers.get("content-length"),
        }
    )


@pytest.fixture(scope="module")
def echo_client():
    app = Starlette(
        routes=[
            Route("/api/echo", _echo, methods=["GET", "POST"]),
            Route("/api/admin/echo", _echo, methods=["POST"]),
        ],
        middleware=[
            Middleware(
                HardeningMiddleware,
                steps=build_steps(max_body_bytes=64, json_only_prefixes=["/api/admin"]),
                max_body_bytes=64,
            )
        ],
    )
    with TestClient(app) as client:
        yield client


class TestHardeningMiddleware:
    def test_query_collapsed_stripped_and_escaped(self, echo_client) -> None:
        resp = echo_client.get("/api/echo", params=[("a", "<x>"), ("a", "2"), ("$ne", "1")])
        assert resp.status_code == 200
        assert resp.json()["query"] == [["a", "&lt;x&gt;"]]

    def test_body_rewritten_with_matching_length(self, echo_client) -> None:
        resp = echo_client.post("/api/echo", json={"name": "<b>", "$set": {"role": "admin"}})
        data = resp.json()
        assert data["body"] == {"name": "&lt;b&gt;"}
        assert int(data["length"]) == len(json.dumps(data["body"], separators=(",", ":")))

    def test_oversized_body_rejected(self, echo_client) -> None:
        resp = echo_client.post("/api/echo", json={"notes": "x" * 200})
        assert resp.status_code == 413
        assert resp.json() == {"success": False, "message": "Payload too large"}

    def test_malformed_json_rejected(self, echo_client) -> None:
        resp = echo_client.post(
            "/api/echo", content=b'{"name": ', headers={"Content-Type": "application/json"}
        )
        assert resp.status_code == 400
        assert resp.json()["message"] == "Malformed JSON body"

    def test_non_json_to_json_only_group_rejected(self, echo_client) -> None:
        resp = echo_client.post("/api/admin/echo", data={"role": "admin"})
        assert resp.status_code == 415
        assert resp.json()["success"] is False

    def test_injection_in_body_rejected(self, echo_client) -> None:
        resp = echo_client.post("/api/echo", json={"search": "x' OR 1=1 --"})
        assert resp.status_code == 400
        assert resp.json()["message"] == "Potentially malicious input detected"

    def test_body_without_content_type_is_sanitized(self, echo_client) -> None:
        raw = json.dumps({"name": "<b>", "$where": "1", "tags": ["a", "b"]}).encode("utf-8")
        resp = echo_client.post("/api/echo", content=raw)
        assert resp.status_code == 200
        assert resp.json()["body"] == {"name": "&lt;b&gt;", "tags": "a"}

    def test_body_without_content_type_is_scanned(self, echo_client) -> None:
        raw = json.dumps({"location": "a; DROP --"}).encode("utf-8")
        resp = echo_client.post("/api/echo", content=raw)
        assert resp.status_code == 400
        assert resp.json()["message"] == "Potentially malicious input detected"

    def test_non_json_body_passes_through_unchanged(self, echo_client) -> None:
        resp = echo_client.post("/api/echo", content=b"", headers={"Content-Type": "text/plain"})
        assert resp.status_code == 200
        assert resp.json()["body"] is None


# ---------------------------------------------------------------------------
# Full application
# ---------------------------------------------------------------------------


class TestAppHardening:
    def test_security_headers_on_success_and_error(self, api_client) -> None:
        for path in ("/health", "/api/does-not-exist"):
            resp = api_client.client.get(path)
            assert resp.headers["X-Content-Type-Options"] == "nosniff"
            assert resp.headers["X-Frame-Options"] == "SAMEORIGIN"
            assert "default-src 'self'" in resp.headers["Content-Security-Policy"]
            assert resp.headers["Strict-Transport-Security"].startswith("max-age=")

    def test_malicious_query_rejected_before_auth(self, api_client) -> None:
        resp = api_client.client.get("/api/admin/users", params={"search": "a'; DROP TABLE users"})
        assert resp.status_code == 400
        assert resp.json()["message"] == "Potentially malicious input detected"

    def test_markup_escaped_before_storage(self, api_client) -> None:
        uid = api_client.create_user("markup@farmassist.io")
        resp = api_client.client.put(
            "/api/users/me",
            json={"firstName": "<script>alert(1)</script>"},
            headers=api_client.auth(api_client.token_for(uid)),
        )
        assert resp.status_code == 200, resp.text
        assert api_client.store.get_by_id(uid).first_name == "&lt;script&gt;alert(1)&lt;/script&gt;"

    def test_operator_keys_cannot_reach_profile(self, api_client) -> None:
        uid = api_client.create_user("operator@farmassist.io")
        resp = api_client.client.put(
            "/api/users/me",
            json={"location": "Galle", "$set": {"role": "admin"}, "role": "admin"},
            headers=api_client.auth(api_client.token_for(uid)),
        )
        assert resp.status_code == 200
        assert resp.json()["user"]["role"] == "farmer"
        assert resp.json()["user"]["location"] == "Galle"

    def test_repeated_body_field_keeps_first_value(self, api_client) -> None:
        resp = api_client.client.post(
            "/api/auth/login",
            json={"email": [ADMIN_EMAIL, "other@farmassist.io"], "password": ADMIN_PASSWORD},
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["user"]["email"] == ADMIN_EMAIL

    def test_admin_mutation_requires_json(self, api_client) -> None:
        resp = api_client.client.put(
            f"/api/admin/users/{api_client.admin_id}/role",
            data={"role": "farmer"},
            headers=api_client.admin_headers,
        )
        assert resp.status_code == 415

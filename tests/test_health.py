"""
tests/test_health.py -- Integration tests for the health endpoints and the error envelope.

Covers:
  - GET /health and GET /api/health return 200 with status, message, timestamp
  - No authentication required
  - Unknown routes return 404 {"success": false, "message": "Route not found"}
  - Wrong method on a known route keeps the envelope
"""

from __future__ import annotations

from datetime import datetime

import pytest


@pytest.mark.parametrize("path", ["/health", "/api/health"])
def test_health_returns_200(api_client, path):
    """Health endpoints return 200 with status, message and an ISO timestamp."""
    resp = api_client.client.get(path)
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "OK"
    assert data["message"] == "FarmAssist API is running"
    datetime.fromisoformat(data["timestamp"])


def test_health_ignores_authorization_header(api_client):
    """A bad token on a public route is not an error."""
    resp = api_client.client.get("/health", headers=api_client.auth("garbage"))
    assert resp.status_code == 200


def test_unknown_route_envelope(api_client):
    resp = api_client.client.get("/api/nothing-here")
    assert resp.status_code == 404
    assert resp.json() == {"success": False, "message": "Route not found"}


def test_wrong_method_envelope(api_client):
    resp = api_client.client.delete("/api/health")
    assert resp.status_code == 405
    assert resp.json()["success"] is False


def test_error_detail_hidden_only_in_production(api_client):
    """Outside production, internal detail is surfaced in "error" for debugging."""
    resp = api_client.client.get("/api/users/me", headers=api_client.auth("abc.def.ghi"))
    body = resp.json()
    assert body["message"] == "Not authorized, token failed"
    assert "error" in body

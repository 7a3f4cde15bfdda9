"""
tests/conftest.py -- Shared test fixtures for FarmAssist integration tests.

This module provides:
  - _make_test_store(): isolated in-memory credential store per test module
  - _patch_lifespan(): wires test services into app.state, bypassing real startup
  - RecordingNotifier: captures outbound email/SMS instead of sending them
  - signing_key / make_external_token(): an RSA key and JWKS standing in for
    the external identity provider
  - api_client: TestClient plus store, notifier and an admin session token
  - _reset_rate_limits (autouse): clears slowapi counters between tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.

ENVIRONMENT must be set before any core/auth/api import so get_settings()
auto-generates SECRET_KEY instead of refusing to start.
"""

from __future__ import annotations

import os
import time
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

# CRITICAL: Set ENVIRONMENT before any project import.
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
from authlib.jose import JsonWebKey, JsonWebToken
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.models import Role, new_user
from auth.oidc import OIDCVerifier, SigningKeyCache
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password
from core.audit import AuditTrail

ISSUER = "https://login.farmassist.io"
AUDIENCE = "farmassist-api"
KID = "test-key-1"

ADMIN_EMAIL = "root@farmassist.io"
ADMIN_PASSWORD = "adminpass123"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


@dataclass
class RecordingNotifier:
    """Stands in for core.notifier.Notifier; records instead of sending."""

    email_enabled: bool = True
    sms_enabled: bool = True
    emails: list[tuple[str, str, str]] = field(default_factory=list)
    sms: list[tuple[str, str]] = field(default_factory=list)

    def send_email(self, to: str, subject: str, text: str) -> bool:
        if not self.email_enabled:
            return False
        self.emails.append((to, subject, text))
        return True

    def send_sms(self, to: str, body: str) -> bool:
        if not self.sms_enabled:
            return False
        self.sms.append((to, body))
        return True

    def last_email_to(self, address: str) -> tuple[str, str, str] | None:
        for message in reversed(self.emails):
            if message[0] == address:
                return message
        return None


@dataclass
class ApiContext:
    client: TestClient
    store: UserStore
    notifier: RecordingNotifier
    admin_id: int
    admin_token: str
    jwks: dict[str, Any]

    def auth(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    @property
    def admin_headers(self) -> dict[str, str]:
        return self.auth(self.admin_token)

    def create_user(self, email: str, password: str = "farmerpass1", role: Role = Role.FARMER, **fields) -> int:
        return self.store.create_user(new_user(email, hash_password(password), role=role, **fields))

    def token_for(self, user_id: int, role: Role = Role.FARMER) -> str:
        return create_access_token(user_id, role, expire_seconds=3600)


# ---------------------------------------------------------------------------
# External identity provider stand-in
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def signing_key():
    """RSA private key whose public half is served as the provider's JWKS."""
    return JsonWebKey.generate_key("RSA", 2048, is_private=True, options={"kid": KID})


def jwks_for(*pairs) -> dict[str, Any]:
    """Build a JWKS document from (key, kid) pairs, public halves only."""
    public = []
    for key, kid in pairs:
        jwk = key.as_dict(is_private=False)
        jwk.update({"kid": kid, "use": "sig", "alg": "RS256"})
        public.append(jwk)
    return {"keys": public}


def make_external_token(key, kid: str = KID, alg: str = "RS256", **claims: Any) -> str:
    """Sign an external token; claim overrides replace the defaults."""
    now = int(time.time())
    payload = {
        "iss": ISSUER,
        "aud": AUDIENCE,
        "sub": "oidc-user-42",
        "email": "grower@farmassist.io",
        "preferred_username": "grower42",
        "name": "Grace Grower",
        "phone_number": "+94771234567",
        "locale": "si-LK",
        "iat": now,
        "exp": now + 600,
    }
    payload.update(claims)
    token = JsonWebToken([alg]).encode({"alg": alg, "kid": kid}, payload, key)
    return token.decode("ascii") if isinstance(token, bytes) else token


def make_verifier(jwks: dict[str, Any] | None, **kwargs: Any) -> OIDCVerifier:
    kwargs.setdefault("cache", SigningKeyCache(max_entries=5, ttl_seconds=600))
    return OIDCVerifier(ISSUER, AUDIENCE, fetch=lambda issuer, timeout: jwks, **kwargs)


# ---------------------------------------------------------------------------
# Store and lifespan helpers
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> UserStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    return UserStore(db_url=f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(user_store: UserStore, notifier: RecordingNotifier, verifier: OIDCVerifier):
    """Return an async context manager that replaces the real lifespan."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.audit = AuditTrail()
        app.state.notifier = notifier
        app.state.oidc_verifier = verifier
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> Generator[None, None, None]:
    """Every test starts with empty rate-limit counters."""
    limiter.reset()
    yield


@pytest.fixture(scope="module")
def api_client(request, signing_key) -> Generator[ApiContext, None, None]:
    """Yield an ApiContext for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real middleware and route handlers but use an isolated store,
    a recording notifier and an in-memory JWKS.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    store = _make_test_store(suffix)
    notifier = RecordingNotifier()
    jwks = jwks_for((signing_key, KID))

    admin = new_user(
        ADMIN_EMAIL,
        hash_password(ADMIN_PASSWORD),
        first_name="Root",
        last_name="Admin",
        role=Role.ADMIN,
    )
    admin_id = store.create_user(admin)
    admin_token = create_access_token(admin_id, Role.ADMIN, expire_seconds=3600)

    app.router.lifespan_context = _patch_lifespan(store, notifier, make_verifier(jwks))

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiContext(
            client=client,
            store=store,
            notifier=notifier,
            admin_id=admin_id,
            admin_token=admin_token,
            jwks=jwks,
        )

    store.close()

"""
auth/oidc.py -- Verification of bearer tokens issued by the external identity provider.

Flow for every token:
  1. Read the unverified header. Reject anything outside the asymmetric
     allow-list (RS*, PS*, ES*). HS* and "none" never reach signature
     verification -- an HMAC token "signed" with a public key must not pass.
  2. Resolve the signing key by kid through SigningKeyCache. On a miss the
     issuer's JWKS document is fetched with a bounded timeout.
  3. Verify signature, exp, iss and aud with authlib.

Any failure -- including an unreachable issuer -- raises Unauthorized. There
is no fail-open path.

Development bypass [O1]:
  When ENVIRONMENT=development, OIDC_DEV_BYPASS=true and the issuer is unset or
  an example.com placeholder, verify() returns a fixed mock identity without
  looking at the token. Settings forces the flag off in production, and every
  bypassed request logs a WARNING.

Layer rule: no imports from api/. core/ (errors, fetcher) is allowed.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any
from urllib.parse import quote

from authlib.jose import JsonWebKey, JsonWebToken
from authlib.jose.errors import JoseError
from jose import JWTError
from jose import jwt as jose_jwt

from auth.models import ExternalIdentity, external_identity_from_claims
from core.errors import Unauthorized
from core.fetcher import fetch_jwks

logger = logging.getLogger("farmassist.oidc")

ALLOWED_ALGORITHMS = ("RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512")

DEV_IDENTITY_CLAIMS: dict[str, Any] = {
    "sub": "dev-user-123",
    "email": "dev@example.com",
    "name": "Development User",
    "preferred_username": "devuser",
}

JwksFetcher = Callable[[str, float], "dict[str, Any] | None"]


# ---------------------------------------------------------------------------
# Signing key cache
# ---------------------------------------------------------------------------


class SigningKeyCache:
    """Bounded, time-limited cache of imported signing keys keyed by kid.

    Oldest entries are evicted first once max_entries is reached. Shared by
    all worker threads, so every access holds the lock.
    """

    def __init__(self, max_entries: int = 5, ttl_seconds: float = 600) -> None:
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, kid: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(kid)
            if entry is None:
                return None
            stored_at, key = entry
            if time.monotonic() - stored_at > self._ttl:
                del self._entries[kid]
                return None
            return key

    def put(self, kid: str, key: Any) -> None:
        with self._lock:
            self._entries[kid] = (time.monotonic(), key)
            self._entries.move_to_end(kid)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------


def is_placeholder_issuer(issuer: str) -> bool:
    return not issuer or "example.com" in issuer


class OIDCVerifier:
    """Verifies external bearer tokens against one issuer and audience."""

    def __init__(
        self,
        issuer: str,
        audience: str,
        *,
        environment: str = "production",
        dev_bypass: bool = False,
        cache: SigningKeyCache | None = None,
        fetch: JwksFetcher = fetch_jwks,
        timeout: float = 5.0,
        leeway: int = 0,
    ) -> None:
        self.issuer = issuer
        self.audience = audience
        self._cache = cache or SigningKeyCache()
        self._fetch = fetch
        self._timeout = timeout
        self._leeway = leeway
        self._jwt = JsonWebToken(list(ALLOWED_ALGORITHMS))
        self.bypass_active = environment == "development" and dev_bypass and is_placeholder_issuer(issuer)
        if self.bypass_active:
            logger.warning(
                "OIDC development bypass is ACTIVE -- bearer tokens are not verified (issuer=%r)",
                issuer,
            )

    def verify(self, token: str) -> ExternalIdentity:
        if self.bypass_active:
            logger.warning("OIDC development bypass used; returning mock identity")
            return external_identity_from_claims(DEV_IDENTITY_CLAIMS)

        if not self.issuer or not self.audience:
            raise Unauthorized("Invalid token", detail="identity provider not configured")

        try:
            header = jose_jwt.get_unverified_header(token)
        except JWTError as e:
            raise Unauthorized("Invalid token", detail="malformed token header") from e

        alg = header.get("alg")
        if alg not in ALLOWED_ALGORITHMS:
            raise Unauthorized("Invalid token", detail=f"algorithm {alg!r} not accepted")

        key = self._signing_key(header.get("kid"))

        claims_options = {
            "iss": {"essential": True, "value": self.issuer},
            "aud": {"essential": True, "value": self.audience},
            "exp": {"essential": True},
            "sub": {"essential": True},
        }
        try:
            claims = self._jwt.decode(token, key, claims_options=claims_options)
            claims.validate(leeway=self._leeway)
        except JoseError as e:
            raise Unauthorized("Invalid token", detail=e.error) from e
        except ValueError as e:
            raise Unauthorized("Invalid token", detail=str(e)) from e

        return external_identity_from_claims(dict(claims))

    def _signing_key(self, kid: str | None) -> Any:
        cache_key = kid or "__default__"
        key = self._cache.get(cache_key)
        if key is not None:
            return key

        document = self._fetch(self.issuer, self._timeout)
        if document is None:
            raise Unauthorized("Invalid token", detail="signing keys unavailable")

        candidates = [k for k in document["keys"] if k.get("use", "sig") == "sig"]
        if kid is not None:
            candidates = [k for k in candidates if k.get("kid") == kid]
        elif len(candidates) != 1:
            candidates = []
        if not candidates:
            raise Unauthorized("Invalid token", detail="no matching signing key")

        try:
            key = JsonWebKey.import_key(candidates[0])
        except (JoseError, ValueError) as e:
            logger.warning("Could not import signing key kid=%s: %s", kid, e)
            raise Unauthorized("Invalid token", detail="unusable signing key") from e
        self._cache.put(cache_key, key)
        return key


# ---------------------------------------------------------------------------
# Logout
# ---------------------------------------------------------------------------


def build_logout_url(issuer: str, redirect: str) -> str | None:
    """Return the provider's logout URL with the post-logout redirect, or None."""
    if not issuer:
        return None
    return f"{issuer.rstrip('/')}/oauth2/logout?post_logout_redirect_uri={quote(redirect, safe='')}"

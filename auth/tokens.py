"""
auth/tokens.py -- Session tokens, password hashing, and single-use tokens.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       the subject id, role, issue time and expiry. verify_access_token()
       raises Unauthorized on any failure; the guard turns that into a 401.
       There is no server-side revocation list -- a role change or deletion
       is caught because the guard reloads the user on every request.

  Passwords: bcrypt, used directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_user() so response time does not reveal
       whether an email is registered [C1].

  Verification tokens: secrets.token_hex(32), stored as-is and cleared when
       consumed.

  Reset tokens: secrets.token_hex(20) is mailed to the user; only its SHA-256
       is stored, so a database read does not yield a usable reset link.

Layer rule: no imports from api/. core/ (config, errors) is allowed.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import time
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.models import Role, TokenClaims
from core.config import get_settings
from core.errors import Unauthorized

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("farmassist.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

# bcrypt refuses (5.x) or silently truncates (4.x) anything longer.
MAX_PASSWORD_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValueError for a password over MAX_PASSWORD_BYTES once UTF-8
    encoded. The request models reject those with a 400 before they get here.
    """
    secret = plain.encode("utf-8")
    if len(secret) > MAX_PASSWORD_BYTES:
        raise ValueError(f"password is longer than {MAX_PASSWORD_BYTES} bytes")
    return bcrypt.hashpw(secret, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A password too long to have been hashed never matches.
    """
    secret = plain.encode("utf-8")
    if len(secret) > MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(secret, hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than later ones.
_DUMMY_HASH: str = hash_password("farmassist_timing_dummy")


# ---------------------------------------------------------------------------
# JWT encode / verify
# ---------------------------------------------------------------------------


def create_access_token(user_id: int, role: Role | str, expire_seconds: int = 0) -> str:
    """Encode a signed session token.

    Args:
        user_id:        Numeric user ID stored in the DB.
        role:           The user's role at issue time.
        expire_seconds: Token lifetime. If 0 (default), uses
                        Settings.token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    issued_at = int(time.time())
    payload = {
        "sub": str(user_id),
        "role": Role(role).value,
        "iat": issued_at,
        "exp": issued_at + duration,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def verify_access_token(token: str) -> TokenClaims:
    """Verify signature and expiry, then parse the claims.

    Raises Unauthorized for a bad signature, an expired token, a payload
    missing subject or role, or a role outside the closed set.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError as e:
        raise Unauthorized("Not authorized, token failed", detail=str(e)) from e

    try:
        return TokenClaims(
            user_id=int(payload["sub"]),
            role=Role(payload["role"]),
            issued_at=int(payload.get("iat", 0)),
            expires_at=int(payload["exp"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise Unauthorized("Not authorized, token failed", detail="malformed token payload") from e


# ---------------------------------------------------------------------------
# User authentication (constant-time) [C1]
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


# ---------------------------------------------------------------------------
# Single-use tokens
# ---------------------------------------------------------------------------


def generate_verification_token() -> str:
    return secrets.token_hex(32)


def hash_reset_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_reset_token() -> tuple[str, str]:
    """Return (raw_token, token_hash). Mail the raw token, store the hash."""
    raw = secrets.token_hex(20)
    return raw, hash_reset_token(raw)

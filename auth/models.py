"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container). Stores and routes do the work;
derived values are plain functions below rather than properties or
persistence hooks, so nothing changes a record behind the caller's back.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Role(str, Enum):
    """Closed set of roles, lowest privilege first."""

    FARMER = "farmer"
    EXPERT = "expert"
    ADMIN = "admin"


@dataclass
class User:
    """A local identity.

    hashed_password is a bcrypt hash; the plaintext is never stored.
    reset_password_token holds the SHA-256 of the raw reset token, and
    reset_password_expire is epoch seconds.
    """

    email: str
    hashed_password: str
    role: Role = Role.FARMER
    id: int | None = None
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    location: str = ""
    is_verified: bool = False
    verification_token: str | None = None
    reset_password_token: str | None = None
    reset_password_expire: float | None = None
    last_login: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class TokenClaims:
    """Verified payload of an internal session token."""

    user_id: int
    role: Role
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class ExternalIdentity:
    """Claims from a verified external (OIDC) token."""

    subject: str
    email: str | None = None
    preferred_username: str | None = None
    name: str | None = None
    phone: str | None = None
    country: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def normalize_email(email: str) -> str:
    return email.strip().lower()


def new_user(
    email: str,
    hashed_password: str,
    first_name: str = "",
    last_name: str = "",
    phone: str = "",
    location: str = "",
    role: Role = Role.FARMER,
    verification_token: str | None = None,
) -> User:
    """Build a User ready for insertion: normalized email, stamped timestamps."""
    now = datetime.now(timezone.utc).isoformat()
    return User(
        email=normalize_email(email),
        hashed_password=hashed_password,
        role=Role(role),
        first_name=first_name.strip(),
        last_name=last_name.strip(),
        phone=phone.strip(),
        location=location.strip(),
        verification_token=verification_token,
        created_at=now,
        updated_at=now,
    )


# ---------------------------------------------------------------------------
# Derived values
# ---------------------------------------------------------------------------


def external_identity_from_claims(claims: dict[str, Any]) -> ExternalIdentity:
    return ExternalIdentity(
        subject=str(claims.get("sub", "")),
        email=claims.get("email"),
        preferred_username=claims.get("preferred_username"),
        name=claims.get("name"),
        phone=claims.get("phone_number"),
        country=claims.get("country") or claims.get("locale"),
        raw=dict(claims),
    )


def display_username(identity: ExternalIdentity) -> str:
    return identity.preferred_username or identity.email or identity.subject

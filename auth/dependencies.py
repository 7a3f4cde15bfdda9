"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

protect()        -- requires a valid internal session token (Authorization: Bearer).
                    Reloads the user on every request so deletions and role
                    changes take effect before the token expires.
authorize(*roles) -- builds a dependency that requires protect() to have
                    succeeded AND the user's role to be in the allow-list.
                    It depends on protect() itself, so it cannot run first.
oidc_protect()   -- requires a valid external (OIDC) bearer token.

Failures raise core.errors.Unauthorized / Forbidden; api/main.py maps them
to {"success": false, "message": ...}. Every failure is written to the audit
trail before the exception leaves the guard.

Layer rule: auth/dependencies.py may import from fastapi (for Depends/Request)
because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth.models import ExternalIdentity, Role, User
from auth.oidc import OIDCVerifier
from auth.store import UserStore
from auth.tokens import verify_access_token
from core.errors import Forbidden, Unauthorized


def bearer_token(request: Request) -> str | None:
    """Return the token from an 'Authorization: Bearer <token>' header, if any."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def _record_failure(request: Request, reason: str) -> None:
    """Audit a guard failure and mark the request so the route-group audit skips it."""
    request.state.auth_failure_recorded = True
    request.app.state.audit.auth_failure(request, reason)


def protect(request: Request) -> User:
    """Require an authenticated local user.

    Use as a FastAPI dependency:
        @router.get("/me")
        def me(user: User = Depends(protect)): ...
    """
    token = bearer_token(request)
    if token is None:
        _record_failure(request, "missing token")
        raise Unauthorized("Not authorized, no token")

    try:
        claims = verify_access_token(token)
    except Unauthorized:
        _record_failure(request, "invalid token")
        raise

    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(claims.user_id)
    if user is None:
        _record_failure(request, "unknown subject")
        raise Unauthorized("Not authorized, user no longer exists")

    request.state.user = user
    return user


def authorize(*roles: Role) -> Callable[..., User]:
    """Build a dependency that admits only the given roles.

    Raises TypeError at route-definition time for anything that is not a
    Role, so a typo cannot silently lock everyone out (or in).

    Use as a FastAPI dependency:
        router = APIRouter(dependencies=[Depends(authorize(Role.ADMIN))])
    """
    if not roles:
        raise TypeError("authorize() needs at least one role")
    for role in roles:
        if not isinstance(role, Role):
            raise TypeError(f"authorize() expects Role members, got {role!r}")
    allowed = frozenset(roles)

    def _require_role(request: Request, user: User = Depends(protect)) -> User:
        if user.role not in allowed:
            request.state.auth_failure_recorded = True
            request.app.state.audit.access_denied(request, f"role={user.role.value}")
            raise Forbidden(f"User role {user.role.value} is not authorized to access this route")
        return user

    return _require_role


def oidc_protect(request: Request) -> ExternalIdentity:
    """Require a valid external identity token.

    Use as a FastAPI dependency:
        @router.get("/profile")
        def profile(identity: ExternalIdentity = Depends(oidc_protect)): ...
    """
    token = bearer_token(request)
    if token is None:
        _record_failure(request, "missing bearer token")
        raise Unauthorized("Missing Bearer token")

    verifier: OIDCVerifier = request.app.state.oidc_verifier
    try:
        identity = verifier.verify(token)
    except Unauthorized:
        _record_failure(request, "invalid external token")
        raise

    request.state.oidc = identity
    return identity

"""
api/routes/admin.py -- Administrator user management.

Routes (all require an admin session token):
  GET    /api/admin/users               -- paginated, filterable user list
  PUT    /api/admin/users/{id}/role     -- change a user's role
  DELETE /api/admin/users/{id}          -- delete a user
  GET    /api/admin/stats               -- counts by role and verification state

Guard composition: the router depends on authorize(Role.ADMIN), which itself
depends on protect(), so authentication always runs before the role check.
Mutating requests under /api/admin must be application/json (enforced by the
hardening pipeline before routing).

Security:
  [M4] The last remaining admin can be neither deleted nor demoted. Both
       checks are evaluated inside the UPDATE/DELETE statement [S2].
  Every role change and deletion is written to the audit trail with the
  target and, for role changes, the previous and new role.
"""

from __future__ import annotations

import math
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import Pagination, RoleUpdate, user_payload
from auth.dependencies import authorize
from auth.models import Role
from auth.store import UserStore
from core.audit import AuditTrail
from core.errors import Conflict, NotFound, ValidationFailed

router = APIRouter(dependencies=[Depends(authorize(Role.ADMIN))])

_INVALID_ROLE = "Invalid role. Must be farmer, expert, or admin"
_STATUS_FILTERS = {"verified": True, "unverified": False, "all": None}


def _parse_role(value: str) -> Role:
    try:
        return Role(value.strip().lower())
    except ValueError as e:
        raise ValidationFailed(_INVALID_ROLE) from e


@router.get("/admin/users")
def list_users(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    role: Optional[str] = Query(default=None),
    status: str = Query(default="all"),
    search: str = Query(default="", max_length=100),
) -> dict:
    """Return one page of users, newest first."""
    if status not in _STATUS_FILTERS:
        raise ValidationFailed("Invalid status. Must be verified, unverified, or all")
    role_filter = _parse_role(role) if role else None

    user_store: UserStore = request.app.state.user_store
    users, total = user_store.list_users(
        page=page,
        limit=limit,
        role=role_filter,
        verified=_STATUS_FILTERS[status],
        search=search.strip(),
    )
    request.app.state.audit.data_read(request, "users")
    return {
        "success": True,
        "data": [user_payload(u) for u in users],
        "pagination": Pagination(current=page, pages=math.ceil(total / limit), total=total).model_dump(),
    }


@router.put("/admin/users/{user_id}/role")
def update_role(request: Request, user_id: int, body: RoleUpdate) -> dict:
    """Change a user's role. Refuses to demote the last admin [M4]."""
    new_role = _parse_role(body.role)
    user_store: UserStore = request.app.state.user_store
    audit: AuditTrail = request.app.state.audit

    target = user_store.get_by_id(user_id)
    if target is None:
        raise NotFound("User not found")
    if not user_store.update_role(user_id, new_role):
        if user_store.get_by_id(user_id) is None:
            raise NotFound("User not found")
        raise Conflict("Cannot demote the last admin user")

    audit.sensitive_action(
        request,
        "admin.user.role.update",
        targetUserId=user_id,
        previousRole=target.role.value,
        newRole=new_role.value,
    )
    return {"success": True, "message": "User role updated", "data": user_payload(user_store.get_by_id(user_id))}


@router.delete("/admin/users/{user_id}")
def delete_user(request: Request, user_id: int) -> dict:
    """Delete a user. Refuses to delete the last admin [M4]."""
    user_store: UserStore = request.app.state.user_store
    audit: AuditTrail = request.app.state.audit

    target = user_store.get_by_id(user_id)
    if target is None:
        raise NotFound("User not found")
    if not user_store.delete_user(user_id):
        if user_store.get_by_id(user_id) is None:
            raise NotFound("User not found")
        raise Conflict("Cannot delete the last admin user")

    audit.sensitive_action(request, "admin.user.delete", targetUserId=user_id, targetRole=target.role.value)
    return {"success": True, "message": "User deleted successfully"}


@router.get("/admin/stats")
def stats(request: Request) -> dict:
    """Return user counts by role and by verification state."""
    user_store: UserStore = request.app.state.user_store
    by_role = user_store.count_by_role()
    total = sum(by_role.values())
    verified = user_store.count_verified()
    return {
        "success": True,
        "data": {
            "totalUsers": total,
            "byRole": by_role,
            "verified": verified,
            "unverified": total - verified,
        },
    }

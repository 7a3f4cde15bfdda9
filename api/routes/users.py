"""
api/routes/users.py -- The authenticated user's own profile.

Routes:
  GET /api/users/me  -- current user profile (requires auth)
  PUT /api/users/me  -- update own profile fields (requires auth)

The same handlers back GET/PUT /api/auth/me (see api/routes/auth.py).

Security:
  Profile updates accept only first/last name, phone and location. Email,
  role, verification state and password are not reachable through this
  route -- ProfileUpdate drops them and UserStore.update_profile() ignores
  anything outside its whitelist.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import ProfileUpdate, user_payload
from auth.dependencies import protect
from auth.models import User
from auth.store import UserStore
from core.audit import AuditTrail
from core.errors import NotFound

router = APIRouter()


def read_profile(request: Request, user: User) -> dict:
    request.app.state.audit.data_read(request, "user", user.id)
    return {"success": True, "user": user_payload(user)}


def write_profile(request: Request, body: ProfileUpdate, user: User) -> dict:
    user_store: UserStore = request.app.state.user_store
    audit: AuditTrail = request.app.state.audit
    if not user_store.update_profile(user.id, **body.model_dump(exclude_none=True)):
        raise NotFound("User not found")
    audit.data_write(request, "user", user.id)
    return {"success": True, "user": user_payload(user_store.get_by_id(user.id))}


@router.get("/users/me")
def get_me(request: Request, user: User = Depends(protect)) -> dict:
    """Return the authenticated user's profile."""
    return read_profile(request, user)


@router.put("/users/me")
def update_me(request: Request, body: ProfileUpdate, user: User = Depends(protect)) -> dict:
    """Update the authenticated user's profile."""
    return write_profile(request, body, user)

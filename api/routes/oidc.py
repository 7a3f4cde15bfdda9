"""
api/routes/oidc.py -- Endpoints for users signed in through the external identity provider.

Routes:
  GET /api/oidc/profile     -- profile derived from the verified external token
  GET /api/oidc/logout-url  -- provider end-session URL (public)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from auth.dependencies import oidc_protect
from auth.models import ExternalIdentity, display_username
from auth.oidc import build_logout_url
from core.config import get_settings

_settings = get_settings()

router = APIRouter()


@router.get("/oidc/profile")
def profile(request: Request, identity: ExternalIdentity = Depends(oidc_protect)) -> dict:
    """Return the caller's identity as asserted by the provider."""
    request.app.state.audit.data_read(request, "oidc.profile", identity.subject)
    return {
        "success": True,
        "data": {
            "username": display_username(identity),
            "name": identity.name,
            "email": identity.email,
            "phone": identity.phone,
            "country": identity.country,
            "raw": identity.raw,
        },
    }


@router.get("/oidc/logout-url")
def logout_url(request: Request) -> dict:
    """Return where the browser should go to end the provider session.

    Also clears any server-side session state for this client.
    """
    request.session.clear()
    redirect = _settings.oidc_logout_redirect or _settings.client_url or "http://localhost:3000"
    return {"success": True, "data": {"url": build_logout_url(_settings.oidc_issuer, redirect)}}

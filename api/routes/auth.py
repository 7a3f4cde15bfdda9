"""
api/routes/auth.py -- Registration, login and credential recovery endpoints.

Routes:
  POST /api/auth/register              -- create a farmer account; returns a session token
  POST /api/auth/login                 -- email/password login; returns a session token
  GET  /api/auth/verify-email?token=   -- consume an email verification token
  POST /api/auth/forgot-password       -- mail a reset link (generic response)
  POST /api/auth/reset-password?token= -- consume a reset token and set a new password
  GET  /api/auth/me                    -- current user profile (requires auth)
  PUT  /api/auth/me                    -- update own profile (requires auth)
  PUT  /api/auth/password              -- change password (requires auth)

Security:
  [H2] Every route shares the AUTH_RATE_LIMIT bucket (scope "auth") per IP.
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [R1] Self-registration always creates the lowest-privilege role. A "role"
       field in the body is dropped by RegisterRequest.
  [R2] Login and forgot-password answer identically for unknown and known
       emails, so neither can be used to enumerate accounts.
  [M5] Cache-Control: no-store on every response that carries a token.
"""

import logging
import time

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.exc import IntegrityError

from api.limiter import auth_limit
from api.models import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    ProfileUpdate,
    RegisterRequest,
    ResetPasswordRequest,
    user_payload,
)
from api.routes.users import read_profile, write_profile
from auth.dependencies import protect
from auth.models import User, new_user
from auth.store import UserStore
from auth.tokens import (
    authenticate_user,
    create_access_token,
    generate_reset_token,
    generate_verification_token,
    hash_password,
    hash_reset_token,
    verify_password,
)
from core.config import get_settings
from core.errors import Conflict, DeliveryError, Unauthorized, ValidationFailed
from core.notifier import Notifier, reset_email, verification_email

logger = logging.getLogger("farmassist.api.auth")

_settings = get_settings()

router = APIRouter()


def _session_response(request: Request, response: Response, user: User) -> dict:
    request.state.user = user
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return {
        "success": True,
        "token": create_access_token(user.id, user.role),
        "user": user_payload(user),
    }


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", status_code=201)
@auth_limit
def register(request: Request, response: Response, body: RegisterRequest) -> dict:
    """Create a farmer account and return a session token.

    A verification link is mailed when SMTP is configured; otherwise the
    account is created unverified and a warning is logged.
    """
    user_store: UserStore = request.app.state.user_store
    if user_store.get_by_email(body.email) is not None:
        raise Conflict("User already exists")

    verification_token = generate_verification_token()
    candidate = new_user(
        email=body.email,
        hashed_password=hash_password(body.password),
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
        location=body.location,
        verification_token=verification_token,
    )
    try:
        user_id = user_store.create_user(candidate)
    except IntegrityError as e:
        # Lost a race with a concurrent registration for the same email [S1].
        raise Conflict("User already exists") from e
    user = user_store.get_by_id(user_id)

    notifier: Notifier = request.app.state.notifier
    subject, text = verification_email(_settings.client_url, user.first_name, verification_token)
    try:
        notifier.send_email(user.email, subject, text)
    except DeliveryError:
        logger.warning("Verification email for user %d not sent; account left unverified", user.id)

    logger.info("Registered user %d", user.id)
    return _session_response(request, response, user)


@router.post("/auth/login")
@auth_limit
def login(request: Request, response: Response, body: LoginRequest) -> dict:
    """Authenticate with email and password.

    Returns the same "Invalid credentials" for unknown email and wrong
    password [R2].
    """
    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, body.email, body.password)
    if user is None:
        raise Unauthorized("Invalid credentials")
    user_store.update_last_login(user.id)
    return _session_response(request, response, user_store.get_by_id(user.id))


@router.get("/auth/verify-email")
@auth_limit
def verify_email(request: Request, token: str = Query(default="", max_length=128)) -> dict:
    """Mark the account that owns this token as verified. Single use."""
    user_store: UserStore = request.app.state.user_store
    if not user_store.consume_verification_token(token):
        raise ValidationFailed("Invalid verification token")
    return {"success": True, "message": "Email verified successfully"}


@router.post("/auth/forgot-password")
@auth_limit
def forgot_password(request: Request, body: ForgotPasswordRequest) -> dict:
    """Mail a reset link if the email belongs to an account [R2]."""
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_email(body.email)
    if user is not None:
        raw_token, token_hash = generate_reset_token()
        user_store.set_reset_token(user.id, token_hash, time.time() + _settings.reset_token_expire_seconds)
        subject, text = reset_email(
            _settings.client_url,
            user.first_name,
            raw_token,
            _settings.reset_token_expire_seconds // 60,
        )
        notifier: Notifier = request.app.state.notifier
        try:
            notifier.send_email(user.email, subject, text)
        except DeliveryError:
            logger.error("Reset email for user %d could not be sent", user.id)
    return {
        "success": True,
        "message": "If an account exists for that email, a password reset link has been sent",
    }


@router.post("/auth/reset-password")
@auth_limit
def reset_password(
    request: Request,
    response: Response,
    body: ResetPasswordRequest,
    token: str = Query(default="", max_length=128),
) -> dict:
    """Set a new password using a reset token. The token works once, before it expires."""
    user_store: UserStore = request.app.state.user_store
    user = None
    if token:
        user = user_store.consume_reset_token(hash_reset_token(token), hash_password(body.password))
    if user is None:
        raise ValidationFailed("Invalid or expired reset token")

    request.app.state.audit.sensitive_action(request, "user.password.reset", targetUserId=user.id)
    if user.phone:
        notifier: Notifier = request.app.state.notifier
        try:
            notifier.send_sms(user.phone, "Your FarmAssist password was just reset.")
        except DeliveryError:
            logger.warning("Password reset notice for user %d not sent", user.id)
    return _session_response(request, response, user)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me")
@auth_limit
def get_me(request: Request, user: User = Depends(protect)) -> dict:
    """Return the authenticated user's profile."""
    return read_profile(request, user)


@router.put("/auth/me")
@auth_limit
def update_me(request: Request, body: ProfileUpdate, user: User = Depends(protect)) -> dict:
    """Update the authenticated user's profile."""
    return write_profile(request, body, user)


@router.put("/auth/password")
@auth_limit
def change_password(request: Request, body: ChangePasswordRequest, user: User = Depends(protect)) -> dict:
    """Change password after re-checking the current one."""
    if not verify_password(body.current_password, user.hashed_password):
        raise ValidationFailed("Current password is incorrect")
    request.app.state.user_store.update_password(user.id, hash_password(body.new_password))
    request.app.state.audit.sensitive_action(request, "user.password.change", targetUserId=user.id)
    return {"success": True, "message": "Password updated successfully"}

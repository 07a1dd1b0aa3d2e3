"""
api/routes/v1/auth.py -- Session lifecycle REST endpoints for both identity classes.

build_auth_router(kind) returns the same set of routes for either class;
api/main.py mounts it twice:
  /api/v1/auth        -- user class
  /api/v1/admin/auth  -- admin class

Routes (relative to the mount prefix):
  POST /login             -- password login; sets access cookie, refresh cookie when remembered
  POST /refresh-token     -- new access token from the refresh cookie
  POST /logout            -- requires access token; deletes the caller's refresh record
  GET  /is-authenticated  -- requires access token; cache-first identity projection
  POST /send-otp-code     -- issue a password-reset code by email
  PUT  /verify-otp-code   -- verify the emailed code
  PUT  /reset-password    -- set a new password with a verified code

Admin-only management (mounted under /api/v1/admin/auth by build_admin_router):
  PATCH /identities/{identity_id}/block -- block or unblock an identity (manager only)

Security:
  POST /login and the OTP routes are rate-limited per IP (LOGIN_RATE_LIMIT,
  OTP_RATE_LIMIT). Responses carrying tokens set Cache-Control: no-store.
  Handlers are plain def so FastAPI runs them in its thread pool; bcrypt and
  the SQL store block.

Handlers raise core.errors exceptions; api/main.py renders the error envelope.
"""

from typing import Callable

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    BlockRequest,
    LoginRequest,
    ResetPasswordRequest,
    SendOtpRequest,
    SuccessResponse,
    VerifyOtpRequest,
)
from auth.dependencies import access_claims, require_manager
from auth.models import AccessClaims, IdentityKind
from auth.otp import OtpChallengeManager
from auth.sessions import SessionCoordinator
from auth.tokens import REFRESH_COOKIE, clear_auth_cookies, set_auth_cookies
from core.config import get_settings
from core.errors import ValidationFailure


def _login_limit() -> str:
    return get_settings().login_rate_limit


def _otp_limit() -> str:
    return get_settings().otp_rate_limit


def _scoped(kind: IdentityKind) -> Callable:
    """Prefix a handler's name with the identity class.

    slowapi keys its per-route limits on module + function name, and FastAPI
    derives operation ids from it, so the two mounts must not share names.
    Applied innermost: @limiter.limit reads the name when it wraps, and the
    router must register the limited wrapper.
    """

    def decorator(fn: Callable) -> Callable:
        fn.__name__ = f"{kind.value}_{fn.__name__}"
        fn.__qualname__ = fn.__name__
        return fn

    return decorator


def _coordinator(request: Request, kind: IdentityKind) -> SessionCoordinator:
    return request.app.state.coordinators[kind]


def _respond(message: str, data: dict | None = None, no_store: bool = False) -> JSONResponse:
    resp = JSONResponse(status_code=200, content=SuccessResponse(message=message, data=data).model_dump())
    if no_store:
        resp.headers["Cache-Control"] = "no-store"
    return resp


def build_auth_router(kind: IdentityKind) -> APIRouter:
    router = APIRouter()
    scoped = _scoped(kind)
    current_claims = access_claims(kind)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    @router.post("/login", response_model=SuccessResponse)
    @limiter.limit(_login_limit)
    @scoped
    def login(request: Request, body: LoginRequest) -> JSONResponse:
        """Verify credentials and open a session.

        The access token is always issued. A refresh token is issued only when
        remember is true; the per-identity quota is enforced first.
        """
        coordinator = _coordinator(request, kind)
        result = coordinator.login(body.email, body.password, remember=body.remember)

        data = result.identity.projection()
        data["access_token"] = result.access_token
        data["refresh_token"] = result.refresh_token
        resp = _respond("Login successful.", data, no_store=True)
        set_auth_cookies(
            resp,
            coordinator.settings,
            result.access_token,
            refresh_token=result.refresh_token,
            refresh_max_age=coordinator.policy.refresh_cookie_max_age,
        )
        return resp

    @router.post("/refresh-token", response_model=SuccessResponse)
    @scoped
    def refresh_token(request: Request) -> JSONResponse:
        """Exchange the refresh cookie for a new access token."""
        coordinator = _coordinator(request, kind)
        result = coordinator.refresh(request.cookies.get(REFRESH_COOKIE))

        data = result.identity.projection()
        data["access_token"] = result.access_token
        data["refresh_token"] = result.refresh_token
        resp = _respond("Token refreshed.", data, no_store=True)
        if result.rotated:
            set_auth_cookies(
                resp,
                coordinator.settings,
                result.access_token,
                refresh_token=result.refresh_token,
                refresh_max_age=coordinator.policy.refresh_cookie_max_age,
            )
        else:
            set_auth_cookies(resp, coordinator.settings, result.access_token)
        return resp

    @router.post("/logout", response_model=SuccessResponse)
    @scoped
    def logout(request: Request, claims: AccessClaims = Depends(current_claims)) -> JSONResponse:
        """Delete the caller's refresh record and clear both cookies."""
        _coordinator(request, kind).logout(claims, request.cookies.get(REFRESH_COOKIE))
        resp = _respond("Logout successful.")
        clear_auth_cookies(resp)
        return resp

    @router.get("/is-authenticated", response_model=SuccessResponse)
    @scoped
    def is_authenticated(request: Request, claims: AccessClaims = Depends(current_claims)) -> JSONResponse:
        projection = _coordinator(request, kind).current_identity(claims)
        return _respond("Identity retrieved.", projection)

    # ------------------------------------------------------------------
    # OTP password reset
    # ------------------------------------------------------------------

    @router.post("/send-otp-code", response_model=SuccessResponse)
    @limiter.limit(_otp_limit)
    @scoped
    def send_otp_code(request: Request, body: SendOtpRequest) -> JSONResponse:
        identity = _coordinator(request, kind).find_identity(body.email)
        otp: OtpChallengeManager = request.app.state.otp
        otp.issue(identity)
        return _respond("OTP code sent.")

    @router.put("/verify-otp-code", response_model=SuccessResponse)
    @limiter.limit(_otp_limit)
    @scoped
    def verify_otp_code(request: Request, body: VerifyOtpRequest) -> JSONResponse:
        identity = _coordinator(request, kind).find_identity(body.email)
        otp: OtpChallengeManager = request.app.state.otp
        otp.verify(identity, body.otp_code)
        return _respond("OTP code verified.")

    @router.put("/reset-password", response_model=SuccessResponse)
    @limiter.limit(_otp_limit)
    @scoped
    def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
        """Set a new password. Requires a verified, unexpired challenge.

        Existing refresh tokens are left alone; they expire or are logged out
        on their own.
        """
        identity = _coordinator(request, kind).find_identity(body.email)
        otp: OtpChallengeManager = request.app.state.otp
        otp.consume_password_reset(identity, body.new_password)
        return _respond("Password reset successful.")

    return router


def build_admin_router() -> APIRouter:
    """Identity management routes. Every route requires a manager admin token."""
    router = APIRouter()

    @router.patch("/identities/{identity_id}/block", response_model=SuccessResponse)
    def block_identity(
        request: Request,
        identity_id: int,
        body: BlockRequest,
        claims: AccessClaims = Depends(require_manager),
    ) -> JSONResponse:
        """Block or unblock an identity of either class.

        The identity's cache entry is invalidated so "am I authenticated"
        reflects the change immediately. A manager cannot block themselves.
        """
        kind = body.kind
        if kind is IdentityKind.admin and identity_id == claims.identity_id and body.is_blocked:
            raise ValidationFailure("You cannot block your own account.")
        identity = _coordinator(request, kind).set_blocked(identity_id, body.is_blocked)
        message = "Identity blocked." if body.is_blocked else "Identity unblocked."
        return _respond(message, identity.projection())

    return router

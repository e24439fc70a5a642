"""
api/routes/v1/auth.py -- Session endpoints: register, login, refresh, logout.

Routes:
  POST /api/v1/auth/register   -- create account; issues access + refresh tokens (201)
  POST /api/v1/auth/login      -- password login; replaces any previous session
  POST /api/v1/auth/refresh    -- new access token from a valid refresh token
  POST /api/v1/auth/logout     -- revoke the refresh token; clear cookies (requires auth)
  GET  /api/v1/auth/me         -- current user info (requires auth)
  POST /api/v1/auth/password   -- change own password; ends every session (requires auth)

Token transport (TOKEN_TRANSPORT):
  cookie  both tokens are set as httpOnly cookies; the access token is also
          returned in the body for non-browser clients.
  body    no cookies; register/login return refresh_token in the body and the
          client sends it back in the refresh/logout body.

Security:
  [H2] register, login and refresh share the AUTH_RATE_LIMIT per client address.
  [C1] login goes through SessionManager.login -> authenticate_user(), which
       equalizes timing between unknown email and wrong password.
  [M5] Cache-Control: no-store on every response that carries a credential.
  A failed refresh clears both cookies so the browser stops replaying them.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from api.errors import auth_error_response
from api.limiter import auth_rate_limit, limiter
from api.models import (
    AuthResponse,
    ChangePasswordRequest,
    LoginRequest,
    MeResponse,
    MessageResponse,
    RefreshResponse,
    RegisterRequest,
    UserResponse,
)
from auth.dependencies import get_current_identity, refresh_token_from_request, require_refresh_session
from auth.errors import Unauthorized
from auth.models import AuthenticatedIdentity
from auth.sessions import AuthResult, SessionManager
from auth.store import UserStore
from auth.tokens import clear_session_cookies, set_access_cookie, set_session_cookies
from core.config import get_settings

logger = logging.getLogger("authgate.api.auth")

# Auth policy:
# - POST /api/v1/auth/register:  public, rate-limited
# - POST /api/v1/auth/login:     public, rate-limited
# - POST /api/v1/auth/refresh:   refresh gate (require_refresh_session), rate-limited
# - POST /api/v1/auth/logout:    access gate (get_current_identity)
# - GET  /api/v1/auth/me:        access gate (get_current_identity)
# - POST /api/v1/auth/password:  access gate (get_current_identity)
router = APIRouter()


def _cookie_transport() -> bool:
    return get_settings().token_transport == "cookie"


def _no_store(response: JSONResponse) -> JSONResponse:
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return response


def _session_response(result: AuthResult, status_code: int) -> JSONResponse:
    """Serialize an AuthResult and attach tokens per the configured transport."""
    cookie_mode = _cookie_transport()
    payload = AuthResponse(
        user=UserResponse.from_user(result.user),
        access_token=result.access_token,
        token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_in=result.expires_in,
        refresh_token=None if cookie_mode else result.refresh_token,
    )
    resp = JSONResponse(status_code=status_code, content=payload.model_dump(exclude_none=True))
    if cookie_mode:
        set_session_cookies(resp, result.access_token, result.refresh_token)
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
@limiter.limit(auth_rate_limit)  # [H2] innermost, so the router registers the limited wrapper
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account and start its first session.

    Returns 409 when the email is already registered. The refresh record is
    persisted best-effort: if storage is briefly unavailable the account and
    access token are still returned.
    """
    sessions: SessionManager = request.app.state.sessions
    result = sessions.register(body.email, body.name, body.password)
    return _session_response(result, status_code=201)


@router.post("/auth/login", response_model=AuthResponse)
@limiter.limit(auth_rate_limit)  # [H2]
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Unknown email and wrong password produce the same 401 body [C1]. A
    successful login revokes every other refresh token the user holds.
    """
    sessions: SessionManager = request.app.state.sessions
    result = sessions.login(body.email, body.password)
    return _session_response(result, status_code=200)


@router.post("/auth/refresh", response_model=RefreshResponse)
@limiter.limit(auth_rate_limit)  # [H2]
async def refresh(request: Request) -> JSONResponse:
    """Exchange a valid refresh token for a new access token.

    The refresh token itself is not rotated. On any 401 (invalid, revoked or
    expired refresh token) both session cookies are cleared in the response.
    """
    try:
        record = await require_refresh_session(request)
    except Unauthorized as exc:
        resp = auth_error_response(request, exc)
        clear_session_cookies(resp)
        return resp

    sessions: SessionManager = request.app.state.sessions
    access_token = await run_in_threadpool(sessions.renew_access, record)
    resp = JSONResponse(
        content=RefreshResponse(
            access_token=access_token,
            token_type="bearer",  # noqa: S106 # nosec B106
            expires_in=sessions.access_expires_in,
        ).model_dump()
    )
    if _cookie_transport():
        set_access_cookie(resp, access_token)
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    identity: AuthenticatedIdentity = Depends(get_current_identity),
) -> JSONResponse:
    """Revoke the presented refresh token and clear session cookies.

    The refresh token is read from the cookie, else from the JSON body. A
    missing, unknown or already-revoked token still logs out cleanly. A token
    that belongs to another user is not revoked.
    """
    token = await refresh_token_from_request(request)
    if token is not None:
        sessions: SessionManager = request.app.state.sessions
        await run_in_threadpool(sessions.logout, token, identity.id)
    logger.info("User %s logged out", identity.id)
    resp = JSONResponse(content=MessageResponse(message="Logged out successfully.").model_dump())
    clear_session_cookies(resp)
    return _no_store(resp)


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, identity: AuthenticatedIdentity = Depends(get_current_identity)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(identity.id)
    if user is None:
        raise Unauthorized("Invalid or expired access token.")
    return MeResponse(id=user.id, email=user.email, name=user.name, role=user.role)


@router.post("/auth/password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    identity: AuthenticatedIdentity = Depends(get_current_identity),
) -> JSONResponse:
    """Change the caller's password. Every session of the user ends, this one included."""
    sessions: SessionManager = request.app.state.sessions
    sessions.change_password(identity.id, body.current_password, body.new_password)
    resp = JSONResponse(content=MessageResponse(message="Password changed. Please log in again.").model_dump())
    clear_session_cookies(resp)
    return _no_store(resp)

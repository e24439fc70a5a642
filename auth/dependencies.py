"""
auth/dependencies.py -- FastAPI Depends() gates for authentication.

Three gates:
  get_current_identity()    access gate. Bearer token from the Authorization
                            header, falling back to the "access_token" cookie.
  require_refresh_session() refresh gate. Refresh token from the
                            "refresh_token" cookie, falling back to the JSON
                            body field refresh_token (alias refreshToken).
                            The cookie wins when both are present.
  require_admin()           admin gate. Runs the access gate, then checks role.

The access gate re-reads email and role from storage on every request rather
than trusting the token: role changes apply mid-session, and a deleted user's
still-unexpired access token stops working immediately.

All gates raise auth.errors exceptions; api/main.py renders them.

Layer rule: auth/dependencies.py may import from fastapi (for Request) because
this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import json
import logging

from fastapi import Request
from starlette.concurrency import run_in_threadpool

from auth.errors import Forbidden, TokenError, Unauthorized
from auth.models import AuthenticatedIdentity, RefreshTokenRecord
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import ACCESS_COOKIE, REFRESH_COOKIE, verify_access_token

logger = logging.getLogger("authgate.auth")

_BODY_TOKEN_FIELDS = ("refresh_token", "refreshToken")


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header[:7].lower() == "bearer ":
        token = auth_header[7:].strip()
        if token:
            return token
    return request.cookies.get(ACCESS_COOKIE) or None


async def refresh_token_from_request(request: Request) -> str | None:
    """Return the refresh token from the cookie, else from the JSON body.

    The body is read leniently: a missing, empty or non-JSON body is simply
    "no token in the body", not a validation error.
    """
    token = request.cookies.get(REFRESH_COOKIE)
    if token:
        return token
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if isinstance(body, dict):
        for field in _BODY_TOKEN_FIELDS:
            value = body.get(field)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def get_current_identity(request: Request) -> AuthenticatedIdentity:
    """Access gate. Raises Unauthorized unless the request carries a valid access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: AuthenticatedIdentity = Depends(get_current_identity)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise Unauthorized("Authorization token required.")
    try:
        claim = verify_access_token(token)
    except TokenError as exc:
        logger.info("Access token rejected: %s", exc.kind.value)
        raise Unauthorized("Invalid or expired access token.") from exc

    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(claim.user_id)
    if user is None:
        logger.warning("Access token for missing user %s", claim.user_id)
        raise Unauthorized("Invalid or expired access token.")

    return AuthenticatedIdentity(id=user.id, email=user.email, role=user.role)


async def require_refresh_session(request: Request) -> RefreshTokenRecord:
    """Refresh gate. Returns the validated stored record.

    Delegates to SessionManager.validate_refresh(), which revokes an expired
    record before raising RefreshExpired. Clearing client-side cookies is the
    route's job.
    """
    token = await refresh_token_from_request(request)
    if token is None:
        raise Unauthorized("Refresh token required.")
    sessions: SessionManager = request.app.state.sessions
    return await run_in_threadpool(sessions.validate_refresh, token)


def require_admin(request: Request) -> AuthenticatedIdentity:
    """Admin gate. Raises Unauthorized if unauthenticated, Forbidden if not admin."""
    identity = get_current_identity(request)
    if not identity.is_admin:
        raise Forbidden("Admin access required.")
    return identity

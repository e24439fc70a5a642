"""
api/errors.py -- Build the single error envelope every 4xx/5xx response uses.

Exception handlers in api/main.py and the few routes that must attach extra
headers to a failure (e.g. /auth/refresh clearing cookies) go through
error_response() so the body shape never drifts:

    {"error": {"code": ..., "message": ..., "detail": ...}, "request_id": ...}
"""

from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse
from auth.errors import AuthError, Unauthorized


def error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    detail: Any = None,
) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    response = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=code, message=message, detail=detail),
            request_id=request_id,
        ).model_dump(),
    )
    if request_id:
        response.headers["X-Request-ID"] = request_id
    return response


def auth_error_response(request: Request, exc: AuthError) -> JSONResponse:
    """Render an AuthError. 401s are never cached [M5]."""
    response = error_response(request, exc.status_code, exc.code, exc.message, exc.detail)
    if isinstance(exc, Unauthorized):
        response.headers["Cache-Control"] = "no-store"
        response.headers["WWW-Authenticate"] = "Bearer"
    return response

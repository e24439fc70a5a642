"""
auth/errors.py -- Closed error taxonomy for the auth layer.

Every expected failure of a session or user operation is one of the classes
below. Each carries a stable machine-readable code and the HTTP status the API
layer maps it to, so route handlers raise and the exception handler in
api/main.py renders -- no status codes are chosen ad hoc in routes.

  ValidationFailed  422  validation_error  malformed input, field detail safe to return
  Conflict          409  conflict          duplicate email
  Unauthorized      401  unauthorized      bad credentials, missing/invalid token
  RefreshExpired    401  refresh_expired   caller must clear client-held session state
  Forbidden         403  forbidden         authenticated but insufficient role
  NotFound          404  not_found         admin lookup of a missing user
  Unavailable       503  unavailable       storage unreachable; internal text never exposed

Token verification failures use TokenError with a TokenErrorKind. They are
translated into Unauthorized/RefreshExpired by auth/sessions.py and
auth/dependencies.py, never surfaced to clients directly.

Layer rule: stdlib only.
"""

from __future__ import annotations

from enum import Enum


class AuthError(Exception):
    """Base class for expected, client-visible auth failures."""

    status_code: int = 400
    code: str = "bad_request"

    def __init__(self, message: str, detail: dict | list | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationFailed(AuthError):
    status_code = 422
    code = "validation_error"


class Conflict(AuthError):
    status_code = 409
    code = "conflict"


class Unauthorized(AuthError):
    status_code = 401
    code = "unauthorized"


class RefreshExpired(Unauthorized):
    """The refresh session is over. The stored record has already been revoked."""

    code = "refresh_expired"


class Forbidden(AuthError):
    status_code = 403
    code = "forbidden"


class NotFound(AuthError):
    status_code = 404
    code = "not_found"


class Unavailable(AuthError):
    status_code = 503
    code = "unavailable"


class TokenErrorKind(str, Enum):
    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED = "expired"
    MALFORMED = "malformed"


class TokenError(Exception):
    """Raised by the token codec. Switch on .kind, never on the message."""

    def __init__(self, kind: TokenErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind

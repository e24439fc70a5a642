"""
auth/tokens.py -- Password hashing, JWT signing/verification and cookie helpers.

Security design decisions:
  JWT: python-jose with HS256. Two independent signing domains -- access and
       refresh -- each with its own secret and TTL (JWT_SECRET /
       JWT_REFRESH_SECRET, JWT_EXPIRES_IN / JWT_REFRESH_EXPIRES_IN). Every
       token carries sub (user id), iat, exp, a "type" claim naming its domain
       and a random jti, so two tokens minted in the same second still differ.
       Verification raises TokenError with a closed TokenErrorKind; callers
       switch on the kind instead of parsing messages.

  Expiry is checked here rather than inside jose so the clock is injectable
       (every issue/verify function takes an optional `now`). A token is valid
       while now < exp.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in authenticate_user() so response time
       does not reveal whether an email is registered [C1].

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.errors import TokenError, TokenErrorKind
from auth.models import TokenClaim
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("authgate.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"

# bcrypt only looks at the first 72 bytes; bcrypt>=5 raises beyond that.
MAX_PASSWORD_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Inputs longer than 72 bytes are rejected at the API layer (Pydantic
    validator) so they never reach this function.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A mismatch is False, never an exception. A malformed digest raises
    ValueError from bcrypt -- that is a data problem, not a bad login.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        return False
    return bcrypt.checkpw(encoded, hashed.encode("utf-8"))


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("authgate_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password pair with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure. Callers must map None
    to one generic error so the two cases stay indistinguishable.
    """
    user = store.get_by_email(email)
    if user is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _issue(user_id: int, token_type: str, secret: str, ttl: timedelta, now: datetime | None) -> str:
    issued = now or _utcnow()
    iat = int(issued.timestamp())
    payload = {
        "sub": str(user_id),
        "type": token_type,
        "jti": uuid.uuid4().hex,
        "iat": iat,
        "exp": iat + int(ttl.total_seconds()),
    }
    return jwt.encode(payload, secret, algorithm=_ALGORITHM)


def _verify(token: str, token_type: str, secret: str, now: datetime | None) -> TokenClaim:
    try:
        jwt.get_unverified_header(token)
    except JWTError as exc:
        raise TokenError(TokenErrorKind.MALFORMED, f"malformed {token_type} token") from exc

    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[_ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError as exc:
        raise TokenError(TokenErrorKind.INVALID_SIGNATURE, f"invalid {token_type} token signature") from exc

    # A refresh token signed with a fallback-shared secret must still not pass
    # as an access token, so a domain mismatch counts as a signature failure.
    if payload.get("type") != token_type:
        raise TokenError(TokenErrorKind.INVALID_SIGNATURE, f"not a {token_type} token")

    try:
        user_id = int(payload["sub"])
        iat = int(payload["iat"])
        exp = int(payload["exp"])
        jti = str(payload["jti"])
    except (KeyError, TypeError, ValueError) as exc:
        raise TokenError(TokenErrorKind.MALFORMED, f"{token_type} token is missing claims") from exc

    current = now or _utcnow()
    if current.timestamp() >= exp:
        raise TokenError(TokenErrorKind.EXPIRED, f"{token_type} token expired")

    return TokenClaim(
        user_id=user_id,
        issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
        expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        token_type=token_type,
        jti=jti,
    )


def issue_access_token(user_id: int, now: datetime | None = None) -> str:
    """Sign a short-lived access token for user_id (default TTL 15 minutes)."""
    return _issue(user_id, ACCESS, _settings.jwt_secret, _settings.access_token_ttl, now)


def issue_refresh_token(user_id: int, now: datetime | None = None) -> str:
    """Sign a long-lived refresh token for user_id (default TTL 7 days)."""
    return _issue(user_id, REFRESH, _settings.jwt_refresh_secret, _settings.refresh_token_ttl, now)


def verify_access_token(token: str, now: datetime | None = None) -> TokenClaim:
    """Return the claim of a valid access token. Raises TokenError otherwise."""
    return _verify(token, ACCESS, _settings.jwt_secret, now)


def verify_refresh_token(token: str, now: datetime | None = None) -> TokenClaim:
    """Return the claim of a valid refresh token. Raises TokenError otherwise."""
    return _verify(token, REFRESH, _settings.jwt_refresh_secret, now)


def token_prefix(token: str) -> str:
    """Short, log-safe handle for a token. Full tokens are never logged."""
    return f"{token[:10]}..."


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _set_cookie(response, name: str, value: str, max_age: int) -> None:
    """Write a token as an httpOnly cookie.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation for most cases.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the token TTL so cookie and token expire together.
    """
    response.set_cookie(
        name,
        value=value,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=max_age,
    )


def set_access_cookie(response, token: str) -> None:
    _set_cookie(response, ACCESS_COOKIE, token, int(_settings.access_token_ttl.total_seconds()))


def set_session_cookies(response, access_token: str, refresh_token: str) -> None:
    """Set both session cookies after register or login."""
    set_access_cookie(response, access_token)
    _set_cookie(response, REFRESH_COOKIE, refresh_token, int(_settings.refresh_token_ttl.total_seconds()))


def clear_session_cookies(response) -> None:
    """Delete both session cookies. Used on logout and failed refresh."""
    response.delete_cookie(ACCESS_COOKIE, httponly=True, samesite="lax", secure=_settings.secure_cookies)
    response.delete_cookie(REFRESH_COOKIE, httponly=True, samesite="lax", secure=_settings.secure_cookies)

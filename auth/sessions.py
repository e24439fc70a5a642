"""
auth/sessions.py -- Session lifecycle: register, login, refresh, logout, forced logout.

A user's session moves through these states:

  anonymous --register--> registered --login--> authenticated (access + refresh)
  authenticated --access TTL elapses--> access-expired / refresh-valid
  access-expired --refresh--> authenticated (new access token, same refresh token)
  any --logout / refresh expiry / forced logout / next login--> logged-out

Policies:
  Single session: login revokes every valid refresh record of the user and
      inserts the new one in one transaction (RefreshTokenStore.replace_for_user).

  No rotation on refresh: refresh mints a new access token only. A stolen
      refresh token stays usable until its TTL, logout, a password change or
      the owner's next login -- whichever comes first.

  Best-effort persistence: if the refresh record cannot be written after the
      store's retries, register/login still succeed. The access token is
      valid; the refresh token simply will not be accepted, so the client
      re-authenticates sooner. Losing a row costs session longevity, not
      correctness.

  Idempotent expiry: a refresh token past its expiry is revoked and reported
      as RefreshExpired. The expiry check runs before the revoked check, so
      repeating the call yields the same RefreshExpired.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    Conflict,
    NotFound,
    RefreshExpired,
    TokenError,
    TokenErrorKind,
    Unauthorized,
    Unavailable,
)
from auth.models import DEFAULT_ROLE, RefreshTokenRecord, User
from auth.store import RefreshTokenStore, UserStore
from auth.tokens import (
    authenticate_user,
    hash_password,
    issue_access_token,
    issue_refresh_token,
    token_prefix,
    verify_password,
    verify_refresh_token,
)
from core.config import get_settings

logger = logging.getLogger("authgate.auth.sessions")

_settings = get_settings()

# Same message for unknown email and wrong password -- no enumeration signal.
_BAD_CREDENTIALS = "Invalid email or password."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AuthResult:
    """What register and login hand back to the transport layer."""

    user: User
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds


class SessionManager:
    """Orchestrates the token codec, the refresh token store and user storage.

    clock is injectable so tests can walk a session through its TTLs.
    """

    def __init__(
        self,
        users: UserStore,
        tokens: RefreshTokenStore,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.users = users
        self.tokens = tokens
        self._clock = clock

    @property
    def access_expires_in(self) -> int:
        return int(_settings.access_token_ttl.total_seconds())

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, email: str, name: str, password: str, role: str = DEFAULT_ROLE) -> User:
        """Hash the password and insert a user. Raises Conflict on a duplicate email.

        The pre-check gives the common case a clean error; the IntegrityError
        branch covers two concurrent requests that both passed it.
        """
        if self.users.get_by_email(email) is not None:
            logger.warning("Account creation rejected: email already registered")
            raise Conflict("User already exists.")
        user = User(email=email, name=name, password_hash=hash_password(password), role=role)
        try:
            user_id = self.users.create_user(user)
        except IntegrityError as exc:
            raise Conflict("User already exists.") from exc
        created = self.users.get_by_id(user_id)
        if created is None:
            raise NotFound("User not found after write.")
        logger.info("Account created (user_id=%s, role=%s)", created.id, created.role)
        return created

    def change_password(self, user_id: int, current_password: str, new_password: str) -> None:
        """Replace the user's password and end every session they hold."""
        user = self.users.get_by_id(user_id)
        if user is None or not verify_password(current_password, user.password_hash):
            raise Unauthorized("Current password is incorrect.")
        self.users.update_user(user_id, password_hash=hash_password(new_password))
        revoked = self.revoke_all_sessions(user_id)
        logger.info("Password changed for user %s (%d session(s) revoked)", user_id, revoked)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def register(self, email: str, name: str, password: str) -> AuthResult:
        user = self.create_account(email, name, password)
        access_token, refresh_token, expires_at = self._mint(user.id)
        try:
            self.tokens.persist(user.id, refresh_token, expires_at)
        except Unavailable:
            logger.error("Refresh token not persisted at registration for user %s; continuing", user.id)
        logger.info("User registered (user_id=%s)", user.id)
        return AuthResult(user, access_token, refresh_token, self.access_expires_in)

    def login(self, email: str, password: str) -> AuthResult:
        user = authenticate_user(self.users, email, password)
        if user is None:
            logger.warning("Login failed: bad credentials")
            raise Unauthorized(_BAD_CREDENTIALS)
        access_token, refresh_token, expires_at = self._mint(user.id)
        try:
            self.tokens.replace_for_user(user.id, refresh_token, expires_at)
        except Unavailable:
            logger.error("Refresh token not persisted at login for user %s; continuing", user.id)
        logger.info("User logged in (user_id=%s)", user.id)
        return AuthResult(user, access_token, refresh_token, self.access_expires_in)

    def validate_refresh(self, token: str) -> RefreshTokenRecord:
        """Return the stored record behind a usable refresh token.

        Raises Unauthorized for a bad signature, malformed token, unknown,
        revoked or mismatched record, and RefreshExpired (after revoking the
        record) when the token or its record has expired.
        """
        now = self._clock()
        try:
            claim = verify_refresh_token(token, now=now)
        except TokenError as exc:
            if exc.kind is TokenErrorKind.EXPIRED:
                self.tokens.revoke(token, now=now)
                logger.info("Expired refresh token presented (%s); revoked", token_prefix(token))
                raise RefreshExpired("Refresh token has expired.") from exc
            if exc.kind in (TokenErrorKind.INVALID_SIGNATURE, TokenErrorKind.MALFORMED):
                logger.warning("Rejected refresh token: %s", exc.kind.value)
                raise Unauthorized("Invalid refresh token.") from exc
            raise

        record = self.tokens.find(token)
        if record is None:
            logger.warning("Refresh token not on record (user_id=%s)", claim.user_id)
            raise Unauthorized("Invalid refresh token.")
        if record.is_expired(now):
            self.tokens.revoke(token, now=now)
            logger.info("Refresh record %s past expiry; revoked", record.id)
            raise RefreshExpired("Refresh token has expired.")
        if record.revoked:
            logger.warning("Revoked refresh token presented (record %s)", record.id)
            raise Unauthorized("Invalid refresh token.")
        if record.user_id != claim.user_id:
            logger.warning("Refresh token subject mismatch (record %s)", record.id)
            raise Unauthorized("Invalid refresh token.")
        return record

    def renew_access(self, record: RefreshTokenRecord) -> str:
        """Mint a fresh access token for a validated refresh record."""
        access_token = issue_access_token(record.user_id, now=self._clock())
        logger.info("Access token renewed (user_id=%s)", record.user_id)
        return access_token

    def refresh(self, token: str) -> str:
        return self.renew_access(self.validate_refresh(token))

    def logout(self, token: str, user_id: int | None = None) -> bool:
        """Revoke the session behind token. Unknown or revoked tokens are fine.

        With user_id set, a token that belongs to another user is left alone.
        """
        if user_id is not None:
            record = self.tokens.find(token)
            if record is not None and record.user_id != user_id:
                logger.warning("Logout by user %s presented a token of user %s; ignored", user_id, record.user_id)
                return False
        revoked = self.tokens.revoke(token, now=self._clock())
        logger.info("Logout (%s, revoked=%s)", token_prefix(token), revoked)
        return revoked

    def revoke_all_sessions(self, user_id: int) -> int:
        """Forced logout: revoke every valid refresh record of user_id."""
        count = self.tokens.revoke_all_for_user(user_id, now=self._clock())
        if count:
            logger.info("Revoked %d session(s) for user %s", count, user_id)
        return count

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _mint(self, user_id: int) -> tuple[str, str, datetime]:
        now = self._clock()
        access_token = issue_access_token(user_id, now=now)
        refresh_token = issue_refresh_token(user_id, now=now)
        return access_token, refresh_token, now + _settings.refresh_token_ttl

"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores, the session manager and routes do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

ROLES: tuple[str, ...] = ("user", "admin", "moderator")
DEFAULT_ROLE = "user"


@dataclass
class User:
    """A registered identity.

    email is stored lower-cased and stripped; uniqueness is case-insensitive
    because normalisation happens before every write and lookup.

    password_hash is a bcrypt digest. It never leaves the auth layer -- API
    responses are built from the other fields only.
    """

    email: str
    name: str
    password_hash: str
    role: str = DEFAULT_ROLE
    id: int | None = None
    created_at: str | None = None  # ISO 8601, set by store on insert
    updated_at: str | None = None


@dataclass
class RefreshTokenRecord:
    """A persisted session handle.

    Records are append-only: logout, login replacement and expiry detection flip
    revoked/revoked_at instead of deleting the row, so the table doubles as an
    audit trail. Only rows that are both revoked and expired may be purged.
    """

    token: str
    user_id: int
    expires_at: datetime
    id: int | None = None
    revoked: bool = False
    revoked_at: datetime | None = None
    created_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class TokenClaim:
    """Decoded payload of a verified access or refresh token. Never persisted."""

    user_id: int
    issued_at: datetime
    expires_at: datetime
    token_type: str  # "access" | "refresh"
    jti: str


@dataclass(frozen=True)
class AuthenticatedIdentity:
    """Who is making the current request. Lives only as long as the request."""

    id: int
    email: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore and RefreshTokenStore are the
repositories; _row_to_user / _row_to_refresh_token are the mappers. Session
and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Refresh tokens:
  Rows are append-only. Logout, single-session login and expiry detection
  set revoked=1 + revoked_at instead of deleting. purge_expired() is the only
  delete and only touches rows that are both revoked and expired.

  user_id is indexed but carries no FK constraint: deleting a user leaves its
  (already revoked) token rows behind as audit trail instead of cascading
  them away or blocking the delete.

  Writes that issue a session (persist, replace_for_user) retry transient
  OperationalErrors a bounded number of times with exponential backoff, then
  raise Unavailable. IntegrityErrors are never retried.

Concurrency:
  replace_for_user() revokes and inserts inside one transaction after locking
  the owning user row (SELECT ... FOR UPDATE; a no-op on SQLite, where the
  database-level write lock already serialises writers). Two concurrent logins
  for one user therefore leave at most one valid record.

Timestamps are stored as ISO 8601 UTC strings with fixed microsecond
precision so string comparison matches chronological order.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TypeVar

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from auth.errors import Unavailable
from auth.models import RefreshTokenRecord, User
from core.config import get_settings

logger = logging.getLogger("authgate.auth.store")

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", Text, nullable=False, unique=True),
    Column("user_id", Integer, nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),  # boolean stored as 0/1
    Column("revoked_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Index("ix_refresh_tokens_user_revoked", "user_id", "revoked"),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str) -> Engine:
    """Create the engine shared by UserStore and RefreshTokenStore and ensure the schema."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args, pool_pre_ping=True)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore()
        user_id = store.create_user(User(email="a@x.com", name="A", password_hash=hash_password("...")))
        user = store.get_by_email("A@X.com")
        store.close()
    """

    def __init__(self, db_url: str | None = None, engine: Engine | None = None) -> None:
        self.engine: Engine = engine or create_store_engine(db_url or get_settings().database_url)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
        except OperationalError:
            logger.exception("Database ping failed")
            return False
        return True

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers treat that as Conflict -- it is how a concurrent duplicate
        registration surfaces after both requests passed the pre-check.
        """
        now = _iso(_utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=normalize_email(user.email),
                    name=user.name,
                    password_hash=user.password_hash,
                    role=user.role,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive via normalisation)."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self, offset: int = 0, limit: int = 10) -> list[User]:
        """Return one page of users ordered by id. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.id).offset(offset).limit(limit)).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return result or 0

    def count_admins(self) -> int:
        """Return the number of admin users. Used to protect the last admin [M4]."""
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users).where(_users.c.role == "admin")).scalar()
        return result or 0

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: email, name, role, password_hash. updated_at is
        stamped automatically. Raises IntegrityError if a new email collides.

        Returns True if a row was updated, False if user_id was not found.
        """
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        fields["updated_at"] = _iso(_utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user record. Returns True if deleted, False if not found.

        Callers must revoke the user's refresh tokens and check last-admin
        invariants before calling this method.
        """
        with self.engine.begin() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


class RefreshTokenStore:
    """Repository for RefreshTokenRecord entities.

    Shares the engine (and therefore the database) with UserStore so the
    single-session replace can lock the owning user row in the same
    transaction.

    Usage:
        tokens = RefreshTokenStore(user_store.engine)
        tokens.replace_for_user(user_id, token, expires_at)
        record = tokens.find_valid(token)
        tokens.revoke(token)
    """

    def __init__(self, engine: Engine, max_attempts: int = 3, retry_backoff: float = 0.05) -> None:
        self.engine = engine
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff

    # ------------------------------------------------------------------
    # Writes that issue a session (retried)
    # ------------------------------------------------------------------

    def persist(self, user_id: int, token: str, expires_at: datetime) -> int:
        """Insert a new valid record and return its ID. Raises Unavailable after retries."""
        return self._with_retry("persist", lambda: self._insert(user_id, token, expires_at))

    def replace_for_user(self, user_id: int, token: str, expires_at: datetime) -> int:
        """Revoke every valid record of user_id and insert the new one, atomically.

        This is the single-session login step. Raises Unavailable after retries.
        """
        return self._with_retry("replace", lambda: self._replace(user_id, token, expires_at))

    def _insert(self, user_id: int, token: str, expires_at: datetime) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.insert().values(
                    token=token,
                    user_id=user_id,
                    expires_at=_iso(expires_at),
                    revoked=0,
                    created_at=_iso(_utcnow()),
                )
            )
            return result.inserted_primary_key[0]

    def _replace(self, user_id: int, token: str, expires_at: datetime) -> int:
        now = _iso(_utcnow())
        with self.engine.begin() as conn:
            conn.execute(select(_users.c.id).where(_users.c.id == user_id).with_for_update())
            revoked = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=now)
            ).rowcount
            record_id = conn.execute(
                _refresh_tokens.insert().values(
                    token=token,
                    user_id=user_id,
                    expires_at=_iso(expires_at),
                    revoked=0,
                    created_at=now,
                )
            ).inserted_primary_key[0]
        if revoked:
            logger.info("Single-session login revoked %d prior refresh token(s) for user %s", revoked, user_id)
        return record_id

    def _with_retry(self, action: str, op: Callable[[], T]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return op()
            except OperationalError as exc:
                logger.warning(
                    "Refresh token %s failed (attempt %d/%d): %s",
                    action,
                    attempt,
                    self.max_attempts,
                    exc.__class__.__name__,
                )
                if attempt == self.max_attempts:
                    raise Unavailable("Session storage is temporarily unavailable.") from exc
                time.sleep(self.retry_backoff * 2 ** (attempt - 1))
        raise AssertionError("unreachable")

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find(self, token: str) -> RefreshTokenRecord | None:
        """Return the record for token whether or not it is revoked."""
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token == token)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def find_valid(self, token: str) -> RefreshTokenRecord | None:
        """Return the unrevoked record for token, or None if absent or revoked."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where((_refresh_tokens.c.token == token) & (_refresh_tokens.c.revoked == 0))
            ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, token: str, now: datetime | None = None) -> bool:
        """Mark the record for token revoked. Idempotent.

        Returns True if a valid record was revoked, False if the token was
        unknown or already revoked. Neither case is an error.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token == token) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=_iso(now or _utcnow()))
            )
        return result.rowcount > 0

    def revoke_all_for_user(self, user_id: int, now: datetime | None = None) -> int:
        """Revoke every valid record of user_id. Returns how many were revoked."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=_iso(now or _utcnow()))
            )
        return result.rowcount

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete records that are both revoked and expired. Returns rows removed."""
        cutoff = _iso(now or _utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.revoked == 1) & (_refresh_tokens.c.expires_at < cutoff)
                )
            )
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        password_hash=row.password_hash,
        role=row.role,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_refresh_token(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        token=row.token,
        user_id=row.user_id,
        expires_at=_parse(row.expires_at),
        revoked=bool(row.revoked),
        revoked_at=_parse(row.revoked_at),
        created_at=_parse(row.created_at),
    )

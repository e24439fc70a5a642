"""
api/routes/v1/users.py -- User management REST endpoints (admin only).

Routes:
  POST   /api/v1/users            -- create user (201)
  GET    /api/v1/users            -- paginated list (?page=1&limit=10, limit <= 100)
  GET    /api/v1/users/{id}       -- single user
  PATCH  /api/v1/users/{id}       -- partial update
  PUT    /api/v1/users/{id}       -- same handler as PATCH; omitted fields are kept
  DELETE /api/v1/users/{id}       -- delete user

Security:
  [M4] An admin cannot delete or demote themselves, and the last admin can
       be neither deleted nor demoted.
  Changing a user's role or password revokes that user's sessions, so the
  change cannot be outlived by an old refresh token. Delete revokes first.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.exc import IntegrityError

from api.models import MessageResponse, PaginationMeta, UserCreate, UserListResponse, UserResponse, UserUpdate
from auth.dependencies import require_admin
from auth.errors import Conflict, Forbidden, NotFound, ValidationFailed
from auth.models import AuthenticatedIdentity, User
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import hash_password

logger = logging.getLogger("authgate.api.users")

# Auth policy: every route below requires admin (require_admin), applied per route
router = APIRouter()

MAX_PAGE_SIZE = 100


def _get_user_or_404(user_store: UserStore, user_id: int) -> User:
    user = user_store.get_by_id(user_id)
    if user is None:
        raise NotFound("User not found.")
    return user


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    admin: AuthenticatedIdentity = Depends(require_admin),
) -> UserResponse:
    """Create a user with any role. Returns 409 if the email is taken."""
    sessions: SessionManager = request.app.state.sessions
    created = sessions.create_account(body.email, body.name, body.password, role=body.role.value)
    logger.info("Admin %s created user %s (role=%s)", admin.id, created.id, created.role)
    return UserResponse.from_user(created)


@router.get("/users", response_model=UserListResponse)
def list_users(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=MAX_PAGE_SIZE),
    admin: AuthenticatedIdentity = Depends(require_admin),
) -> UserListResponse:
    """Return one page of users ordered by id, with paging metadata."""
    user_store: UserStore = request.app.state.user_store
    users = user_store.list_users(offset=(page - 1) * limit, limit=limit)
    total = user_store.count_users()
    return UserListResponse(
        data=[UserResponse.from_user(u) for u in users],
        pagination=PaginationMeta.build(page=page, limit=limit, total=total),
    )


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    request: Request,
    user_id: int,
    admin: AuthenticatedIdentity = Depends(require_admin),
) -> UserResponse:
    user_store: UserStore = request.app.state.user_store
    return UserResponse.from_user(_get_user_or_404(user_store, user_id))


@router.patch("/users/{user_id}", response_model=UserResponse)
@router.put("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserUpdate,
    admin: AuthenticatedIdentity = Depends(require_admin),
) -> UserResponse:
    """Update email, name, role and/or password.

    [M4] Blocks self-demotion and demoting the last admin. A role or password
    change revokes every session the target holds.
    """
    user_store: UserStore = request.app.state.user_store
    sessions: SessionManager = request.app.state.sessions
    target = _get_user_or_404(user_store, user_id)

    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise ValidationFailed("No fields to update.")

    updates: dict = {}
    if "email" in changes and changes["email"] != target.email:
        existing = user_store.get_by_email(changes["email"])
        if existing is not None and existing.id != target.id:
            raise Conflict("User already exists.")
        updates["email"] = changes["email"]
    if "name" in changes:
        updates["name"] = changes["name"]
    if "role" in changes:
        new_role = body.role.value
        if new_role != target.role:
            if target.role == "admin":
                # [M4] Block self-demotion
                if target.id == admin.id:
                    raise Forbidden("You cannot change your own admin role.")
                # [M4] Block demoting the last admin
                if user_store.count_admins() <= 1:
                    raise Conflict("Cannot demote the last admin account.")
            updates["role"] = new_role
    if "password" in changes:
        updates["password_hash"] = hash_password(changes["password"])

    if updates:
        try:
            user_store.update_user(user_id, **updates)
        except IntegrityError as exc:
            raise Conflict("User already exists.") from exc
        if "role" in updates or "password_hash" in updates:
            sessions.revoke_all_sessions(user_id)
        logger.info("Admin %s updated user %s (fields=%s)", admin.id, user_id, sorted(updates))

    return UserResponse.from_user(_get_user_or_404(user_store, user_id))


@router.delete("/users/{user_id}", response_model=MessageResponse)
def delete_user(
    request: Request,
    user_id: int,
    admin: AuthenticatedIdentity = Depends(require_admin),
) -> MessageResponse:
    """Delete a user after revoking all of their sessions.

    [M4] Blocks self-deletion and deleting the last admin.
    """
    user_store: UserStore = request.app.state.user_store
    sessions: SessionManager = request.app.state.sessions
    target = _get_user_or_404(user_store, user_id)

    if target.id == admin.id:
        raise Forbidden("You cannot delete your own account.")
    if target.role == "admin" and user_store.count_admins() <= 1:
        raise Conflict("Cannot delete the last admin account.")

    sessions.revoke_all_sessions(user_id)
    user_store.delete_user(user_id)
    logger.info("Admin %s deleted user %s", admin.id, user_id)
    return MessageResponse(message="User deleted successfully.")

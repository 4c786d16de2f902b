"""
api/routes/v1/admin.py -- Account administration and session housekeeping.

Routes:
  POST   /api/v1/auth/users                     -- create user (admin)
  GET    /api/v1/auth/users                     -- list users (admin)
  PATCH  /api/v1/auth/users/{user_id}           -- role / active flag / member link (admin)
  DELETE /api/v1/auth/users/{user_id}/sessions  -- invalidate all of a user's sessions (admin)
  GET    /api/v1/auth/sessions/stats            -- total / active / expired counts (admin)
  POST   /api/v1/auth/sessions/cleanup          -- sweep expired sessions now (admin)
  DELETE /api/v1/auth/rate-limits/{username}    -- unblock a throttled username (admin)
  GET    /api/v1/auth/members/{member_id}/account -- account linked to a member profile
                                                    (Pastor/Admin, or the member themself)

Guards:
  PATCH blocks self-deactivation and demoting or deactivating the last
  active admin.
  Deactivating a user drops their sessions immediately rather than waiting
  for the next lookup to notice.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import IntegrityError

from api.models import (
    CountResponse,
    MessageResponse,
    SessionStatsResponse,
    UserCreate,
    UserInfo,
    UserPatch,
)
from auth.dependencies import build_context, get_guard, get_user_store
from auth.errors import AuthError, ErrorKind
from auth.middleware import Guard, RequestContext, chain
from auth.models import Role, User
from auth.store import UserStore
from auth.tokens import ensure_password_strength, hash_password

# Auth policy:
# - users, sessions/stats, sessions/cleanup, rate-limits: require_admin
# - members/{member_id}/account: require_member + require_member_access
router = APIRouter()


# ---------------------------------------------------------------------------
# User management
# ---------------------------------------------------------------------------


@router.post("/auth/users", response_model=UserInfo, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    guard: Guard = Depends(get_guard),
    user_store: UserStore = Depends(get_user_store),
):
    """Create an account. The initial password must satisfy the strength policy."""

    def _create_user(ctx: RequestContext):
        ensure_password_strength(body.password)
        new_user = User(
            username=body.username,
            email=body.email,
            role=Role.from_label(body.role.value),
            hashed_password=hash_password(body.password),
            member_id=body.member_id,
            password_reset_required=body.password_reset_required,
        )
        try:
            user_id = user_store.create_user(new_user)
        except IntegrityError as exc:
            raise AuthError(ErrorKind.CONFLICT) from exc
        return UserInfo.from_user(user_store.get_by_id(user_id))

    return guard.protect(_create_user, guard.require_admin())(build_context(request))


@router.get("/auth/users", response_model=list[UserInfo])
def list_users(
    request: Request,
    guard: Guard = Depends(get_guard),
    user_store: UserStore = Depends(get_user_store),
):
    def _list_users(ctx: RequestContext):
        return [UserInfo.from_user(u) for u in user_store.list_users()]

    return guard.protect(_list_users, guard.require_admin())(build_context(request))


@router.patch("/auth/users/{user_id}", response_model=UserInfo)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    guard: Guard = Depends(get_guard),
    user_store: UserStore = Depends(get_user_store),
):
    """Update a user's role, active flag or member link. Admin only."""

    def _update_user(ctx: RequestContext):
        target = user_store.get_by_id(user_id)
        if target is None:
            raise AuthError(ErrorKind.USER_NOT_FOUND)

        updates: dict = {}
        if body.role is not None:
            updates["role"] = body.role.value
        if body.member_id is not None:
            updates["member_id"] = body.member_id
        if body.is_active is not None:
            if not body.is_active and target.id == ctx.user.id:
                raise AuthError(ErrorKind.INVALID_INPUT, "You cannot deactivate your own account.")
            updates["is_active"] = body.is_active
        if not updates:
            raise AuthError(ErrorKind.INVALID_INPUT, "No fields to update.")

        loses_admin = body.is_active is False or (body.role is not None and body.role.value != Role.ADMIN.label)
        if target.role == Role.ADMIN and target.is_active and loses_admin and user_store.count_active_admins() <= 1:
            raise AuthError(ErrorKind.INVALID_INPUT, "Cannot remove the last active admin account.")

        user_store.update_user(user_id, **updates)
        if body.is_active is False:
            guard.sessions.invalidate_all_for_user(user_id)
        return UserInfo.from_user(user_store.get_by_id(user_id))

    return guard.protect(_update_user, guard.require_admin())(build_context(request))


@router.delete("/auth/users/{user_id}/sessions", response_model=CountResponse)
def invalidate_user_sessions(request: Request, user_id: int, guard: Guard = Depends(get_guard)):
    """Force-logout a user everywhere. Returns how many sessions were dropped."""

    def _invalidate_user_sessions(ctx: RequestContext):
        return CountResponse(count=guard.sessions.invalidate_all_for_user(user_id))

    return guard.protect(_invalidate_user_sessions, guard.require_admin())(build_context(request))


# ---------------------------------------------------------------------------
# Session housekeeping
# ---------------------------------------------------------------------------


@router.get("/auth/sessions/stats", response_model=SessionStatsResponse)
def session_stats(request: Request, guard: Guard = Depends(get_guard)):
    def _session_stats(ctx: RequestContext):
        stats = guard.sessions.statistics()
        return SessionStatsResponse(total=stats.total, active=stats.active, expired=stats.expired)

    return guard.protect(_session_stats, guard.require_admin())(build_context(request))


@router.post("/auth/sessions/cleanup", response_model=CountResponse)
def cleanup_sessions(request: Request, guard: Guard = Depends(get_guard)):
    def _cleanup_sessions(ctx: RequestContext):
        return CountResponse(count=guard.sessions.cleanup_expired())

    return guard.protect(_cleanup_sessions, guard.require_admin())(build_context(request))


@router.delete("/auth/rate-limits/{username}", response_model=MessageResponse)
def clear_rate_limit(request: Request, username: str, guard: Guard = Depends(get_guard)):
    """Reset the login attempt bucket for a username."""

    def _clear_rate_limit(ctx: RequestContext):
        guard.clear_login_rate_limit(username)
        return MessageResponse(message="Rate limit cleared.")

    return guard.protect(_clear_rate_limit, guard.require_admin())(build_context(request))


# ---------------------------------------------------------------------------
# Member-linked accounts
# ---------------------------------------------------------------------------


@router.get("/auth/members/{member_id}/account", response_model=UserInfo)
def member_account(
    request: Request,
    member_id: int,
    guard: Guard = Depends(get_guard),
    user_store: UserStore = Depends(get_user_store),
):
    """Return the account linked to a member profile.

    Pastors and admins may look up any member; a member only their own.
    """

    def _member_account(ctx: RequestContext):
        user = user_store.get_by_member_id(member_id)
        if user is None:
            raise AuthError(ErrorKind.USER_NOT_FOUND)
        return UserInfo.from_user(user)

    check = chain([guard.require_member(), guard.require_member_access("member_id")])
    return guard.protect(_member_account, check)(build_context(request))

"""
api/routes/v1/auth.py -- Login, session and self-service account endpoints.

Routes:
  POST /api/v1/auth/login     -- password login; opens a session, returns the bearer token
  POST /api/v1/auth/logout    -- invalidates the presented session
  POST /api/v1/auth/refresh   -- extends the presented session from now
  GET  /api/v1/auth/me        -- current user info
  PUT  /api/v1/auth/password  -- change own password (optionally drop every session, reissue a token)
  GET  /api/v1/auth/sessions  -- caller's active sessions

Every handler builds a RequestContext and runs its operation through
Guard.protect(); nothing here checks a token or a role by hand.

Security:
  POST /login is throttled twice: per submitted username (Guard.login_rate_limit,
  before credentials are looked at) and per client address (slowapi).
  authenticate_user() provides timing equalization -- use it, never inline.
  Cache-Control: no-store on every response that carries a token.

No `from __future__ import annotations` here: slowapi wraps login() and
FastAPI must still be able to resolve the wrapped signature's annotations.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordChangeRequest,
    PasswordChangeResponse,
    RefreshRequest,
    SessionInfo,
    TokenResponse,
    UserInfo,
)
from auth.dependencies import build_context, get_guard, get_user_store
from auth.errors import AuthError, ErrorKind
from auth.middleware import Guard, RequestContext
from auth.store import UserStore
from auth.tokens import authenticate_user, ensure_password_strength, hash_password, verify_password
from core.config import get_settings

# Auth policy:
# - POST /auth/login:     public, login_rate_limit("username") + per-address limit
# - POST /auth/logout:    authenticated (any live session)
# - POST /auth/refresh:   require_member
# - GET  /auth/me:        require_member
# - PUT  /auth/password:  require_member
# - GET  /auth/sessions:  require_member
router = APIRouter()

_settings = get_settings()


def _ttl(remember_me: bool) -> int:
    return _settings.remember_me_ttl_seconds if remember_me else _settings.session_ttl_seconds


def _no_store(model, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=model.model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(_settings.login_ip_rate_limit)
def login(
    request: Request,
    body: LoginRequest,
    guard: Guard = Depends(get_guard),
    user_store: UserStore = Depends(get_user_store),
):
    """Authenticate with username and password and open a session.

    Wrong username and wrong password produce the same invalid_credentials
    response. A successful login clears the username's attempt bucket.
    """

    def _login(ctx: RequestContext):
        user = authenticate_user(user_store, body.username, body.password)
        if user is None:
            raise AuthError(ErrorKind.INVALID_CREDENTIALS)
        guard.clear_login_rate_limit(body.username)
        ttl = _ttl(body.remember_me)
        session = guard.sessions.create(user.id, ttl)
        return _no_store(
            LoginResponse(
                token=session.token,
                expires_at=session.expires_at,
                expires_in=ttl,
                user=UserInfo.from_user(user),
            )
        )

    ctx = build_context(request, body.model_dump(include={"username", "remember_me"}))
    return guard.protect(_login, guard.login_rate_limit("username"))(ctx)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, guard: Guard = Depends(get_guard)):
    """Invalidate the session whose token was presented."""

    def _logout(ctx: RequestContext):
        guard.sessions.invalidate(ctx.token)
        return MessageResponse(message="Logged out.")

    return guard.protect(_logout, guard.authenticate)(build_context(request))


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(
    request: Request,
    body: Optional[RefreshRequest] = None,
    guard: Guard = Depends(get_guard),
):
    """Push the current session's expiry forward from now. The token is unchanged."""
    remember_me = body.remember_me if body else False

    def _refresh(ctx: RequestContext):
        session = guard.sessions.refresh(ctx.token, _ttl(remember_me))
        return _no_store(TokenResponse(token=session.token, expires_at=session.expires_at))

    return guard.protect(_refresh, guard.require_member())(build_context(request))


@router.get("/auth/me", response_model=UserInfo)
def me(request: Request, guard: Guard = Depends(get_guard)):
    """Return identity information for the currently authenticated user."""

    def _me(ctx: RequestContext):
        return UserInfo.from_user(ctx.user)

    return guard.protect(_me, guard.require_member())(build_context(request))


@router.put("/auth/password", response_model=PasswordChangeResponse)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    guard: Guard = Depends(get_guard),
    user_store: UserStore = Depends(get_user_store),
):
    """Change the caller's password.

    With invalidate_other_sessions every session of the user is dropped
    (the presented one included) and a fresh token is issued in the response.
    """

    def _change_password(ctx: RequestContext):
        user = ctx.user
        if not verify_password(body.current_password, user.hashed_password):
            raise AuthError(ErrorKind.INVALID_CREDENTIALS, "Current password is incorrect.")
        ensure_password_strength(body.new_password)
        if body.new_password == body.current_password:
            raise AuthError(ErrorKind.INVALID_INPUT, "New password must be different from current password.")
        user_store.update_password(user.id, hash_password(body.new_password))

        if not body.invalidate_other_sessions:
            return PasswordChangeResponse(message="Password changed successfully.")

        dropped = guard.sessions.invalidate_all_for_user(user.id)
        session = guard.sessions.create(user.id)
        return _no_store(
            PasswordChangeResponse(
                message=(
                    "Password changed successfully. All sessions, including this one, have been "
                    "invalidated. Use the new token from now on."
                ),
                new_token=session.token,
                expires_at=session.expires_at,
                invalidated_sessions=dropped,
            )
        )

    return guard.protect(_change_password, guard.require_member())(build_context(request))


@router.get("/auth/sessions", response_model=list[SessionInfo])
def list_sessions(request: Request, guard: Guard = Depends(get_guard)):
    """List the caller's unexpired sessions. The one in use is marked current."""

    def _list_sessions(ctx: RequestContext):
        current_id = ctx.session.id if ctx.session else None
        return [SessionInfo.from_session(s, current_id) for s in guard.sessions.list_for_user(ctx.user.id)]

    return guard.protect(_list_sessions, guard.require_member())(build_context(request))

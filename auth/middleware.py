"""
auth/middleware.py -- Check composition in front of protected operations.

A check is any callable taking a RequestContext and returning Allow or Deny.
Checks are composed with chain() and put in front of an operation with
Guard.protect(). The first Deny short-circuits; the operation never runs.

    guard = Guard(session_store, rate_limiter, responder=json_responder)
    handler = guard.protect(show_profile, chain([guard.require_member(),
                                                 guard.require_member_access()]))
    response = handler(ctx)

RequestContext is the one mutable object a request carries through its
checks. authenticate() fills in user/session/token; later checks (role,
ownership) and the operation itself read them from there.

Expected failures never raise out of a check. Any exception escaping an
operation is converted: AuthError to its kind's response, everything else
to a logged, generic 500. The responder collaborator (status, body) -> Any
decides what a response actually is; the default returns the pair unchanged.

Layer rule: no imports from api/ or from any web framework. The FastAPI
adapter lives in auth/dependencies.py.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Union

from auth.access import can_access_member_data, has_permission
from auth.errors import AuthError, ErrorKind
from auth.models import Role, Session, User
from auth.ratelimit import RateLimiter
from auth.sessions import SessionStore

logger = logging.getLogger("church.guard")

# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Allow:
    user: User | None = None


@dataclass(frozen=True)
class Deny:
    kind: ErrorKind
    message: str | None = None
    detail: str | None = None
    retry_after: int | None = None

    @property
    def status(self) -> int:
        return self.kind.status

    def body(self) -> dict:
        error: dict[str, Any] = {
            "code": self.kind.value,
            "message": self.message or self.kind.safe_message,
            "detail": self.detail,
        }
        if self.retry_after is not None:
            error["retry_after"] = self.retry_after
        return {"error": error}


AccessDecision = Union[Allow, Deny]

# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------


@dataclass
class RequestContext:
    """Everything a check may look at, plus what earlier checks resolved.

    headers is treated case-insensitively by extract_token(). path_args holds
    positional URL captures for routers that do not name them.
    """

    headers: Mapping[str, str] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)
    path_params: dict[str, Any] = field(default_factory=dict)
    path_args: tuple = ()
    client_host: str | None = None
    user: User | None = None
    session: Session | None = None
    token: str | None = None

    @property
    def authenticated(self) -> bool:
        return self.user is not None


Check = Callable[[RequestContext], AccessDecision]
Responder = Callable[[int, dict], Any]


def _tuple_responder(status: int, body: dict) -> tuple[int, dict]:
    return status, body


# ---------------------------------------------------------------------------
# Token extraction
# ---------------------------------------------------------------------------


def extract_token(headers: Mapping[str, str] | None) -> str | None:
    """Return the bearer token from an Authorization header, or None.

    No headers, no Authorization header, a different scheme, or an empty
    token all give None. The caller decides what that means.
    """
    if not headers:
        return None
    value = None
    for name, header_value in headers.items():
        if name.lower() == "authorization":
            value = header_value
            break
    if not value or not value.startswith("Bearer "):
        return None
    token = value[len("Bearer ") :].strip()
    return token or None


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


def chain(checks: Iterable[Check]) -> Check:
    """Run checks strictly in order against the same context; first Deny wins."""
    checks = list(checks)

    def run(ctx: RequestContext) -> AccessDecision:
        for check in checks:
            decision = check(ctx)
            if isinstance(decision, Deny):
                return decision
        return Allow(ctx.user)

    return run


def allow_all(ctx: RequestContext) -> AccessDecision:
    return Allow(ctx.user)


class Guard:
    """Builds checks over one SessionStore and one RateLimiter.

    Constructed once per process (see api/main.py lifespan) and shared by all
    requests; it holds no per-request state of its own.
    """

    def __init__(
        self,
        session_store: SessionStore,
        rate_limiter: RateLimiter,
        responder: Responder = _tuple_responder,
    ) -> None:
        self.sessions = session_store
        self.rate_limiter = rate_limiter
        self.responder = responder

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authenticate(self, ctx: RequestContext) -> AccessDecision:
        """Resolve the bearer token to a live session and its user.

        Unknown, expired and deactivated all come back as INVALID_TOKEN; the
        real reason is only logged.
        """
        token = extract_token(ctx.headers)
        if token is None:
            return Deny(ErrorKind.MISSING_TOKEN)
        try:
            session = self.sessions.find_by_token(token)
        except AuthError as exc:
            logger.info("Token rejected (%s)", exc.kind.value)
            return Deny(ErrorKind.INVALID_TOKEN)
        user = self.sessions.user_store.get_by_id(session.user_id)
        if user is None or not user.is_active:
            return Deny(ErrorKind.INVALID_TOKEN)
        ctx.user = user
        ctx.session = session
        ctx.token = token
        return Allow(user)

    def _ensure_authenticated(self, ctx: RequestContext) -> AccessDecision:
        if ctx.user is not None:
            return Allow(ctx.user)
        return self.authenticate(ctx)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def require_level(self, level: int, label: str | None = None) -> Check:
        """Pass iff the (authenticated) user's role level is at least level."""
        message = f"Access denied. {label} role required." if label else None

        def check(ctx: RequestContext) -> AccessDecision:
            decision = self._ensure_authenticated(ctx)
            if isinstance(decision, Deny):
                return decision
            if not has_permission(ctx.user.role, level):
                logger.info("user_id=%s lacks level %d", ctx.user.id, int(level))
                return Deny(ErrorKind.INSUFFICIENT_PERMISSIONS, message)
            return Allow(ctx.user)

        return check

    def require_role(self, min_role: Role | str) -> Check:
        role = Role.from_label(min_role)
        return self.require_level(role, role.label)

    def require_admin(self) -> Check:
        return self.require_role(Role.ADMIN)

    def require_pastor(self) -> Check:
        return self.require_role(Role.PASTOR)

    def require_member(self) -> Check:
        return self.require_role(Role.MEMBER)

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    def require_member_access(self, param: str = "member_id") -> Check:
        """Pass iff the user may access the member named by param.

        The target comes from ctx.params, then ctx.path_params, then the first
        positional path capture.
        """

        def check(ctx: RequestContext) -> AccessDecision:
            decision = self._ensure_authenticated(ctx)
            if isinstance(decision, Deny):
                return decision
            target = ctx.params.get(param)
            if target is None:
                target = ctx.path_params.get(param)
            if target is None and ctx.path_args:
                target = ctx.path_args[0]
            if target is None:
                return Deny(ErrorKind.INVALID_INPUT, "Member ID is required.")
            if not can_access_member_data(ctx.user, target):
                logger.info("user_id=%s denied member data access", ctx.user.id)
                return Deny(ErrorKind.ACCESS_DENIED)
            return Allow(ctx.user)

        return check

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    def rate_limit(
        self,
        identifier_func: Callable[[RequestContext], str | None],
        identifier_class: str = "client",
    ) -> Check:
        """Throttle on whatever identifier_func derives from the request.

        identifier_class names the kind of key in the 429 body ("username",
        "client"); the key value itself is never echoed. A request with no
        identifier is refused with INVALID_INPUT rather than counted.
        """

        def check(ctx: RequestContext) -> AccessDecision:
            identifier = identifier_func(ctx)
            if not identifier:
                return Deny(ErrorKind.INVALID_INPUT, f"A {identifier_class} identifier is required.", identifier_class)
            if self.rate_limiter.check(f"{identifier_class}:{identifier}"):
                return Allow(ctx.user)
            return Deny(
                ErrorKind.RATE_LIMIT_EXCEEDED,
                detail=identifier_class,
                retry_after=self.rate_limiter.window_seconds,
            )

        return check

    def login_rate_limit(self, key_field: str = "username") -> Check:
        """Throttle login attempts per submitted value of key_field.

        Runs before credentials are checked, so guessing usernames does not
        get around it.
        """
        return self.rate_limit(lambda ctx: _as_key(ctx.params.get(key_field)), key_field)

    def clear_login_rate_limit(self, value: str, key_field: str = "username") -> None:
        key = _as_key(value)
        if key:
            self.rate_limiter.clear(f"{key_field}:{key}")

    # ------------------------------------------------------------------
    # Protection
    # ------------------------------------------------------------------

    def respond_error(self, deny: Deny) -> Any:
        return self.responder(deny.status, deny.body())

    def protect(self, operation: Callable[[RequestContext], Any], check: Check = allow_all) -> Callable:
        """Wrap operation so it only runs after check allows.

        On Deny the responder is called and operation is not. Exceptions out
        of the check or the operation never reach the caller.
        """

        def handler(ctx: RequestContext) -> Any:
            try:
                decision = check(ctx)
                if isinstance(decision, Deny):
                    return self.respond_error(decision)
                return operation(ctx)
            except AuthError as exc:
                return self.respond_error(Deny(exc.kind, exc.message))
            except Exception:
                logger.exception("Unhandled error in protected operation %s", _name(operation))
                return self.respond_error(Deny(ErrorKind.INTERNAL_ERROR))

        handler.__name__ = _name(operation)
        return handler


def _as_key(value: object) -> str | None:
    if value is None:
        return None
    return str(value).strip().lower() or None


def _name(operation: Callable) -> str:
    return getattr(operation, "__name__", type(operation).__name__)

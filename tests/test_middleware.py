"""
tests/test_middleware.py -- Unit tests for auth/middleware.py.

The Guard here uses the default responder, so a denied handler returns a
plain (status, body) tuple and the tests can assert on it directly.

Covers:
  - extract_token header parsing
  - authenticate: missing / unknown / expired / deactivated / valid
  - role checks and the permission hierarchy
  - member ownership checks and target resolution order
  - chain() ordering and short-circuit
  - protect(): operation never runs on Deny; exception conversion
  - login rate limiting: 5 pass, 6th 429 naming the identifier class only
"""

from __future__ import annotations

import pytest

from auth.errors import AuthError, ErrorKind
from auth.middleware import Allow, Deny, RequestContext, allow_all, chain, extract_token
from auth.models import PermissionLevel, Role
from conftest import bearer, make_user


def _ctx(token: str | None = None, **kwargs) -> RequestContext:
    headers = bearer(token) if token else {}
    return RequestContext(headers=headers, **kwargs)


class Recorder:
    """Operation stand-in that remembers whether it ran."""

    def __init__(self, result="ok") -> None:
        self.calls = 0
        self.result = result
        self.__name__ = "recorder"

    def __call__(self, ctx: RequestContext):
        self.calls += 1
        return self.result


@pytest.fixture
def tokens(user_store, session_store) -> dict[str, str]:
    ids = {
        "admin": make_user(user_store, "admin", role=Role.ADMIN),
        "pastor": make_user(user_store, "pastor", role=Role.PASTOR),
        "member": make_user(user_store, "member", role=Role.MEMBER, member_id=42),
        "unlinked": make_user(user_store, "unlinked", role=Role.MEMBER),
    }
    return {who: session_store.create(uid).token for who, uid in ids.items()}


class TestExtractToken:
    @pytest.mark.parametrize(
        "headers, expected",
        [
            ({"Authorization": "Bearer abc123"}, "abc123"),
            ({"authorization": "Bearer abc123"}, "abc123"),
            ({"AUTHORIZATION": "Bearer  abc123 "}, "abc123"),
            ({"Authorization": "Basic abc123"}, None),
            ({"Authorization": "bearer abc123"}, None),
            ({"Authorization": "Bearer "}, None),
            ({"Authorization": ""}, None),
            ({"X-Other": "Bearer abc123"}, None),
            ({}, None),
            (None, None),
        ],
    )
    def test_extract(self, headers, expected) -> None:
        assert extract_token(headers) == expected


class TestAuthenticate:
    def test_missing_token(self, guard) -> None:
        decision = guard.authenticate(_ctx())
        assert decision == Deny(ErrorKind.MISSING_TOKEN)
        assert decision.status == 401

    def test_unknown_token(self, guard) -> None:
        decision = guard.authenticate(_ctx("not-a-real-token"))
        assert isinstance(decision, Deny)
        assert decision.kind == ErrorKind.INVALID_TOKEN

    def test_expired_token_is_indistinguishable(self, guard, user_store, session_store) -> None:
        uid = make_user(user_store, "alice")
        session = session_store.create(uid, ttl_seconds=-1)
        decision = guard.authenticate(_ctx(session.token))
        assert decision.kind == ErrorKind.INVALID_TOKEN
        assert decision.body()["error"]["message"] == ErrorKind.INVALID_TOKEN.safe_message

    def test_deactivated_user_token(self, guard, user_store, session_store) -> None:
        uid = make_user(user_store, "alice")
        session = session_store.create(uid)
        user_store.deactivate(uid)
        assert guard.authenticate(_ctx(session.token)).kind == ErrorKind.INVALID_TOKEN

    def test_valid_token_populates_context(self, guard, tokens) -> None:
        ctx = _ctx(tokens["pastor"])
        decision = guard.authenticate(ctx)
        assert isinstance(decision, Allow)
        assert decision.user.username == "pastor"
        assert ctx.user.role == Role.PASTOR
        assert ctx.session is not None
        assert ctx.token == tokens["pastor"]
        assert ctx.authenticated


class TestRoleChecks:
    def test_no_token_is_401_not_403(self, guard) -> None:
        decision = guard.require_admin()(_ctx())
        assert decision.kind == ErrorKind.MISSING_TOKEN

    @pytest.mark.parametrize(
        "who, check_name, allowed",
        [
            ("admin", "require_admin", True),
            ("admin", "require_pastor", True),
            ("admin", "require_member", True),
            ("pastor", "require_admin", False),
            ("pastor", "require_pastor", True),
            ("pastor", "require_member", True),
            ("member", "require_admin", False),
            ("member", "require_pastor", False),
            ("member", "require_member", True),
        ],
    )
    def test_hierarchy(self, guard, tokens, who: str, check_name: str, allowed: bool) -> None:
        decision = getattr(guard, check_name)()(_ctx(tokens[who]))
        if allowed:
            assert isinstance(decision, Allow)
        else:
            assert decision.kind == ErrorKind.INSUFFICIENT_PERMISSIONS
            assert decision.status == 403

    def test_require_role_by_label(self, guard, tokens) -> None:
        assert isinstance(guard.require_role("Pastor")(_ctx(tokens["pastor"])), Allow)

    def test_require_role_unknown_label_raises(self, guard) -> None:
        with pytest.raises(ValueError):
            guard.require_role("Deacon")

    def test_require_level(self, guard, tokens) -> None:
        check = guard.require_level(PermissionLevel.READ_ALL)
        assert isinstance(check(_ctx(tokens["pastor"])), Allow)
        assert check(_ctx(tokens["member"])).kind == ErrorKind.INSUFFICIENT_PERMISSIONS

    def test_denial_message_names_required_role(self, guard, tokens) -> None:
        decision = guard.require_admin()(_ctx(tokens["pastor"]))
        assert "Admin" in decision.body()["error"]["message"]


class TestMemberAccess:
    def test_own_record_from_params(self, guard, tokens) -> None:
        ctx = _ctx(tokens["member"], params={"member_id": "42"})
        assert isinstance(guard.require_member_access()(ctx), Allow)

    def test_other_record_denied(self, guard, tokens) -> None:
        ctx = _ctx(tokens["member"], params={"member_id": 7})
        decision = guard.require_member_access()(ctx)
        assert decision.kind == ErrorKind.ACCESS_DENIED
        assert decision.status == 403

    def test_path_params_used_when_params_missing(self, guard, tokens) -> None:
        ctx = _ctx(tokens["member"], path_params={"member_id": "42"})
        assert isinstance(guard.require_member_access()(ctx), Allow)

    def test_params_win_over_path_params(self, guard, tokens) -> None:
        ctx = _ctx(tokens["member"], params={"member_id": 7}, path_params={"member_id": 42})
        assert guard.require_member_access()(ctx).kind == ErrorKind.ACCESS_DENIED

    def test_positional_capture_fallback(self, guard, tokens) -> None:
        ctx = _ctx(tokens["member"], path_args=("42",))
        assert isinstance(guard.require_member_access()(ctx), Allow)

    def test_missing_target_is_invalid_input(self, guard, tokens) -> None:
        decision = guard.require_member_access()(_ctx(tokens["member"]))
        assert decision.kind == ErrorKind.INVALID_INPUT
        assert decision.status == 400

    def test_custom_param_name(self, guard, tokens) -> None:
        ctx = _ctx(tokens["member"], params={"id": 42})
        assert isinstance(guard.require_member_access("id")(ctx), Allow)

    def test_pastor_any_record(self, guard, tokens) -> None:
        ctx = _ctx(tokens["pastor"], params={"member_id": 7})
        assert isinstance(guard.require_member_access()(ctx), Allow)

    def test_unlinked_member_denied(self, guard, tokens) -> None:
        ctx = _ctx(tokens["unlinked"], params={"member_id": 42})
        assert guard.require_member_access()(ctx).kind == ErrorKind.ACCESS_DENIED


class TestChain:
    def test_runs_in_order_and_short_circuits(self) -> None:
        seen: list[str] = []

        def passing(ctx):
            seen.append("first")
            return Allow()

        def denying(ctx):
            seen.append("second")
            return Deny(ErrorKind.ACCESS_DENIED)

        def never(ctx):
            seen.append("third")
            return Allow()

        decision = chain([passing, denying, never])(RequestContext())
        assert decision.kind == ErrorKind.ACCESS_DENIED
        assert seen == ["first", "second"]

    def test_empty_chain_allows(self) -> None:
        assert isinstance(chain([])(RequestContext()), Allow)

    def test_shared_context(self, guard, tokens) -> None:
        ctx = _ctx(tokens["member"], params={"member_id": 42})
        decision = chain([guard.require_member(), guard.require_member_access()])(ctx)
        assert isinstance(decision, Allow)
        assert decision.user.username == "member"

    def test_chain_stops_before_ownership_without_token(self, guard) -> None:
        ctx = _ctx(params={"member_id": 42})
        decision = chain([guard.require_member(), guard.require_member_access()])(ctx)
        assert decision.kind == ErrorKind.MISSING_TOKEN


class TestProtect:
    def test_operation_never_runs_on_deny(self, guard) -> None:
        op = Recorder()
        status, body = guard.protect(op, guard.require_member())(_ctx())
        assert op.calls == 0
        assert status == 401
        assert body["error"]["code"] == "missing_token"

    def test_operation_runs_on_allow(self, guard, tokens) -> None:
        op = Recorder(result={"ok": True})
        assert guard.protect(op, guard.require_member())(_ctx(tokens["member"])) == {"ok": True}
        assert op.calls == 1

    def test_default_check_allows(self, guard) -> None:
        assert guard.protect(Recorder())(RequestContext()) == "ok"

    def test_auth_error_from_operation(self, guard) -> None:
        def op(ctx):
            raise AuthError(ErrorKind.USER_NOT_FOUND)

        status, body = guard.protect(op, allow_all)(RequestContext())
        assert status == 404
        assert body["error"]["code"] == "user_not_found"

    def test_unexpected_exception_becomes_500(self, guard, caplog) -> None:
        def op(ctx):
            raise RuntimeError("database exploded: secret details")

        status, body = guard.protect(op)(RequestContext())
        assert status == 500
        assert body["error"]["code"] == "internal_error"
        assert "secret details" not in str(body)
        assert "Unhandled error in protected operation op" in caplog.text

    def test_custom_responder(self, session_store, rate_limiter) -> None:
        from auth.middleware import Guard

        guard = Guard(session_store, rate_limiter, responder=lambda status, body: f"{status}:{body['error']['code']}")
        assert guard.protect(Recorder(), guard.require_member())(RequestContext()) == "401:missing_token"


class TestRateLimitChecks:
    def test_five_pass_sixth_is_429(self, guard) -> None:
        op = Recorder(result="logged-in")
        handler = guard.protect(op, guard.login_rate_limit("username"))
        results = [handler(RequestContext(params={"username": "alice"})) for _ in range(6)]
        assert results[:5] == ["logged-in"] * 5
        status, body = results[5]
        assert status == 429
        assert body["error"]["code"] == "rate_limit_exceeded"
        assert body["error"]["detail"] == "username"
        assert body["error"]["retry_after"] == 900
        assert "alice" not in str(body)
        assert op.calls == 5

    def test_usernames_normalized(self, guard) -> None:
        check = guard.login_rate_limit()
        for name in ["Alice", "alice", " ALICE ", "alice", "aLiCe"]:
            assert isinstance(check(RequestContext(params={"username": name})), Allow)
        assert check(RequestContext(params={"username": "alice"})).kind == ErrorKind.RATE_LIMIT_EXCEEDED

    def test_other_username_unaffected(self, guard) -> None:
        check = guard.login_rate_limit()
        for _ in range(6):
            check(RequestContext(params={"username": "alice"}))
        assert isinstance(check(RequestContext(params={"username": "bob"})), Allow)

    def test_clear_login_rate_limit(self, guard) -> None:
        check = guard.login_rate_limit()
        for _ in range(6):
            check(RequestContext(params={"username": "alice"}))
        guard.clear_login_rate_limit("ALICE")
        assert isinstance(check(RequestContext(params={"username": "alice"})), Allow)

    @pytest.mark.parametrize("params", [{}, {"username": ""}, {"username": "   "}])
    def test_missing_identifier_is_refused_without_counting(self, guard, params) -> None:
        check = guard.login_rate_limit()
        for _ in range(6):
            decision = check(RequestContext(params=dict(params)))
            assert decision.kind == ErrorKind.INVALID_INPUT
            assert decision.detail == "username"
        assert guard.rate_limiter.status("username:unknown").remaining == 5

    def test_custom_identifier(self, guard) -> None:
        check = guard.rate_limit(lambda ctx: ctx.client_host, "client")
        for _ in range(5):
            assert isinstance(check(RequestContext(client_host="10.0.0.1")), Allow)
        decision = check(RequestContext(client_host="10.0.0.1"))
        assert decision.detail == "client"
        assert isinstance(check(RequestContext(client_host="10.0.0.2")), Allow)

"""
tests/test_tokens.py -- Unit tests for auth/tokens.py.

Covers:
  - bcrypt hashing: salted, verifies, rejects wrong/empty/malformed input
  - verify_password never raises
  - session token generation and HMAC digest
  - password strength policy
  - authenticate_user: success, unknown user, wrong password, lockout
"""

from __future__ import annotations

import pytest

from auth.errors import AuthError, ErrorKind
from auth.models import Role
from auth.tokens import (
    authenticate_user,
    ensure_password_strength,
    generate_token,
    hash_password,
    hash_token,
    validate_password_strength,
    verify_password,
)
from core.config import get_settings
from conftest import make_user


class TestPasswordHashing:
    def test_hash_then_verify(self) -> None:
        hashed = hash_password("Correct1Horse")
        assert verify_password("Correct1Horse", hashed)

    def test_wrong_password_does_not_verify(self) -> None:
        hashed = hash_password("Correct1Horse")
        assert not verify_password("Battery1Staple", hashed)

    def test_hashes_are_salted(self) -> None:
        """Two hashes of the same input differ, and both verify."""
        first = hash_password("SamePassw0rd")
        second = hash_password("SamePassw0rd")
        assert first != second
        assert verify_password("SamePassw0rd", first)
        assert verify_password("SamePassw0rd", second)

    def test_hash_uses_configured_rounds(self) -> None:
        hashed = hash_password("Rounds1Check")
        assert hashed.startswith(f"$2b${get_settings().bcrypt_rounds:02d}$")

    @pytest.mark.parametrize("bad", ["", None, 12345])
    def test_hash_rejects_empty_or_non_string(self, bad) -> None:
        with pytest.raises(AuthError) as exc_info:
            hash_password(bad)
        assert exc_info.value.kind == ErrorKind.INVALID_INPUT

    def test_very_long_password_is_accepted(self) -> None:
        long_password = "Aa1" + "x" * 200
        hashed = hash_password(long_password)
        assert verify_password(long_password, hashed)


class TestVerifyPasswordNeverRaises:
    @pytest.mark.parametrize(
        "plain, hashed",
        [
            ("anything", None),
            ("anything", ""),
            ("anything", "not-a-bcrypt-hash"),
            (None, "$2b$04$invalidinvalidinvalidinvalidinvalidinvalidinvalidinv"),
            (None, None),
        ],
    )
    def test_returns_false(self, plain, hashed) -> None:
        assert verify_password(plain, hashed) is False


class TestSessionTokens:
    def test_token_is_url_safe_and_long(self) -> None:
        token = generate_token()
        # 32 random bytes base64url-encoded without padding
        assert len(token) >= 43
        assert all(c.isalnum() or c in "-_" for c in token)

    def test_tokens_are_unique(self) -> None:
        assert len({generate_token() for _ in range(200)}) == 200

    def test_hash_token_is_deterministic_hex(self) -> None:
        token = generate_token()
        digest = hash_token(token)
        assert digest == hash_token(token)
        assert len(digest) == 64
        int(digest, 16)

    def test_hash_token_differs_from_token(self) -> None:
        token = generate_token()
        assert hash_token(token) != token
        assert hash_token(token) != hash_token(generate_token())


class TestPasswordStrength:
    def test_strong_password_passes(self) -> None:
        assert validate_password_strength("Str0ngEnough") == (True, None)

    @pytest.mark.parametrize(
        "password, fragment",
        [
            ("Sh0rt", "at least 8"),
            ("alllower1case", "uppercase"),
            ("ALLUPPER1CASE", "lowercase"),
            ("NoDigitsHere", "digit"),
        ],
    )
    def test_policy_reasons(self, password: str, fragment: str) -> None:
        ok, reason = validate_password_strength(password)
        assert ok is False
        assert fragment in reason

    @pytest.mark.parametrize("bad", [None, 12345678, b"Bytes1Password"])
    def test_non_string_fails_closed(self, bad) -> None:
        ok, reason = validate_password_strength(bad)
        assert ok is False
        assert reason

    def test_ensure_raises_weak_password_with_reason(self) -> None:
        with pytest.raises(AuthError) as exc_info:
            ensure_password_strength("weak")
        assert exc_info.value.kind == ErrorKind.WEAK_PASSWORD
        assert "at least 8" in exc_info.value.message


class TestAuthenticateUser:
    def test_success_returns_user_and_stamps_last_login(self, user_store) -> None:
        uid = make_user(user_store, "alice", "AlicePass1")
        user = authenticate_user(user_store, "alice", "AlicePass1")
        assert user is not None
        assert user.id == uid
        assert user.last_login is not None
        assert user.failed_login_attempts == 0

    def test_unknown_user_returns_none(self, user_store) -> None:
        assert authenticate_user(user_store, "nobody", "Whatever1") is None

    def test_empty_username_returns_none(self, user_store) -> None:
        assert authenticate_user(user_store, "", "Whatever1") is None

    def test_wrong_password_counts_failure(self, user_store) -> None:
        uid = make_user(user_store, "bob", "BobPassw0rd")
        assert authenticate_user(user_store, "bob", "wrong") is None
        assert user_store.get_by_id(uid).failed_login_attempts == 1

    def test_success_resets_failure_counter(self, user_store) -> None:
        uid = make_user(user_store, "carol", "CarolPass1")
        authenticate_user(user_store, "carol", "wrong")
        authenticate_user(user_store, "carol", "wrong")
        assert authenticate_user(user_store, "carol", "CarolPass1") is not None
        assert user_store.get_by_id(uid).failed_login_attempts == 0

    def test_inactive_user_cannot_log_in(self, user_store) -> None:
        make_user(user_store, "dave", "DavePass12", is_active=False)
        assert authenticate_user(user_store, "dave", "DavePass12") is None

    def test_lockout_deactivates_after_threshold(self, user_store) -> None:
        uid = make_user(user_store, "erin", "ErinPass12", Role.PASTOR)
        threshold = get_settings().lockout_threshold
        for _ in range(threshold):
            assert authenticate_user(user_store, "erin", "wrong") is None
        locked = user_store.get_by_id(uid)
        assert locked.is_active is False
        # The right password no longer helps once locked.
        assert authenticate_user(user_store, "erin", "ErinPass12") is None

"""
auth/tokens.py -- Password hashing, session token, and password policy utilities.

Security design decisions:
  Passwords: bcrypt, used directly (no passlib wrapper). Rounds come from
       Settings.bcrypt_rounds so the work factor can be raised over time;
       existing hashes keep verifying because the cost is embedded in them.
       The _DUMMY_HASH constant enables timing equalization in
       authenticate_user() so response time does not reveal whether a
       username exists.

  Session tokens: secrets.token_urlsafe(32) gives 256 bits of entropy from the
       OS CSPRNG. Tokens are stored as HMAC-SHA256(SECRET_KEY, token) so the
       store can do an O(1) lookup while a copy of the DB yields no usable
       bearer tokens. bcrypt's slowness is unnecessary for 256-bit secrets.

  verify_password() never raises. A malformed hash, a None password or a None
  hash all come back as False, and the bcrypt call is still made against the
  dummy hash so that the failure costs the same as a wrong password.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
from typing import TYPE_CHECKING

import bcrypt

from auth.errors import AuthError, ErrorKind
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("church.auth")

_settings = get_settings()

_TOKEN_BYTES = 32

# bcrypt only reads the first 72 bytes; bcrypt>=5 raises instead of truncating.
_BCRYPT_MAX_BYTES = 72


def _encode(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a salted bcrypt hash of the given plaintext password.

    Raises AuthError(INVALID_INPUT) for anything that is not a non-empty str.
    Input is cut at 72 bytes, the most bcrypt will read. The API layer caps
    password length so that only matters for unusual multi-byte input.
    """
    if not isinstance(plain, str) or not plain:
        raise AuthError(ErrorKind.INVALID_INPUT, "Password must be a non-empty string.")
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(_encode(plain), salt).decode("utf-8")


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("church_timing_dummy")


def verify_password(plain: str | None, hashed: str | None) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    if not isinstance(plain, str):
        plain = ""
    if not isinstance(hashed, str) or not hashed:
        bcrypt.checkpw(_encode(plain), _DUMMY_HASH.encode("utf-8"))
        return False
    try:
        return bcrypt.checkpw(_encode(plain), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash ("Invalid salt") -- burn the same work as a real check.
        bcrypt.checkpw(_encode(plain), _DUMMY_HASH.encode("utf-8"))
        return False


# ---------------------------------------------------------------------------
# Password policy
# ---------------------------------------------------------------------------

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")
_SPECIAL = re.compile(r"[^A-Za-z0-9]")


def validate_password_strength(password: object) -> tuple[bool, str | None]:
    """Check a candidate password against the configured policy.

    Returns (True, None) when acceptable, otherwise (False, reason). The reason
    is safe to show to the user. Non-string input is rejected.
    """
    if not isinstance(password, str):
        return False, "Password must be a string"
    if len(password) < _settings.password_min_length:
        return False, f"Password must be at least {_settings.password_min_length} characters long"
    if _settings.password_require_uppercase and not _UPPER.search(password):
        return False, "Password must contain at least one uppercase letter"
    if _settings.password_require_lowercase and not _LOWER.search(password):
        return False, "Password must contain at least one lowercase letter"
    if _settings.password_require_digit and not _DIGIT.search(password):
        return False, "Password must contain at least one digit"
    if _settings.password_require_special and not _SPECIAL.search(password):
        return False, "Password must contain at least one special character"
    return True, None


def ensure_password_strength(password: object) -> None:
    """Raise AuthError(WEAK_PASSWORD) if validate_password_strength() rejects."""
    ok, reason = validate_password_strength(password)
    if not ok:
        raise AuthError(ErrorKind.WEAK_PASSWORD, reason)


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


def generate_token() -> str:
    """Return a fresh URL-safe bearer token (32 random bytes, base64url)."""
    return secrets.token_urlsafe(_TOKEN_BYTES)


def hash_token(raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string.

    Deterministic, so the session table can be indexed on it.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# User authentication (constant-time)
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, username: str, password: str) -> User | None:
    """Authenticate a username/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown username: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    A wrong password for an existing account counts toward the lockout
    threshold. A correct password for a deactivated account still fails, and
    does not count. Returns the User on success, None on any failure.
    """
    user = store.get_by_username(username) if username else None
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        if user.is_active:
            attempts = store.record_failed_login(user.id, _settings.lockout_threshold)
            logger.info("Failed login for user_id=%s (attempt %d)", user.id, attempts)
        return None
    if not user.is_active:
        return None
    store.record_successful_login(user.id)
    return store.get_by_id(user.id)

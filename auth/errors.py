"""
auth/errors.py -- Error kinds and the AuthError exception.

Every expected failure in the auth core is described by an ErrorKind. Stores
and the credential verifier raise AuthError(kind); checks in auth/middleware.py
turn those into Deny results instead of raising. Only unexpected exceptions
(storage unavailable, programming errors) escape as something other than
AuthError, and Guard.protect() converts those into a generic 500.

Messages here are the only text that reaches a client. They are
coarse: they never say whether a username exists, or whether a token was
well-formed-but-expired versus simply unknown.

Layer rule: stdlib only.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    MISSING_TOKEN = "missing_token"
    INVALID_TOKEN = "invalid_token"
    EXPIRED = "expired"
    USER_DEACTIVATED = "user_deactivated"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
    ACCESS_DENIED = "access_denied"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    INVALID_CREDENTIALS = "invalid_credentials"
    WEAK_PASSWORD = "weak_password"
    USER_NOT_FOUND = "user_not_found"
    INVALID_INPUT = "invalid_input"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INTERNAL_ERROR = "internal_error"

    @property
    def status(self) -> int:
        return _STATUS[self]

    @property
    def safe_message(self) -> str:
        return _MESSAGES[self]


_STATUS: dict[ErrorKind, int] = {
    ErrorKind.MISSING_TOKEN: 401,
    ErrorKind.INVALID_TOKEN: 401,
    ErrorKind.EXPIRED: 401,
    ErrorKind.USER_DEACTIVATED: 401,
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.INSUFFICIENT_PERMISSIONS: 403,
    ErrorKind.ACCESS_DENIED: 403,
    ErrorKind.RATE_LIMIT_EXCEEDED: 429,
    ErrorKind.WEAK_PASSWORD: 400,
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.USER_NOT_FOUND: 404,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INTERNAL_ERROR: 500,
}

# Expired and deactivated sessions share the invalid-token wording.
_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.MISSING_TOKEN: "Authentication token is required.",
    ErrorKind.INVALID_TOKEN: "Invalid or expired authentication token.",
    ErrorKind.EXPIRED: "Invalid or expired authentication token.",
    ErrorKind.USER_DEACTIVATED: "Invalid or expired authentication token.",
    ErrorKind.INVALID_CREDENTIALS: "Invalid username or password.",
    ErrorKind.INSUFFICIENT_PERMISSIONS: "Insufficient permissions.",
    ErrorKind.ACCESS_DENIED: "You can only access your own member data.",
    ErrorKind.RATE_LIMIT_EXCEEDED: "Too many attempts. Please try again later.",
    ErrorKind.WEAK_PASSWORD: "Password does not meet the strength policy.",
    ErrorKind.INVALID_INPUT: "Invalid input.",
    ErrorKind.USER_NOT_FOUND: "User not found.",
    ErrorKind.NOT_FOUND: "Not found.",
    ErrorKind.CONFLICT: "A user with that username or email already exists.",
    ErrorKind.INTERNAL_ERROR: "An unexpected error occurred.",
}


class AuthError(Exception):
    """An expected auth failure carrying its ErrorKind.

    message is client-safe text. It defaults to kind.safe_message; pass a more
    specific one only when it leaks nothing (e.g. a password policy reason).
    """

    def __init__(self, kind: ErrorKind, message: str | None = None) -> None:
        self.kind = kind
        self.message = message or kind.safe_message
        super().__init__(f"{kind.value}: {self.message}")

    @property
    def status(self) -> int:
        return self.kind.status

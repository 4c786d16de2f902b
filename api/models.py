"""
API request and response models for the auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

Username and email formats are enforced here, at the edge, so the stores can
assume well-formed values.
"""

from enum import Enum
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from auth.models import Session, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[A-Za-z0-9_-]+$"
EMAIL_PATTERN = r"^[\w.+-]+@[\w.-]+\.\w+$"

# bcrypt reads at most 72 bytes; keep ordinary input well under that.
PASSWORD_MAX_LENGTH = 72

# Identifiers are trimmed; passwords are taken byte-exact.
Stripped = Annotated[str, StringConstraints(strip_whitespace=True)]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    Admin = "Admin"
    Pastor = "Pastor"
    Member = "Member"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    username: Stripped = Field(min_length=1, max_length=50)
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)
    remember_me: bool = False


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh (optional)."""

    remember_me: bool = False


class PasswordChangeRequest(BaseModel):
    """Request body for PUT /api/v1/auth/password.

    Strength is checked by the handler, not here, so a weak password comes back
    as weak_password with the policy reason instead of a generic 422.
    """

    current_password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)
    new_password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)
    invalidate_other_sessions: bool = False


class UserCreate(BaseModel):
    """Request body for POST /api/v1/auth/users (admin only)."""

    username: Stripped = Field(min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    email: Stripped = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)
    role: RoleEnum = RoleEnum.Member
    member_id: Optional[int] = Field(default=None, ge=1)
    password_reset_required: bool = False


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{id}. All fields optional."""

    role: Optional[RoleEnum] = None
    is_active: Optional[bool] = None
    member_id: Optional[int] = Field(default=None, ge=1)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserInfo(BaseModel):
    """Public view of an account. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    role: str
    member_id: Optional[int] = None
    is_active: bool
    password_reset_required: bool = False
    last_login: Optional[str] = None
    created_at: str = ""

    @classmethod
    def from_user(cls, user: User) -> "UserInfo":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            role=user.role.label,
            member_id=user.member_id,
            is_active=user.is_active,
            password_reset_required=user.password_reset_required,
            last_login=user.last_login,
            created_at=user.created_at or "",
        )


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/login. The token is shown once."""

    model_config = ConfigDict(frozen=True)

    token: str
    token_type: str = "bearer"
    expires_at: str
    expires_in: int
    user: UserInfo


class TokenResponse(BaseModel):
    """Response for POST /api/v1/auth/refresh."""

    model_config = ConfigDict(frozen=True)

    token: str
    expires_at: str


class PasswordChangeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    new_token: Optional[str] = None
    expires_at: Optional[str] = None
    invalidated_sessions: int = 0


class SessionInfo(BaseModel):
    """One of the caller's sessions. Raw tokens are never listed."""

    model_config = ConfigDict(frozen=True)

    id: int
    created_at: str
    expires_at: str
    last_accessed: Optional[str] = None
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, current_id: Optional[int] = None) -> "SessionInfo":
        return cls(
            id=session.id,
            created_at=session.created_at or "",
            expires_at=session.expires_at,
            last_accessed=session.last_accessed,
            current=session.id == current_id,
        )


class SessionStatsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    active: int
    expired: int


class CountResponse(BaseModel):
    """Result of a bulk session operation."""

    model_config = ConfigDict(frozen=True)

    count: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    retry_after: Optional[int] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)

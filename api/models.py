"""
API request and response models for the auth service REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
UserResponse is the only shape a user record leaves the service in -- it has
no field for the password hash.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import UserRecord

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[A-Za-z0-9_.-]{3,64}$"
# Deliberately loose: one @, something on each side, a dot in the domain.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
ROLE_PATTERN = r"^[a-z][a-z0-9_:-]{0,63}$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(pattern=USERNAME_PATTERN)
    email: str = Field(max_length=320, pattern=EMAIL_PATTERN)
    # max_length counts characters; hash_password enforces the 72-byte UTF-8 limit.
    password: str = Field(min_length=8, max_length=72)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login. identifier is a username or an email."""

    identifier: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=4096)


class LogoutRequest(BaseModel):
    """Optional body for POST /api/v1/auth/logout.

    The access token comes from the Authorization header. Sending the refresh
    token here revokes it in the same call.
    """

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class IntrospectRequest(BaseModel):
    token: str = Field(min_length=1, max_length=4096)


class UserCreate(BaseModel):
    """Request body for POST /api/v1/auth/users (admin)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(pattern=USERNAME_PATTERN)
    email: str = Field(max_length=320, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=8, max_length=72)
    roles: list[str] = Field(default_factory=lambda: ["user"], max_length=32)
    bucket_id: Optional[str] = Field(default=None, min_length=1, max_length=64)


class UserStatusPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{id}. Omitted fields are left unchanged."""

    enabled: Optional[bool] = None
    account_non_expired: Optional[bool] = None
    account_non_locked: Optional[bool] = None
    credentials_non_expired: Optional[bool] = None


class RoleGrant(BaseModel):
    role: str = Field(pattern=ROLE_PATTERN)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenPairResponse(BaseModel):
    """Response for login and refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int


class IntrospectResponse(BaseModel):
    """Response for POST /api/v1/auth/introspect.

    An invalid token yields active=False and nothing else -- the reason is not
    disclosed.
    """

    model_config = ConfigDict(frozen=True)

    active: bool
    sub: Optional[str] = None
    roles: Optional[list[str]] = None
    token_type: Optional[str] = None
    exp: Optional[datetime] = None
    remaining_seconds: Optional[int] = None


class UserResponse(BaseModel):
    """Public projection of a user record."""

    model_config = ConfigDict(frozen=True)

    id: str
    username: str
    email: str
    roles: list[str]
    enabled: bool
    bucket_id: Optional[str] = None
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, user: UserRecord) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            roles=sorted(user.roles),
            enabled=user.enabled,
            bucket_id=user.bucket_id,
            created_at=user.created_at,
            last_login_at=user.last_login_at,
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)

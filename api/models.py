"""
API request and response models for tokenward REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth import permissions
from auth.models import AuthTokens, TokenValidation, User, UserSession

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: one "@", no whitespace, a dot in the domain part.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    username: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=1, max_length=100)
    device_info: Optional[str] = Field(default=None, max_length=255)


class ExternalLoginRequest(BaseModel):
    """Optional body for POST /api/v1/auth/external-login.

    The identity itself never comes from the body; it is read from the header
    set by the trusted proxy.
    """

    device_info: Optional[str] = Field(default=None, max_length=255)


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Password/confirmation equality is checked by the service, not here, so
    the mismatch surfaces as a typed failure rather than a 422.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=100)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=6, max_length=100)
    confirm_password: str = Field(max_length=100)
    device_info: Optional[str] = Field(default=None, max_length=255)


class RefreshTokenRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh-token.

    refresh_token may be omitted when the client relies on the httpOnly cookie.
    """

    refresh_token: Optional[str] = Field(default=None, max_length=512)
    device_info: Optional[str] = Field(default=None, max_length=255)


class RevokeTokenRequest(BaseModel):
    """Request body for POST /api/v1/auth/revoke-token."""

    token: Optional[str] = Field(default=None, max_length=512)
    reason: Optional[str] = Field(default=None, max_length=100)


class ChangePermissionsRequest(BaseModel):
    """Request body for PUT /api/v1/users/{id}/permissions."""

    permissions: int = Field(ge=0, le=permissions.MAX_MASK)
    reason: Optional[str] = Field(default=None, max_length=255)


class BulkPermissionsRequest(BaseModel):
    """Request body for PATCH /api/v1/users/bulk-permissions."""

    user_ids: list[int] = Field(min_length=1, max_length=100)
    permissions: int = Field(ge=0, le=permissions.MAX_MASK)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a principal. Never carries a password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    permissions: int
    permission_names: list[str]
    is_active: bool
    auth_type: str
    domain: Optional[str] = None
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    active_session_count: int = 0

    @classmethod
    def from_user(cls, user: User, active_session_count: int = 0) -> "UserResponse":
        """Build a UserResponse from a domain User (Factory Method)."""
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            permissions=user.permissions,
            permission_names=permissions.names_of(user.permissions),
            is_active=user.is_active,
            auth_type=user.auth_type.value,
            domain=user.domain,
            created_at=user.created_at,
            last_login=user.last_login,
            active_session_count=active_session_count,
        )


class AuthResponse(BaseModel):
    """Response for login, external login, register and refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    refresh_expires_at: datetime
    session_id: str
    auth_type: str
    user: UserResponse
    granted_permissions: list[str]

    @classmethod
    def from_tokens(cls, tokens: AuthTokens) -> "AuthResponse":
        return cls(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.expires_at,
            refresh_expires_at=tokens.refresh_expires_at,
            session_id=tokens.session_id,
            auth_type=tokens.user.auth_type.value,
            user=UserResponse.from_user(tokens.user),
            granted_permissions=tokens.permission_names,
        )


class TokenValidationResponse(BaseModel):
    """Response for GET /api/v1/auth/validate-token."""

    model_config = ConfigDict(frozen=True)

    is_valid: bool
    user_id: Optional[int] = None
    permissions: int = 0
    auth_type: Optional[str] = None
    token_version: Optional[int] = None
    expires_at: Optional[datetime] = None
    error: Optional[str] = None

    @classmethod
    def from_validation(cls, validation: TokenValidation) -> "TokenValidationResponse":
        return cls(
            is_valid=validation.is_valid,
            user_id=validation.user_id,
            permissions=validation.permissions,
            auth_type=validation.auth_type.value if validation.auth_type else None,
            token_version=validation.token_version,
            expires_at=validation.expires_at,
            error=validation.error,
        )


class SessionResponse(BaseModel):
    """One row in GET /api/v1/auth/sessions."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    ip_address: str
    user_agent: Optional[str] = None
    device_info: Optional[str] = None
    auth_type: str
    created_at: Optional[datetime] = None
    last_access_at: Optional[datetime] = None

    @classmethod
    def from_session(cls, session: UserSession) -> "SessionResponse":
        return cls(
            session_id=session.session_id,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            device_info=session.device_info,
            auth_type=session.auth_type.value,
            created_at=session.created_at,
            last_access_at=session.last_access_at,
        )


class PermissionInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    value: int


class PermissionCatalogResponse(BaseModel):
    """Response for GET /api/v1/auth/permissions."""

    model_config = ConfigDict(frozen=True)

    primitives: list[PermissionInfo]
    roles: list[PermissionInfo]


class MessageResponse(BaseModel):
    """Plain confirmation for state-changing endpoints with no other payload."""

    model_config = ConfigDict(frozen=True)

    message: str


class BulkPermissionsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    updated: int


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
    database: str = "ok"

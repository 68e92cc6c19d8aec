"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
the domain shape; stores and the service do the work.

All datetimes are timezone-aware UTC. Stores convert to and from the
fixed-width ISO strings kept in SQL.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from auth import permissions


class AuthType(str, Enum):
    """How a principal proves identity.

    password -- local username/password only.
    external -- identity asserted by a trusted upstream (negotiate/Kerberos
                proxy). Password login is rejected for these accounts.
    hybrid   -- both paths allowed.
    """

    PASSWORD = "password"
    EXTERNAL = "external"
    HYBRID = "hybrid"


@dataclass
class User:
    """A principal. Never hard-deleted; is_active=False is the terminal state.

    token_version only ever increases. Every access token embeds the value
    current at issue time; bumping it invalidates all earlier access tokens.
    """

    username: str
    email: str
    id: int | None = None
    hashed_password: str | None = None  # None = external-only principal
    permissions: int = permissions.NONE
    is_active: bool = True
    auth_type: AuthType = AuthType.PASSWORD
    token_version: int = 0
    external_identity: str | None = None  # "DOMAIN\\user"
    domain: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_login: datetime | None = None

    def has_permission(self, capability: int) -> bool:
        return permissions.has(self.permissions, capability)


@dataclass
class RefreshToken:
    """A long-lived opaque credential. Revocation is one-way."""

    token: str
    user_id: int
    expires_at: datetime
    created_at: datetime
    created_by_ip: str = ""
    id: int | None = None
    revoked_at: datetime | None = None
    revoked_by_ip: str | None = None
    replaced_by_token: str | None = None
    auth_type: AuthType = AuthType.PASSWORD
    user_agent: str | None = None
    device_info: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_active(self, now: datetime) -> bool:
        return self.revoked_at is None and not self.is_expired(now)


@dataclass
class BlacklistedToken:
    """A revoked access token, keyed by its jti.

    expires_at is copied from the access token: the entry never needs to
    outlive the token it blocks.
    """

    token_id: str
    expires_at: datetime
    id: int | None = None
    blacklisted_at: datetime | None = None
    reason: str | None = None
    user_id: int | None = None
    ip_address: str | None = None


@dataclass
class UserSession:
    user_id: int
    session_id: str
    ip_address: str = ""
    id: int | None = None
    user_agent: str | None = None
    device_info: str | None = None
    auth_type: AuthType = AuthType.PASSWORD
    created_at: datetime | None = None
    last_access_at: datetime | None = None
    is_active: bool = True


@dataclass(frozen=True)
class RequestContext:
    """Caller metadata for one request, passed explicitly into every service call.

    Built by the HTTP layer (auth.dependencies.request_context); the service
    never reads request state on its own.
    """

    ip_address: str = "unknown"
    user_agent: str | None = None
    bearer_token: str | None = None
    device_info: str | None = None
    is_secure: bool = False


@dataclass(frozen=True)
class TokenClaims:
    """Verified claims of an access token."""

    token_id: str
    user_id: int
    username: str
    permissions: int
    token_version: int
    auth_type: AuthType
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenValidation:
    """Outcome of AuthService.validate(). error is set only when is_valid is False."""

    is_valid: bool
    error: str | None = None
    user_id: int | None = None
    permissions: int = permissions.NONE
    auth_type: AuthType | None = None
    token_version: int | None = None
    expires_at: datetime | None = None
    token_id: str | None = None


@dataclass(frozen=True)
class AuthTokens:
    """Successful authentication result returned by login/register/refresh."""

    access_token: str
    refresh_token: str
    expires_at: datetime
    refresh_expires_at: datetime
    session_id: str
    user: User
    permission_names: list[str] = field(default_factory=list)

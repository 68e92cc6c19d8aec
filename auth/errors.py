"""
auth/errors.py -- Failure taxonomy for the authentication core.

Business rejections (bad credentials, token not found, ...) are returned to
the caller as AuthFailure values, never raised. Only backing-store failures
are exceptions: StoreUnavailableError carries no user-facing detail, the
original exception is chained for operational logging.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class FailureReason(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_INACTIVE = "account_inactive"
    WRONG_AUTH_TYPE = "wrong_auth_type"
    INVALID_IDENTITY = "invalid_identity"
    DUPLICATE_IDENTITY = "duplicate_identity"
    PASSWORD_MISMATCH = "password_mismatch"
    TOKEN_NOT_FOUND = "token_not_found"
    TOKEN_INACTIVE = "token_inactive"
    PERMISSION_DENIED = "permission_denied"


# Failures that must surface to end users with one uniform message so the
# response does not reveal which check rejected the credentials.
CREDENTIAL_FAILURES = frozenset(
    {
        FailureReason.INVALID_CREDENTIALS,
        FailureReason.ACCOUNT_INACTIVE,
    }
)


@dataclass(frozen=True)
class AuthFailure:
    """A typed business rejection. message is safe to show to the caller."""

    reason: FailureReason
    message: str

    @property
    def code(self) -> str:
        return self.reason.value


class StoreUnavailableError(Exception):
    """Raised when a backing store fails (connection, lock, schema error)."""

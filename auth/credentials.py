"""
auth/credentials.py -- Password hashing and credential verification.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). bcrypt's cost factor makes
       brute force expensive and checkpw() compares in constant time. The
       _DUMMY_HASH constant enables timing equalization in verify() so
       response time does not reveal whether a username exists [C1].

  Anti-enumeration: unknown username and wrong password both produce
       INVALID_CREDENTIALS with the same message. Inactive accounts are
       reported as ACCOUNT_INACTIVE internally (for logs) but only after the
       password matched, and the HTTP layer folds it into the same 401.

  External identity: resolve_or_provision() is a read that may INSERT. It is
       named for that side effect on purpose; nothing else in this module
       writes.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging

import bcrypt
from sqlalchemy.exc import IntegrityError

from auth import permissions
from auth.errors import AuthFailure, FailureReason
from auth.models import AuthType, User
from auth.store import UserStore

logger = logging.getLogger("tokenward.auth")

_INVALID_CREDENTIALS = AuthFailure(FailureReason.INVALID_CREDENTIALS, "Invalid username or password.")

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer
    caps passwords at 100 characters; multi-byte input past the cap is the
    only case that reaches truncation.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the database -- treat as a mismatch.
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("tokenward_timing_dummy")


# ---------------------------------------------------------------------------
# External identity parsing
# ---------------------------------------------------------------------------


def parse_external_identity(raw: str | None, default_domain: str) -> tuple[str, str] | None:
    """Normalise an asserted identity to ("DOMAIN\\user", "DOMAIN").

    Accepts "DOMAIN\\user" or a bare "user" (default_domain is prepended).
    Returns None for empty or malformed input: blank parts, more than one
    separator, or whitespace/control characters inside the identity.
    """
    if raw is None:
        return None
    value = raw.strip()
    if not value or any(ch.isspace() or not ch.isprintable() for ch in value):
        return None
    parts = value.split("\\")
    if len(parts) == 1:
        domain, name = default_domain, parts[0]
    elif len(parts) == 2:
        domain, name = parts
    else:
        return None
    if not domain or not name or "@" in domain:
        return None
    return f"{domain}\\{name}", domain


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------


class CredentialVerifier:
    """Checks secrets and asserted identities against stored principals."""

    def __init__(self, user_store: UserStore, default_permissions: int = permissions.DEFAULT_PERMISSIONS) -> None:
        self._users = user_store
        self._default_permissions = default_permissions

    def verify(self, username: str, password: str) -> User | AuthFailure:
        """Authenticate a local username/password login with timing equalization.

        Always runs bcrypt whether or not the user exists [C1]:
        - Unknown username: bcrypt runs against _DUMMY_HASH (same cost)
        - External-only account: bcrypt runs against _DUMMY_HASH, then WRONG_AUTH_TYPE
        - Wrong password: bcrypt runs against the real hash (same cost)
        """
        user = self._users.get_by_username(username)
        if user is None:
            verify_password(password, _DUMMY_HASH)
            return _INVALID_CREDENTIALS
        if user.auth_type == AuthType.EXTERNAL:
            verify_password(password, _DUMMY_HASH)
            return AuthFailure(
                FailureReason.WRONG_AUTH_TYPE,
                "This account signs in with external identity. Use the external login endpoint.",
            )
        if user.hashed_password is None:
            verify_password(password, _DUMMY_HASH)
            return _INVALID_CREDENTIALS
        if not verify_password(password, user.hashed_password):
            return _INVALID_CREDENTIALS
        if not user.is_active:
            return AuthFailure(FailureReason.ACCOUNT_INACTIVE, "Account is inactive.")
        return user

    def resolve_or_provision(self, asserted_identity: str, domain: str) -> User | AuthFailure:
        """Return the principal for an external identity, creating it on first sight.

        Side effect: inserts a new active User with the default bitmask when
        no principal carries asserted_identity yet. If a concurrent request
        provisions the same identity first, the row it created is returned.
        """
        if not asserted_identity or not domain:
            return AuthFailure(FailureReason.INVALID_IDENTITY, "Invalid external identity.")

        user = self._users.get_by_external_identity(asserted_identity)
        if user is not None:
            if not user.is_active:
                return AuthFailure(FailureReason.ACCOUNT_INACTIVE, "Account is inactive.")
            return user

        username = asserted_identity.split("\\")[-1]
        new_user = User(
            username=username,
            email=f"{asserted_identity.replace(chr(92), '_')}@{domain}",
            external_identity=asserted_identity,
            domain=domain,
            auth_type=AuthType.EXTERNAL,
            permissions=self._default_permissions,
            is_active=True,
        )
        try:
            new_user.id = self._users.create_user(new_user)
        except IntegrityError:
            winner = self._users.get_by_external_identity(asserted_identity)
            if winner is not None:
                return winner if winner.is_active else AuthFailure(FailureReason.ACCOUNT_INACTIVE, "Account is inactive.")
            logger.warning("External identity %s collides with an existing username or email", asserted_identity)
            return AuthFailure(
                FailureReason.DUPLICATE_IDENTITY,
                "An account with the same username or email already exists.",
            )
        logger.info("Auto-provisioned external user: %s", asserted_identity)
        return self._users.get_by_id(new_user.id) or new_user

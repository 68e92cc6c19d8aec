"""
auth/service.py -- Authentication orchestrator: the only component with business rules.

Lifecycle of one refresh-token lineage:

    Active --(revoke / rotate / evict / revoke-all)--> Revoked   (terminal)
    Active --(time passes expires_at)----------------> Expired   (terminal)

Every issuance (login, external login, register, refresh) goes through
_issue(): enforce the per-user refresh-token cap by revoking the oldest,
sign an access token bound to the user's current token_version, persist a
new refresh token, open a session.

Invalidation paths and their reach:
  refresh / revoke / logout  -> blacklist the ONE access token the caller
                                presented (by jti) and revoke one refresh token.
  revoke-all / logout-all    -> revoke every refresh token AND bump
                                token_version, which rejects every access token
                                issued before the bump.
A single revoke deliberately leaves the user's other access tokens valid
until they expire. Full invalidation is what revoke-all is for.

Failure semantics:
  Business rejections are returned as AuthFailure values, never raised.
  Backing-store errors (SQLAlchemyError) are logged with full detail and
  re-raised as StoreUnavailableError, which the HTTP layer turns into a
  generic 503 with no internals in the body.

Layer rule: no imports from api/ or core/. Configuration arrives through
the constructor.
"""

from __future__ import annotations

import functools
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth import permissions
from auth.blacklist import BlacklistStore
from auth.credentials import CredentialVerifier, hash_password
from auth.database import utcnow
from auth.errors import AuthFailure, FailureReason, StoreUnavailableError
from auth.models import (
    AuthTokens,
    AuthType,
    RefreshToken,
    RequestContext,
    TokenValidation,
    User,
    UserSession,
)
from auth.refresh_tokens import RefreshTokenStore
from auth.sessions import SessionTracker
from auth.store import UserStore
from auth.tokens import TokenCodec, TokenRejection

logger = logging.getLogger("tokenward.auth")


def _store_guard(method):
    """Translate SQLAlchemy errors into StoreUnavailableError after logging them."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except SQLAlchemyError as exc:
            logger.exception("Store failure during %s", method.__name__)
            raise StoreUnavailableError(f"{method.__name__} failed") from exc

    return wrapper


def _token_prefix(token: str) -> str:
    return token[: min(10, len(token))]


class AuthService:
    """Composes the credential verifier, token codec and the three token stores."""

    def __init__(
        self,
        users: UserStore,
        refresh_tokens: RefreshTokenStore,
        blacklist: BlacklistStore,
        sessions: SessionTracker,
        codec: TokenCodec,
        verifier: CredentialVerifier | None = None,
        *,
        refresh_token_lifetime: timedelta = timedelta(days=7),
        max_refresh_tokens_per_user: int = 5,
        default_permissions: int = permissions.DEFAULT_PERMISSIONS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.users = users
        self.refresh_tokens = refresh_tokens
        self.blacklist = blacklist
        self.sessions = sessions
        self.codec = codec
        self.verifier = verifier or CredentialVerifier(users, default_permissions)
        self.refresh_token_lifetime = refresh_token_lifetime
        self.max_refresh_tokens_per_user = max_refresh_tokens_per_user
        self.default_permissions = default_permissions
        self._clock = clock

    # ------------------------------------------------------------------
    # Login paths
    # ------------------------------------------------------------------

    @_store_guard
    def login(self, username: str, password: str, ctx: RequestContext) -> AuthTokens | AuthFailure:
        result = self.verifier.verify(username, password)
        if isinstance(result, AuthFailure):
            logger.warning("Login failed for %s from %s: %s", username, ctx.ip_address, result.code)
            return result
        return self._issue(result, ctx)

    @_store_guard
    def external_login(self, asserted_identity: str, domain: str, ctx: RequestContext) -> AuthTokens | AuthFailure:
        result = self.verifier.resolve_or_provision(asserted_identity, domain)
        if isinstance(result, AuthFailure):
            logger.warning("External login failed for %s from %s: %s", asserted_identity, ctx.ip_address, result.code)
            return result
        return self._issue(result, ctx)

    @_store_guard
    def register(
        self,
        username: str,
        email: str,
        password: str,
        confirm_password: str,
        ctx: RequestContext,
    ) -> AuthTokens | AuthFailure:
        """Create a password principal with the default bitmask, then log it in.

        Duplicate checks are exact, case-sensitive matches. The pre-checks give
        a specific message; the unique constraints catch the race where two
        registrations for one name both pass them.
        """
        if password != confirm_password:
            return AuthFailure(FailureReason.PASSWORD_MISMATCH, "Password and confirmation do not match.")
        if self.users.username_exists(username):
            return AuthFailure(FailureReason.DUPLICATE_IDENTITY, "Username already exists.")
        if self.users.email_exists(email):
            return AuthFailure(FailureReason.DUPLICATE_IDENTITY, "Email already exists.")

        user = User(
            username=username,
            email=email,
            hashed_password=hash_password(password),
            auth_type=AuthType.PASSWORD,
            permissions=self.default_permissions,
            is_active=True,
        )
        try:
            user_id = self.users.create_user(user)
        except IntegrityError:
            return AuthFailure(FailureReason.DUPLICATE_IDENTITY, "Username or email already exists.")

        created = self.users.get_by_id(user_id)
        if created is None:
            raise StoreUnavailableError("User not found after insert")
        logger.info("User registered: %s", username)
        return self._issue(created, ctx)

    # ------------------------------------------------------------------
    # Refresh-token lifecycle
    # ------------------------------------------------------------------

    @_store_guard
    def refresh(self, refresh_token: str, ctx: RequestContext) -> AuthTokens | AuthFailure:
        """Rotate a refresh token: the presented value can never be used again.

        The conditional revoke in RefreshTokenStore.revoke() is the real gate.
        The is_active() check before it only avoids work for obviously dead
        tokens; when two calls race past it, exactly one revoke succeeds.
        """
        record = self.refresh_tokens.get_by_token(refresh_token)
        if record is None:
            logger.warning("Refresh with unknown token %s... from %s", _token_prefix(refresh_token), ctx.ip_address)
            return AuthFailure(FailureReason.TOKEN_NOT_FOUND, "Invalid refresh token.")
        if not record.is_active(self._clock()):
            logger.warning("Refresh with inactive token %s... from %s", _token_prefix(refresh_token), ctx.ip_address)
            return AuthFailure(FailureReason.TOKEN_INACTIVE, "Refresh token is expired or revoked.")

        user = self.users.get_by_id(record.user_id)
        if user is None or not user.is_active:
            self.refresh_tokens.revoke(refresh_token, ctx.ip_address)
            return AuthFailure(FailureReason.ACCOUNT_INACTIVE, "User not found or inactive.")

        self._blacklist_bearer(ctx, "refresh", user.id)

        if not self.refresh_tokens.revoke(refresh_token, ctx.ip_address):
            logger.warning("Refresh token %s... lost a rotation race", _token_prefix(refresh_token))
            return AuthFailure(FailureReason.TOKEN_INACTIVE, "Refresh token is expired or revoked.")

        tokens = self._issue(user, ctx)
        self.refresh_tokens.set_replaced_by(refresh_token, tokens.refresh_token)
        return tokens

    @_store_guard
    def revoke(self, refresh_token: str, ctx: RequestContext, reason: str | None = None) -> str | AuthFailure:
        """Revoke one refresh token and blacklist the caller's access token, if given.

        Revoking an already revoked token succeeds quietly.
        """
        record = self.refresh_tokens.get_by_token(refresh_token)
        if record is None:
            return AuthFailure(FailureReason.TOKEN_NOT_FOUND, "Invalid refresh token.")
        self.refresh_tokens.revoke(refresh_token, ctx.ip_address)
        self._blacklist_bearer(ctx, reason or "revoke", record.user_id)
        logger.info("Refresh token revoked for user %s (reason=%s)", record.user_id, reason or "revoke")
        return "Token revoked successfully."

    @_store_guard
    def revoke_all(self, user_id: int, ctx: RequestContext, reason: str | None = None) -> str:
        """Invalidate every credential of a user.

        Order: refresh tokens, presented access token, token_version bump,
        sessions. The bump is one UPDATE, so any validate() that reads the
        user after it rejects older access tokens.
        """
        revoked = self.refresh_tokens.revoke_all_for_user(user_id, ctx.ip_address)
        self._blacklist_bearer(ctx, reason or "revoke_all", user_id)
        version = self.users.increment_token_version(user_id)
        closed = self.sessions.deactivate_all_for_user(user_id)
        logger.info(
            "Revoke-all for user %s: %d refresh tokens, %d sessions, token_version=%s (reason=%s)",
            user_id,
            revoked,
            closed,
            version,
            reason or "revoke_all",
        )
        return "All tokens revoked successfully."

    @_store_guard
    def logout(self, ctx: RequestContext, refresh_token: str | None = None) -> str:
        """End one session: revoke its refresh token (if known) and blacklist the bearer."""
        user_id: int | None = None
        if refresh_token:
            record = self.refresh_tokens.get_by_token(refresh_token)
            if record is not None:
                user_id = record.user_id
                self.refresh_tokens.revoke(refresh_token, ctx.ip_address)
        self._blacklist_bearer(ctx, "logout", user_id)
        return "Logged out successfully."

    def logout_all(self, user_id: int, ctx: RequestContext) -> str:
        self.revoke_all(user_id, ctx, "logout_all")
        return "Logged out from all devices successfully."

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @_store_guard
    def validate(self, token: str) -> TokenValidation:
        """Full access-token check: signature/expiry, blacklist, account, token_version.

        The user row is re-read on every call; nothing about principals is
        cached in process.
        """
        decoded = self.codec.decode(token)
        if isinstance(decoded, TokenRejection):
            return TokenValidation(is_valid=False, error=decoded.reason)

        if self.blacklist.is_blacklisted(decoded.token_id):
            return TokenValidation(is_valid=False, error="revoked", token_id=decoded.token_id)

        user = self.users.get_by_id(decoded.user_id)
        if user is None or not user.is_active:
            return TokenValidation(is_valid=False, error="account_inactive", token_id=decoded.token_id)

        if decoded.token_version != user.token_version:
            return TokenValidation(is_valid=False, error="token_version_mismatch", token_id=decoded.token_id)

        return TokenValidation(
            is_valid=True,
            user_id=decoded.user_id,
            permissions=decoded.permissions,
            auth_type=decoded.auth_type,
            token_version=decoded.token_version,
            expires_at=decoded.expires_at,
            token_id=decoded.token_id,
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @_store_guard
    def touch_session(self, session_id: str, user_id: int) -> bool:
        """Stamp last access on session_id when it belongs to user_id."""
        return self.sessions.touch(session_id, user_id)

    @_store_guard
    def active_sessions(self, user_id: int) -> list[UserSession]:
        return self.sessions.get_active_by_user(user_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _issue(self, user: User, ctx: RequestContext) -> AuthTokens:
        self._evict_until_below_cap(user.id, ctx.ip_address)

        now = self._clock()
        access_token = self.codec.issue_access_token(user, user.token_version)
        refresh_value = self.codec.issue_refresh_token()
        refresh_expires_at = now + self.refresh_token_lifetime

        self.refresh_tokens.insert(
            RefreshToken(
                token=refresh_value,
                user_id=user.id,
                expires_at=refresh_expires_at,
                created_at=now,
                created_by_ip=ctx.ip_address,
                auth_type=user.auth_type,
                user_agent=ctx.user_agent,
                device_info=ctx.device_info,
            )
        )
        # Two logins racing at the cap can both skip eviction; trim afterwards.
        self._evict_until_at_cap(user.id, ctx.ip_address)

        session_id = uuid.uuid4().hex
        self.sessions.create(
            UserSession(
                user_id=user.id,
                session_id=session_id,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                device_info=ctx.device_info,
                auth_type=user.auth_type,
                created_at=now,
                last_access_at=now,
            )
        )
        self.users.update_last_login(user.id)

        expires_at = self.codec.extract_expiry(access_token) or now + self.codec.access_token_lifetime
        logger.info("Issued tokens for user %s (session %s) from %s", user.id, session_id, ctx.ip_address)
        return AuthTokens(
            access_token=access_token,
            refresh_token=refresh_value,
            expires_at=expires_at,
            refresh_expires_at=refresh_expires_at,
            session_id=session_id,
            user=user,
            permission_names=permissions.names_of(user.permissions),
        )

    def _evict_until_below_cap(self, user_id: int, ip_address: str) -> None:
        # Normally one pass; more only if the cap was lowered in config.
        active = self.refresh_tokens.count_active_by_user(user_id)
        while active >= self.max_refresh_tokens_per_user:
            if not self.refresh_tokens.revoke_oldest(user_id, ip_address):
                break
            active -= 1

    def _evict_until_at_cap(self, user_id: int, ip_address: str) -> None:
        active = self.refresh_tokens.count_active_by_user(user_id)
        while active > self.max_refresh_tokens_per_user:
            if not self.refresh_tokens.revoke_oldest(user_id, ip_address):
                break
            active -= 1

    def _blacklist_bearer(self, ctx: RequestContext, reason: str, user_id: int | None) -> bool:
        """Blacklist the access token presented with the request, if any.

        Skipped (not failed) when the token's id or expiry cannot be read.
        """
        if not ctx.bearer_token:
            return False
        token_id = self.codec.extract_id(ctx.bearer_token)
        expiry = self.codec.extract_expiry(ctx.bearer_token)
        if token_id is None or expiry is None:
            logger.debug("Skipping blacklist: unreadable access token from %s", ctx.ip_address)
            return False
        return self.blacklist.add(token_id, expiry, reason=reason, user_id=user_id, ip_address=ctx.ip_address)

"""
auth/tokens.py -- Access-token codec, refresh-token generation, cookie helpers.

Security design decisions:
  Access tokens: python-jose with HS256. Tokens are signed with SECRET_KEY
       and carry sub (user id), jti, iat, exp, iss, aud plus the custom claims
       permissions (bitmask snapshot at issue time), token_version, auth_type
       and username. decode() verifies signature, issuer, audience, expiry and
       claim presence; it never looks at the blacklist or the user table --
       that is AuthService.validate()'s job.

  Expiry is checked against the codec's own clock rather than jose's, so
       tests and the rest of the core share one notion of "now".

  extract_id() / extract_expiry(): used to blacklist a token whose signature
       is still good but which business rules reject (refresh, revoke,
       logout). They skip expiry/issuer/audience checks but still require a
       valid signature: a forged token must not be able to write arbitrary
       jtis into the blacklist. Anything malformed returns None.

  Refresh tokens: secrets.token_urlsafe(64) -- 512 bits of entropy, opaque,
       not decodable. They are only ever a lookup key in RefreshTokenStore.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.database import utcnow
from auth.models import AuthType, TokenClaims, User

logger = logging.getLogger("tokenward.auth")

ALGORITHM = "HS256"

REFRESH_COOKIE_NAME = "refresh_token"

_REQUIRED_INT_CLAIMS = ("exp", "iat", "permissions", "token_version")
_REQUIRED_STR_CLAIMS = ("sub", "jti", "auth_type")


@dataclass(frozen=True)
class TokenRejection:
    """Why decode() refused a token. reason is one of "expired" / "invalid_token"."""

    reason: str
    message: str


class TokenCodec:
    """Stateless encoder/decoder for signed, time-bounded access tokens."""

    def __init__(
        self,
        secret_key: str,
        issuer: str,
        audience: str,
        access_token_lifetime: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._secret_key = secret_key
        self.issuer = issuer
        self.audience = audience
        self.access_token_lifetime = access_token_lifetime
        self._clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_access_token(self, user: User, token_version: int) -> str:
        """Encode a signed access token for user.

        token_version is passed explicitly (not read from user) so the caller
        decides which version snapshot the token is bound to.
        """
        now = self._clock()
        expire = now + self.access_token_lifetime
        payload = {
            "sub": str(user.id),
            "jti": uuid.uuid4().hex,
            "iat": int(now.timestamp()),
            "exp": int(expire.timestamp()),
            "iss": self.issuer,
            "aud": self.audience,
            "username": user.username,
            "permissions": user.permissions,
            "token_version": token_version,
            "auth_type": user.auth_type.value,
        }
        return jwt.encode(payload, self._secret_key, algorithm=ALGORITHM)

    @staticmethod
    def issue_refresh_token() -> str:
        return secrets.token_urlsafe(64)

    # ------------------------------------------------------------------
    # Decode
    # ------------------------------------------------------------------

    def decode(self, token: str) -> TokenClaims | TokenRejection:
        """Verify and decode an access token. Never raises on bad input."""
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_exp": False},
            )
        except JWTError:
            return TokenRejection("invalid_token", "Token signature or claims are invalid.")

        claims = _parse_claims(payload)
        if claims is None:
            return TokenRejection("invalid_token", "Token is missing required claims.")
        if self._clock() >= claims.expires_at:
            return TokenRejection("expired", "Token has expired.")
        return claims

    def extract_id(self, token: str) -> str | None:
        """Return the jti of a correctly signed token, expired or not."""
        payload = self._signed_payload(token)
        if payload is None:
            return None
        jti = payload.get("jti")
        return jti if isinstance(jti, str) and jti else None

    def extract_expiry(self, token: str) -> datetime | None:
        """Return the exp of a correctly signed token as an aware datetime."""
        payload = self._signed_payload(token)
        if payload is None:
            return None
        exp = payload.get("exp")
        if not isinstance(exp, int) or isinstance(exp, bool):
            return None
        try:
            return datetime.fromtimestamp(exp, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    def _signed_payload(self, token: str) -> dict | None:
        if not token or not isinstance(token, str):
            return None
        try:
            return jwt.decode(
                token,
                self._secret_key,
                algorithms=[ALGORITHM],
                options={"verify_exp": False, "verify_aud": False, "verify_iss": False, "verify_iat": False},
            )
        except JWTError:
            return None


def _parse_claims(payload: dict) -> TokenClaims | None:
    for name in _REQUIRED_INT_CLAIMS:
        value = payload.get(name)
        if not isinstance(value, int) or isinstance(value, bool):
            return None
    for name in _REQUIRED_STR_CLAIMS:
        value = payload.get(name)
        if not isinstance(value, str) or not value:
            return None
    try:
        user_id = int(payload["sub"])
        auth_type = AuthType(payload["auth_type"])
        issued_at = datetime.fromtimestamp(payload["iat"], tz=timezone.utc)
        expires_at = datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None
    return TokenClaims(
        token_id=payload["jti"],
        user_id=user_id,
        username=str(payload.get("username", "")),
        permissions=payload["permissions"],
        token_version=payload["token_version"],
        auth_type=auth_type,
        issued_at=issued_at,
        expires_at=expires_at,
    )


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_refresh_cookie(response, token: str, secure: bool, max_age: int) -> None:
    """Write the refresh token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="strict": never sent on cross-site requests (CSRF mitigation
        for the refresh and revoke endpoints that accept the cookie).
    secure: set when the request arrived over HTTPS or SECURE_COOKIES=true.
    path="/": the refresh and logout routes both need it.
    """
    response.set_cookie(
        REFRESH_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="strict",
        secure=secure,
        max_age=max_age,
        path="/",
    )


def clear_refresh_cookie(response) -> None:
    response.delete_cookie(REFRESH_COOKIE_NAME, path="/")

"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Bearer tokens are read from the Authorization header only. Every
authenticated dependency runs the full AuthService.validate() check:
signature, expiry, blacklist, account status and token_version. Nothing is
cached between requests.

request_context() builds the RequestContext the service needs (client IP,
user agent, presented bearer token, device info). It is the only place that
reads those values off the request.

get_token_validation() is the base dependency and raises HTTP 401 with the
rejection reason. get_current_user() loads the principal behind the token.
require_permission(cap) is a dependency factory that raises HTTP 403 when
the token's bitmask lacks cap.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth import permissions
from auth.models import RequestContext, TokenValidation, User

DEVICE_INFO_HEADER = "X-Device-Info"
SESSION_ID_HEADER = "X-Session-Id"


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        return token or None
    return None


def client_ip(request: Request) -> str:
    """Client address, preferring the first X-Forwarded-For hop when present."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def request_context(request: Request) -> RequestContext:
    """Collect caller metadata for one service call.

    Use as a FastAPI dependency:
        @router.post("/auth/logout")
        def logout(ctx: RequestContext = Depends(request_context)): ...
    """
    return RequestContext(
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        bearer_token=bearer_token(request),
        device_info=request.headers.get(DEVICE_INFO_HEADER),
        is_secure=request.url.scheme == "https",
    )


def _unauthorized(code: str, message: str, detail: str | None = None) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": code, "message": message, "detail": detail},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_token_validation(request: Request) -> TokenValidation:
    """Require a fully valid bearer token. Raises HTTP 401 otherwise.

    When the client sends X-Session-Id, the session's last-access time is
    refreshed as a side effect, provided the session belongs to the caller.
    """
    token = bearer_token(request)
    if token is None:
        raise _unauthorized("unauthorized", "Authentication required.")

    service = request.app.state.auth_service
    validation = service.validate(token)
    if not validation.is_valid:
        raise _unauthorized("invalid_token", "Access token is not valid.", validation.error)

    session_id = request.headers.get(SESSION_ID_HEADER)
    if session_id:
        service.touch_session(session_id, validation.user_id)
    return validation


def get_current_user(
    request: Request,
    validation: TokenValidation = Depends(get_token_validation),
) -> User:
    """Require authentication and return the principal behind the token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    user = request.app.state.user_store.get_by_id(validation.user_id)
    if user is None or not user.is_active:
        raise _unauthorized("invalid_token", "Access token is not valid.", "account_inactive")
    return user


def require_permission(capability: int):
    """Build a dependency that demands capability in the token's bitmask.

    The check uses the bitmask embedded in the token (snapshot at issue
    time), not the current database value.

    Use as a FastAPI dependency:
        @router.get("/users", dependencies=[Depends(require_permission(permissions.VIEW_USERS))])
    """

    def dependency(validation: TokenValidation = Depends(get_token_validation)) -> TokenValidation:
        if not permissions.has(validation.permissions, capability):
            raise HTTPException(
                status_code=403,
                detail={
                    "code": "permission_denied",
                    "message": "You do not have permission to perform this action.",
                    "detail": ", ".join(permissions.names_of(capability)) or None,
                },
            )
        return validation

    return dependency

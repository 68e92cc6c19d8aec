"""
api/routes/v1/auth.py -- Authentication and token-lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/login              -- password login; sets refresh cookie
  POST /api/v1/auth/external-login     -- identity asserted by trusted proxy header
  POST /api/v1/auth/register           -- self-registration (201)
  POST /api/v1/auth/refresh-token      -- rotate refresh token (body or cookie)
  POST /api/v1/auth/revoke-token       -- revoke one refresh token (body or cookie)
  POST /api/v1/auth/revoke-all-tokens  -- revoke everything for the caller (requires auth)
  POST /api/v1/auth/logout             -- end this session; clears cookie
  POST /api/v1/auth/logout-all         -- end every session (requires auth)
  GET  /api/v1/auth/validate-token     -- full validation of the bearer token
  GET  /api/v1/auth/me                 -- current user (requires auth)
  GET  /api/v1/auth/sessions           -- caller's active sessions (requires auth)
  GET  /api/v1/auth/permissions        -- permission catalog (public)

Security:
  [H2] login, register and refresh-token are rate-limited per IP
       (LOGIN_RATE_LIMIT, default 10/minute).
  [C1] CredentialVerifier provides timing equalization -- go through the
       service, never inline a user lookup + password check.
  [M5] Cache-Control: no-store on every response that carries a token.
  Anti-enumeration: unknown user, wrong password and inactive account all
       return the same 401 invalid_credentials. Every refresh failure
       returns the same 401 invalid_refresh_token.
"""

import logging
from dataclasses import replace

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import credential_rate_limit, limiter
from api.models import (
    AuthResponse,
    ExternalLoginRequest,
    LoginRequest,
    MessageResponse,
    PermissionCatalogResponse,
    PermissionInfo,
    RefreshTokenRequest,
    RegisterRequest,
    RevokeTokenRequest,
    SessionResponse,
    TokenValidationResponse,
    UserResponse,
)
from auth import permissions
from auth.credentials import parse_external_identity
from auth.dependencies import get_current_user, get_token_validation, request_context
from auth.errors import CREDENTIAL_FAILURES, AuthFailure, FailureReason
from auth.models import AuthTokens, RequestContext, TokenValidation, User
from auth.service import AuthService
from auth.tokens import REFRESH_COOKIE_NAME, clear_refresh_cookie, set_refresh_cookie

logger = logging.getLogger("tokenward.api")

# Auth policy:
# - POST /auth/login, /auth/external-login, /auth/register: public
# - POST /auth/refresh-token, /auth/revoke-token: public -- possession of the refresh token is the credential
# - POST /auth/logout: bearer token required (it is what gets blacklisted), full validation not required
# - POST /auth/revoke-all-tokens, /auth/logout-all: requires auth (get_current_user)
# - GET  /auth/validate-token, /auth/me, /auth/sessions: requires auth
# - GET  /auth/permissions: public
router = APIRouter()

_FAILURE_STATUS: dict[FailureReason, int] = {
    FailureReason.INVALID_CREDENTIALS: 401,
    FailureReason.ACCOUNT_INACTIVE: 401,
    FailureReason.WRONG_AUTH_TYPE: 401,
    FailureReason.INVALID_IDENTITY: 401,
    FailureReason.TOKEN_INACTIVE: 401,
    FailureReason.PASSWORD_MISMATCH: 400,
    FailureReason.PERMISSION_DENIED: 403,
    FailureReason.TOKEN_NOT_FOUND: 404,
    FailureReason.DUPLICATE_IDENTITY: 409,
}

_NO_STORE = {"Cache-Control": "no-store"}


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=AuthResponse)
@limiter.limit(credential_rate_limit)  # [H2] below @router so the registered endpoint is the limited wrapper
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password.

    INVALID_CREDENTIALS and ACCOUNT_INACTIVE are folded into one response so
    callers cannot probe which accounts exist or are disabled.
    """
    service: AuthService = request.app.state.auth_service
    ctx = _with_device_info(request_context(request), body.device_info)
    result = service.login(body.username, body.password, ctx)
    if isinstance(result, AuthFailure):
        if result.reason in CREDENTIAL_FAILURES:
            raise HTTPException(
                status_code=401,
                detail={"code": "invalid_credentials", "message": "Invalid username or password."},
                headers=_NO_STORE,
            )
        _raise_failure(result)
    return _auth_response(request, ctx, result)


@router.post("/auth/external-login", response_model=AuthResponse)
def external_login(request: Request, body: ExternalLoginRequest | None = None) -> JSONResponse:
    """Log in with an identity asserted by the trusted reverse proxy.

    The proxy authenticates the client (negotiate/Kerberos) and forwards the
    result in EXTERNAL_IDENTITY_HEADER as "DOMAIN\\user". Disabled unless
    EXTERNAL_AUTH_ENABLED is set; the endpoint then answers 404.
    """
    settings = request.app.state.settings
    if not settings.external_auth_enabled:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "External authentication is not enabled."},
        )

    parsed = parse_external_identity(request.headers.get(settings.external_identity_header), settings.default_domain)
    if parsed is None:
        raise HTTPException(
            status_code=401,
            detail={"code": FailureReason.INVALID_IDENTITY.value, "message": "Invalid external identity."},
            headers=_NO_STORE,
        )
    identity, domain = parsed

    service: AuthService = request.app.state.auth_service
    ctx = _with_device_info(request_context(request), body.device_info if body else None)
    result = service.external_login(identity, domain, ctx)
    if isinstance(result, AuthFailure):
        _raise_failure(result)
    return _auth_response(request, ctx, result)


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
@limiter.limit(credential_rate_limit)  # [H2]
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a password account with the basic permission set and log it in."""
    settings = request.app.state.settings
    if not settings.self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Self-registration is disabled."},
        )

    service: AuthService = request.app.state.auth_service
    ctx = _with_device_info(request_context(request), body.device_info)
    result = service.register(body.username, body.email, body.password, body.confirm_password, ctx)
    if isinstance(result, AuthFailure):
        _raise_failure(result)
    return _auth_response(request, ctx, result, status_code=201)


@router.post("/auth/refresh-token", response_model=AuthResponse)
@limiter.limit(credential_rate_limit)  # [H2]
def refresh_token(request: Request, body: RefreshTokenRequest | None = None) -> JSONResponse:
    """Exchange a refresh token for a new access/refresh pair.

    The token is read from the body first, then from the httpOnly cookie.
    A bearer header, if sent, is blacklisted as part of the rotation.
    """
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE_NAME)
    if not token:
        raise HTTPException(
            status_code=400,
            detail={"code": "missing_token", "message": "Refresh token is required."},
        )

    service: AuthService = request.app.state.auth_service
    ctx = _with_device_info(request_context(request), body.device_info if body else None)
    result = service.refresh(token, ctx)
    if isinstance(result, AuthFailure):
        raise HTTPException(
            status_code=401,
            detail={"code": "invalid_refresh_token", "message": "Invalid or expired refresh token."},
            headers=_NO_STORE,
        )
    return _auth_response(request, ctx, result)


@router.post("/auth/revoke-token", response_model=MessageResponse)
def revoke_token(request: Request, body: RevokeTokenRequest | None = None) -> MessageResponse:
    """Revoke one refresh token (body or cookie). Idempotent for revoked tokens."""
    token = (body.token if body else None) or request.cookies.get(REFRESH_COOKIE_NAME)
    if not token:
        raise HTTPException(
            status_code=400,
            detail={"code": "missing_token", "message": "Token is required."},
        )

    service: AuthService = request.app.state.auth_service
    result = service.revoke(token, request_context(request), body.reason if body else None)
    if isinstance(result, AuthFailure):
        _raise_failure(result)
    return MessageResponse(message=result)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Revoke the cookie's refresh token, blacklist the bearer token, clear the cookie."""
    ctx = request_context(request)
    if ctx.bearer_token is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "missing_token", "message": "Bearer token is required."},
        )

    service: AuthService = request.app.state.auth_service
    message = service.logout(ctx, request.cookies.get(REFRESH_COOKIE_NAME))
    resp = JSONResponse(content=MessageResponse(message=message).model_dump())
    clear_refresh_cookie(resp)
    return resp


@router.get("/auth/permissions", response_model=PermissionCatalogResponse)
async def permission_catalog() -> PermissionCatalogResponse:
    """List every primitive capability and role with its bit value."""
    return PermissionCatalogResponse(
        primitives=[PermissionInfo(name=name, value=value) for name, value in permissions.PRIMITIVES.items()],
        roles=[PermissionInfo(name=name, value=value) for name, value in permissions.ROLES.items()],
    )


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/revoke-all-tokens", response_model=MessageResponse)
def revoke_all_tokens(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    """Revoke every refresh token and access token of the caller."""
    service: AuthService = request.app.state.auth_service
    message = service.revoke_all(current_user.id, request_context(request), "user_request")
    return MessageResponse(message=message)


@router.post("/auth/logout-all", response_model=MessageResponse)
def logout_all(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Log the caller out of every device and clear the cookie."""
    service: AuthService = request.app.state.auth_service
    message = service.logout_all(current_user.id, request_context(request))
    resp = JSONResponse(content=MessageResponse(message=message).model_dump())
    clear_refresh_cookie(resp)
    return resp


@router.get("/auth/validate-token", response_model=TokenValidationResponse)
def validate_token(validation: TokenValidation = Depends(get_token_validation)) -> TokenValidationResponse:
    """Echo the validated claims of the bearer token. Invalid tokens never reach here (401)."""
    return TokenValidationResponse.from_validation(validation)


@router.get("/auth/me", response_model=UserResponse)
def me(request: Request, current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return the current user with its active session count."""
    count = request.app.state.session_tracker.count_active(current_user.id)
    return UserResponse.from_user(current_user, active_session_count=count)


@router.get("/auth/sessions", response_model=list[SessionResponse])
def sessions(request: Request, current_user: User = Depends(get_current_user)) -> list[SessionResponse]:
    service: AuthService = request.app.state.auth_service
    return [SessionResponse.from_session(s) for s in service.active_sessions(current_user.id)]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _with_device_info(ctx: RequestContext, device_info: str | None) -> RequestContext:
    if device_info and not ctx.device_info:
        return replace(ctx, device_info=device_info)
    return ctx


def _raise_failure(failure: AuthFailure) -> None:
    raise HTTPException(
        status_code=_FAILURE_STATUS.get(failure.reason, 400),
        detail={"code": failure.code, "message": failure.message},
        headers=_NO_STORE,
    )


def _auth_response(request: Request, ctx: RequestContext, tokens: AuthTokens, status_code: int = 200) -> JSONResponse:
    settings = request.app.state.settings
    resp = JSONResponse(
        status_code=status_code,
        content=AuthResponse.from_tokens(tokens).model_dump(mode="json"),
    )
    set_refresh_cookie(
        resp,
        tokens.refresh_token,
        secure=ctx.is_secure or settings.secure_cookies,
        max_age=settings.refresh_token_days * 24 * 3600,
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp

"""
api/routes/v1/users.py -- User administration endpoints.

Routes:
  GET   /api/v1/users                     -- list users (view_users)
  GET   /api/v1/users/{id}                -- user detail (view_user_details)
  PUT   /api/v1/users/{id}/permissions    -- replace bitmask (manage_permissions)
  PUT   /api/v1/users/{id}/toggle-status  -- activate/deactivate (update_users)
  PATCH /api/v1/users/bulk-permissions    -- replace bitmask for many users (manage_permissions)

Guards:
  [M4] No self-service: callers cannot change their own permissions or
       toggle their own status, directly or through a bulk request.
  Escalation: any request whose mask touches a system_admin bit requires the
       caller to hold ALL of system_admin.
  Deactivation revokes every token of the target (refresh tokens, sessions,
       token_version bump) so the account is locked out immediately rather
       than when its access token expires.

Permission changes do not bump token_version: an already issued access
token keeps its bitmask snapshot until it expires.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import (
    BulkPermissionsRequest,
    BulkPermissionsResponse,
    ChangePermissionsRequest,
    MessageResponse,
    UserResponse,
)
from auth import permissions
from auth.dependencies import request_context, require_permission
from auth.models import TokenValidation
from auth.service import AuthService
from auth.store import UserStore

logger = logging.getLogger("tokenward.api")

router = APIRouter()


@router.get("/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    caller: TokenValidation = Depends(require_permission(permissions.VIEW_USERS)),
) -> list[UserResponse]:
    user_store: UserStore = request.app.state.user_store
    return [UserResponse.from_user(u) for u in user_store.list_users()]


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    request: Request,
    user_id: int,
    caller: TokenValidation = Depends(require_permission(permissions.VIEW_USER_DETAILS)),
) -> UserResponse:
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(user_id)
    if user is None:
        raise _not_found()
    count = request.app.state.session_tracker.count_active(user_id)
    return UserResponse.from_user(user, active_session_count=count)


@router.put("/users/{user_id}/permissions", response_model=MessageResponse)
def change_permissions(
    request: Request,
    user_id: int,
    body: ChangePermissionsRequest,
    caller: TokenValidation = Depends(require_permission(permissions.MANAGE_PERMISSIONS)),
) -> MessageResponse:
    """Replace a user's bitmask."""
    if user_id == caller.user_id:
        raise _forbidden("Cannot modify your own permissions.")
    _check_escalation(caller, body.permissions)

    user_store: UserStore = request.app.state.user_store
    if not user_store.update_permissions(user_id, body.permissions):
        raise _not_found()
    logger.info(
        "User %s changed permissions of user %s to %d (reason=%s)",
        caller.user_id,
        user_id,
        body.permissions,
        body.reason,
    )
    return MessageResponse(message="Permissions updated successfully.")


@router.put("/users/{user_id}/toggle-status", response_model=UserResponse)
def toggle_status(
    request: Request,
    user_id: int,
    caller: TokenValidation = Depends(require_permission(permissions.UPDATE_USERS)),
) -> UserResponse:
    """Flip is_active. Deactivation also revokes all of the target's tokens."""
    if user_id == caller.user_id:
        raise _forbidden("Cannot toggle your own status.")

    user_store: UserStore = request.app.state.user_store
    target = user_store.get_by_id(user_id)
    if target is None:
        raise _not_found()

    activate = not target.is_active
    user_store.set_active(user_id, activate)
    if not activate:
        service: AuthService = request.app.state.auth_service
        # The admin's own bearer token must not be blacklisted on their behalf.
        ctx = replace(request_context(request), bearer_token=None)
        service.revoke_all(user_id, ctx, "account_deactivated")
    logger.info("User %s set is_active=%s on user %s", caller.user_id, activate, user_id)

    updated = user_store.get_by_id(user_id)
    return UserResponse.from_user(updated)


@router.patch("/users/bulk-permissions", response_model=BulkPermissionsResponse)
def bulk_permissions(
    request: Request,
    body: BulkPermissionsRequest,
    caller: TokenValidation = Depends(require_permission(permissions.MANAGE_PERMISSIONS)),
) -> BulkPermissionsResponse:
    if caller.user_id in body.user_ids:
        raise _forbidden("Cannot modify your own permissions in bulk operations.")
    _check_escalation(caller, body.permissions)

    user_store: UserStore = request.app.state.user_store
    updated = user_store.bulk_update_permissions(sorted(set(body.user_ids)), body.permissions)
    logger.info("User %s bulk-set permissions %d on %d users", caller.user_id, body.permissions, updated)
    return BulkPermissionsResponse(message="Permissions updated successfully.", updated=updated)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _check_escalation(caller: TokenValidation, mask: int) -> None:
    if mask & permissions.SYSTEM_ADMIN and not permissions.has(caller.permissions, permissions.SYSTEM_ADMIN):
        logger.warning("User %s attempted to grant system-admin permissions", caller.user_id)
        raise _forbidden("Granting system-admin permissions requires system-admin permission.")


def _forbidden(message: str) -> HTTPException:
    return HTTPException(status_code=403, detail={"code": "permission_denied", "message": message})


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})

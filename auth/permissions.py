"""
auth/permissions.py -- Bitmask permission model.

Each capability is one bit in a 64-bit integer. Roles are named unions of
primitive bits. The helpers below are pure functions over plain ints so the
same mask can be stored in SQL, embedded in a JWT claim, and checked in a
route dependency without conversion.

Invariant: has(mask, cap) holds iff (mask & cap) == cap. cap may be a single
bit or a composite role value; a composite check needs every bit present.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Iterable

# ---------------------------------------------------------------------------
# Primitive capabilities (one bit each)
# ---------------------------------------------------------------------------

NONE = 0

# User management
VIEW_USERS = 1 << 0
CREATE_USERS = 1 << 1
UPDATE_USERS = 1 << 2
DELETE_USERS = 1 << 3
MANAGE_USER_ROLES = 1 << 4
VIEW_USER_DETAILS = 1 << 5

# Product management
VIEW_PRODUCTS = 1 << 6
CREATE_PRODUCTS = 1 << 7
UPDATE_PRODUCTS = 1 << 8
DELETE_PRODUCTS = 1 << 9
MANAGE_PRODUCT_CATEGORIES = 1 << 10
VIEW_PRODUCT_DETAILS = 1 << 11
PRODUCT_BULK_OPS = 1 << 12

# System administration
VIEW_SYSTEM_LOGS = 1 << 13
MANAGE_SYSTEM = 1 << 14
BACKUP_RESTORE = 1 << 15
MANAGE_PERMISSIONS = 1 << 16

# Reports and analytics
VIEW_REPORTS = 1 << 17
GENERATE_REPORTS = 1 << 18
VIEW_ANALYTICS = 1 << 19

# Masks are stored in a signed 64-bit SQL column.
MAX_MASK = (1 << 63) - 1

# Ascending bit order. names_of() relies on this ordering for stable output.
PRIMITIVES: dict[str, int] = {
    "view_users": VIEW_USERS,
    "create_users": CREATE_USERS,
    "update_users": UPDATE_USERS,
    "delete_users": DELETE_USERS,
    "manage_user_roles": MANAGE_USER_ROLES,
    "view_user_details": VIEW_USER_DETAILS,
    "view_products": VIEW_PRODUCTS,
    "create_products": CREATE_PRODUCTS,
    "update_products": UPDATE_PRODUCTS,
    "delete_products": DELETE_PRODUCTS,
    "manage_product_categories": MANAGE_PRODUCT_CATEGORIES,
    "view_product_details": VIEW_PRODUCT_DETAILS,
    "product_bulk_ops": PRODUCT_BULK_OPS,
    "view_system_logs": VIEW_SYSTEM_LOGS,
    "manage_system": MANAGE_SYSTEM,
    "backup_restore": BACKUP_RESTORE,
    "manage_permissions": MANAGE_PERMISSIONS,
    "view_reports": VIEW_REPORTS,
    "generate_reports": GENERATE_REPORTS,
    "view_analytics": VIEW_ANALYTICS,
}

# ---------------------------------------------------------------------------
# Roles (aggregate values)
# ---------------------------------------------------------------------------

BASIC_USER = VIEW_PRODUCTS | VIEW_PRODUCT_DETAILS
PRODUCT_MANAGER = (
    VIEW_PRODUCTS
    | CREATE_PRODUCTS
    | UPDATE_PRODUCTS
    | VIEW_PRODUCT_DETAILS
    | MANAGE_PRODUCT_CATEGORIES
    | PRODUCT_BULK_OPS
)
USER_MANAGER = VIEW_USERS | CREATE_USERS | UPDATE_USERS | MANAGE_USER_ROLES | VIEW_USER_DETAILS
SYSTEM_ADMIN = VIEW_SYSTEM_LOGS | MANAGE_SYSTEM | BACKUP_RESTORE | MANAGE_PERMISSIONS
ADMINISTRATOR = 0
for _bit in PRIMITIVES.values():
    ADMINISTRATOR |= _bit
del _bit

ROLES: dict[str, int] = {
    "basic_user": BASIC_USER,
    "product_manager": PRODUCT_MANAGER,
    "user_manager": USER_MANAGER,
    "system_admin": SYSTEM_ADMIN,
    "administrator": ADMINISTRATOR,
}

# New principals (registration and external auto-provisioning) start here.
DEFAULT_PERMISSIONS = BASIC_USER


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def has(mask: int, capability: int) -> bool:
    """Return True if every bit of capability is set in mask.

    NONE is trivially held; callers gating on a capability should never pass 0.
    """
    return (mask & capability) == capability


def has_all(mask: int, *capabilities: int) -> bool:
    return all(has(mask, c) for c in capabilities)


def has_any(mask: int, *capabilities: int) -> bool:
    """True if at least one capability is fully held. False when none are given."""
    return any(has(mask, c) for c in capabilities)


def grant(mask: int, capability: int) -> int:
    return mask | capability


def revoke(mask: int, capability: int) -> int:
    return mask & ~capability


def names_of(mask: int) -> list[str]:
    """Return primitive capability names set in mask, in ascending bit order.

    Role names are never included even when the mask contains every bit of
    a role -- use roles_of() for that.
    """
    return [name for name, bit in PRIMITIVES.items() if mask & bit]


def roles_of(mask: int) -> list[str]:
    """Return the role names whose bits are all present in mask."""
    return [name for name, value in ROLES.items() if has(mask, value)]


def from_names(names: Iterable[str]) -> int:
    """Build a mask from primitive and/or role names.

    Raises ValueError on an unknown name rather than silently dropping it --
    a typo in a grant must not produce a narrower mask than intended.
    """
    mask = NONE
    for raw in names:
        name = raw.strip().lower()
        if name in PRIMITIVES:
            mask |= PRIMITIVES[name]
        elif name in ROLES:
            mask |= ROLES[name]
        else:
            raise ValueError(f"Unknown permission: {raw!r}")
    return mask


def validate_mask(mask: int) -> int:
    """Return mask unchanged if it fits the signed 64-bit storage column."""
    if not isinstance(mask, int) or isinstance(mask, bool):
        raise ValueError("Permission mask must be an integer.")
    if mask < 0 or mask > MAX_MASK:
        raise ValueError("Permission mask must be between 0 and 2**63 - 1.")
    return mask

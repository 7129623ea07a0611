# Auth module for the Influence Chat platform
# Provides role-based access control and authentication dependencies

from auth.roles import (
    Permission,
    ROLE_PERMISSIONS,
    get_permissions_for_role,
    has_any_permission,
)

from auth.decorators import (
    AuthError,
    require_user_type,
    require_permission,
    require_admin,
)

from auth.dependencies import (
    create_access_token,
    get_current_user,
    get_user_from_token,
)

__all__ = [
    # Roles
    "Permission",
    "ROLE_PERMISSIONS",
    "get_permissions_for_role",
    "has_any_permission",

    # Dependencies
    "AuthError",
    "require_user_type",
    "require_permission",
    "require_admin",
    "create_access_token",
    "get_current_user",
    "get_user_from_token",
]

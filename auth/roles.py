# Role-Based Access Control for the Influence Chat platform
# This module defines which user types may move money through their wallet

from enum import Enum
from typing import List, Set

from database.models import UserType


class Permission(str, Enum):
    """Wallet permissions checked by the wallet routes."""

    # Brand owner permissions
    DEPOSIT_FUNDS = "deposit_funds"

    # Influencer permissions
    WITHDRAW_FUNDS = "withdraw_funds"

    # Common permissions
    VIEW_OWN_WALLET = "view_own_wallet"
    VIEW_OWN_TRANSACTIONS = "view_own_transactions"


# Role to permissions mapping
ROLE_PERMISSIONS: dict[UserType, Set[Permission]] = {
    UserType.BRAND_OWNER: {
        Permission.DEPOSIT_FUNDS,
        # Common
        Permission.VIEW_OWN_WALLET,
        Permission.VIEW_OWN_TRANSACTIONS,
    },

    UserType.INFLUENCER: {
        Permission.WITHDRAW_FUNDS,
        # Common
        Permission.VIEW_OWN_WALLET,
        Permission.VIEW_OWN_TRANSACTIONS,
    },

    UserType.ADMIN: {
        # Admin has ALL permissions
        *Permission.__members__.values()
    },
}


def get_permissions_for_role(user_type: UserType) -> Set[Permission]:
    """Get all permissions for a given user type."""
    return ROLE_PERMISSIONS.get(user_type, set())


def has_any_permission(user_type: UserType, permissions: List[Permission]) -> bool:
    """Check if a user type has any of the given permissions."""
    user_permissions = get_permissions_for_role(user_type)
    return any(p in user_permissions for p in permissions)

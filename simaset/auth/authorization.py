"""
Authorization capability passed explicitly into workflow transitions.

Permissions are boolean flags in each role's ``permissions`` JSON map, with
optional per-user overrides. Members of the admin role pass every check.
"""
import uuid
from typing import Dict, Optional, Protocol

from ..config import settings
from ..models.models import User


APPROVAL_LEVEL_PERMISSIONS = {
    1: "approve_request_l1",
    2: "approve_request_l2",
    3: "approve_request_l3",
}

MANAGE_ITEM_REQUESTS = "manage_atk_requests"
APPROVE_OFFICE_REQUESTS = "approve_office_request"
MANAGE_OFFICE_SUPPLIES = "manage_office_supplies"
ADJUST_STOCK = "manage_items"
VIEW_NOTIFICATION_LOGS = "view_notification_logs"


def is_admin(user: User) -> bool:
    admin_role = settings.admin_role.lower()
    return any((role.name or "").lower() == admin_role for role in user.roles)


def permission_map(user: User) -> Dict[str, bool]:
    """Role permissions merged in role order, then the user's overrides."""
    merged: Dict[str, bool] = {}
    for role in user.roles:
        merged.update(role.permissions or {})
    merged.update(user.permissions_override or {})
    return merged


def has_permission(user: User, permission: str) -> bool:
    if is_admin(user):
        return True
    return bool(permission_map(user).get(permission))


class AuthorizationContext(Protocol):
    user_id: Optional[uuid.UUID]

    def has_approval_role_for_level(self, level: int) -> bool: ...

    def can(self, permission: str) -> bool: ...


class UserAuthorization:
    """AuthorizationContext backed by a user's role permission maps."""

    def __init__(self, user: User):
        self.user = user
        self.user_id = user.id

    def has_approval_role_for_level(self, level: int) -> bool:
        perm = APPROVAL_LEVEL_PERMISSIONS.get(level)
        return bool(perm) and has_permission(self.user, perm)

    def can(self, permission: str) -> bool:
        return has_permission(self.user, permission)

    def __repr__(self) -> str:
        return f"UserAuthorization(user_id={self.user_id})"

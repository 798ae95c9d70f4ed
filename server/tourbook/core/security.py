"""Role checks shared by dependencies and services."""

from .exceptions import AuthorizationError

ADMIN_ROLE = "ADMIN"


def is_admin(current_user: dict) -> bool:
    return ADMIN_ROLE in (current_user.get("roles") or [])


def ensure_owner_or_admin(owner_id: str, current_user: dict, resource_type: str) -> None:
    """
    Raises:
        AuthorizationError: Unless the caller owns the resource or is an administrator
    """
    if owner_id != current_user.get("user_id") and not is_admin(current_user):
        raise AuthorizationError(f"You do not have access to this {resource_type}")

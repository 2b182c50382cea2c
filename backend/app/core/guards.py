"""
Security guards for role-based and roster-based access control.

Admins and managers act on every client; trainers only on the clients
assigned to them.
"""

from typing import List, Optional
from fastapi import Depends, HTTPException, status
from backend.app.models.enums import UserRole
from backend.app.core.dependencies import get_current_user
from backend.app.core.exceptions import InsufficientPermissionsError


def require_role(allowed_roles: List[UserRole]):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.get("/reports/commissions")
        async def report(current_user: dict = Depends(require_role([UserRole.ADMIN, UserRole.MANAGER]))):
            ...

    Raises:
        HTTPException 403 if user role is not in allowed_roles
    """
    async def role_checker(current_user: dict = Depends(get_current_user)) -> dict:
        try:
            user_role = UserRole(current_user.get("role"))
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid role"
            )

        if user_role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required role: {', '.join([r.value for r in allowed_roles])}"
            )

        return current_user

    return role_checker


def is_admin_or_manager(current_user: dict) -> bool:
    return current_user.get("role") in (UserRole.ADMIN.value, UserRole.MANAGER.value)


def verify_roster_access(assigned_trainer_id: Optional[int], current_user: dict) -> bool:
    """
    Verify that the current user may act on a client.

    Admins/Managers: always allowed.
    Trainers: only when they are the client's assigned trainer.
    """
    if is_admin_or_manager(current_user):
        return True
    return assigned_trainer_id is not None and assigned_trainer_id == current_user.get("user_id")


class RosterGuard:
    """
    Class-based guard for client-roster access.

    Usage:
        roster_guard.enforce(client.assigned_trainer_id, current_user, "client")
    """

    def enforce(
        self,
        assigned_trainer_id: Optional[int],
        current_user: dict,
        resource_name: str = "client"
    ):
        """Raise 403 if the current user may not act on this resource."""
        if not verify_roster_access(assigned_trainer_id, current_user):
            raise InsufficientPermissionsError(
                message=f"Access denied. You do not have permission to access this {resource_name}."
            )

    def filter_by_roster(self, current_user: dict) -> Optional[int]:
        """
        Get the trainer id to filter queries by.

        Returns None for admins/managers (no filtering needed).
        """
        if is_admin_or_manager(current_user):
            return None
        return current_user.get("user_id")


roster_guard = RosterGuard()

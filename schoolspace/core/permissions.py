"""
Permission System

Two levels matter to the tenancy layer:
- platform_admin: operates the platform itself (onboarding, status
  changes, reconciliation). Not bound to any school.
- everyone else: acts inside the one school the resolver hands them.

School-level roles (admin, teacher, parent) are carried through for the
domain endpoints but not interpreted here.
"""
from fastapi import HTTPException, status

from schoolspace.models.user import User, UserRole


class PermissionDenied(HTTPException):
    """Custom exception for permission denied errors."""

    error_type = "permission_denied"

    def __init__(self, detail: str = "Permission denied"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=detail
        )


def is_platform_admin(user: User) -> bool:
    return user.role == UserRole.PLATFORM_ADMIN.value


def require_platform_admin(user: User) -> None:
    """Raise PermissionDenied unless `user` operates the platform."""
    if not is_platform_admin(user):
        raise PermissionDenied(detail="This action requires platform administrator access")

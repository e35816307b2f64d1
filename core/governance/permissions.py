"""Users, roles and the capabilities they grant.

Authentication happens outside this service; callers arrive with an already
resolved user id and role.
"""

from __future__ import annotations

from enum import Enum

from pydantic import Field

from common.models import BaseModel

from .errors import AuthorizationError


class Role(str, Enum):
    """Roles ordered from least to most privileged."""

    VIEWER = "viewer"
    ANALYST = "analyst"
    MANAGER = "manager"
    ADMIN = "admin"


class Permission(str, Enum):
    """Capabilities granted by roles."""

    VIEW = "view"
    ANALYZE = "analyze"
    EDIT = "edit"
    APPROVE = "approve"
    DELETE = "delete"
    ADMIN = "admin"


ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    Role.VIEWER: frozenset({Permission.VIEW}),
    Role.ANALYST: frozenset({Permission.VIEW, Permission.ANALYZE}),
    Role.MANAGER: frozenset(
        {Permission.VIEW, Permission.ANALYZE, Permission.EDIT, Permission.APPROVE}
    ),
    Role.ADMIN: frozenset(Permission),
}


class User(BaseModel):
    """Reference to an authenticated operator."""

    id: str = Field(min_length=1)
    name: str = Field(default="")
    email: str | None = Field(default=None)
    role: Role = Field(default=Role.VIEWER)

    def has(self, permission: Permission) -> bool:
        return permission in ROLE_PERMISSIONS[Role(self.role)]

    @property
    def can_approve(self) -> bool:
        return self.has(Permission.APPROVE)

    @property
    def can_edit(self) -> bool:
        return self.has(Permission.EDIT)


SYSTEM_USER = User(id="system", name="System", role=Role.ADMIN)


def require(user: User, permission: Permission, action: str) -> None:
    """Raise AuthorizationError unless ``user`` holds ``permission``."""
    if not user.has(permission):
        raise AuthorizationError(
            f"User {user.id} ({user.role}) lacks '{permission.value}' permission to {action}",
            user_id=user.id,
            required=permission.value,
        )

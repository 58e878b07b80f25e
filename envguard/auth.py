"""Acting user and the authorization checks the core consumes.

User and role bookkeeping lives outside the core; it only needs to know
who is acting (recorded on audit entries) and whether they may write.
"""
from enum import Enum

from pydantic import BaseModel

from .exceptions import PermissionDenied


class Role(str, Enum):
    ADMIN = "admin"
    EDITOR = "editor"
    VIEWER = "viewer"


class Actor(BaseModel):
    user_id: str = "system"
    user_name: str = "system"
    ip_address: str = "localhost"
    role: Role = Role.ADMIN

    @property
    def can_write(self) -> bool:
        return self.role in (Role.ADMIN, Role.EDITOR)

    def require_write(self, action: str, entity_id: str | None = None) -> None:
        """Raise PermissionDenied unless this actor may mutate the store."""
        if not self.can_write:
            raise PermissionDenied(
                f"User '{self.user_name}' with role '{self.role.value}' "
                "cannot modify the store",
                entity_id=entity_id,
                action=action,
            )


SYSTEM = Actor()

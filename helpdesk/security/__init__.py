"""Identity, capability and visibility rules shared by ticket operations."""

from .identity import SYSTEM_ACTOR, Actor, Role, UserStatus
from .permissions import Permission, has_permission

__all__ = [
    "SYSTEM_ACTOR",
    "Actor",
    "Permission",
    "Role",
    "UserStatus",
    "has_permission",
]

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


class Role(str, Enum):
    """Platform roles as stored on the identity record."""

    STUDENT = "STUDENT"
    PROFESSOR = "PROFESSOR"
    TA = "TA"
    ADMIN = "ADMIN"


class Permission(str, Enum):
    SEND_NOTIFICATIONS = "SEND_NOTIFICATIONS"
    NOTIFY_TEAM = "NOTIFY_TEAM"
    NOTIFY_COURSE = "NOTIFY_COURSE"
    MANAGE_COURSE = "MANAGE_COURSE"
    VIEW_TEAM = "VIEW_TEAM"


ROLE_PERMISSIONS: dict[Role, tuple[Permission, ...]] = {
    Role.STUDENT: (Permission.VIEW_TEAM,),
    Role.TA: (
        Permission.VIEW_TEAM,
        Permission.SEND_NOTIFICATIONS,
        Permission.NOTIFY_TEAM,
    ),
    Role.PROFESSOR: (
        Permission.VIEW_TEAM,
        Permission.SEND_NOTIFICATIONS,
        Permission.NOTIFY_TEAM,
        Permission.NOTIFY_COURSE,
        Permission.MANAGE_COURSE,
    ),
    Role.ADMIN: tuple(Permission),
}


def authorities_for_role(role: Role) -> List[str]:
    """Return the authority strings granted to a role, role marker first."""
    return [f"ROLE_{role.value}"] + [perm.value for perm in ROLE_PERMISSIONS[role]]


@dataclass
class Identity:
    """Authoritative user record as seen by the authentication core."""

    id: int
    email: str
    role: Role = Role.STUDENT
    first_name: str = ""
    last_name: str = ""
    team_id: Optional[int] = None
    course_id: Optional[int] = None
    is_active: bool = True
    is_locked: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def authorities(self) -> List[str]:
        return authorities_for_role(self.role)


@dataclass(frozen=True)
class IdentitySummary:
    """Public view of an identity returned alongside issued tokens."""

    id: int
    email: str
    role: Role
    first_name: str
    last_name: str
    full_name: str
    team_id: Optional[int] = None
    course_id: Optional[int] = None

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentitySummary":
        return cls(
            id=identity.id,
            email=identity.email,
            role=identity.role,
            first_name=identity.first_name,
            last_name=identity.last_name,
            full_name=identity.full_name,
            team_id=identity.team_id,
            course_id=identity.course_id,
        )

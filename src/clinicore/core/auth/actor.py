"""
Actor Identity Model

An Actor is the authenticated caller a capability check is made for. It is
always passed explicitly into the resolver; nothing here reads a global
"current user".
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Role(str, Enum):
    """Coarse-grained actor classification"""
    ADMIN = "admin"
    DOCTOR = "doctor"
    RECEPTIONIST = "receptionist"
    PATIENT = "patient"

    @classmethod
    def parse(cls, value: Any) -> Optional["Role"]:
        """
        Parse a role value coming from the store.

        Returns None for missing values. Unrecognised strings raise
        ValueError so a corrupt row is never silently mapped onto a role.
        """
        if value is None or value == "":
            return None
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())


@dataclass(frozen=True)
class Actor:
    """
    Authenticated caller.

    The role is fixed for the lifetime of a session. A changed role arrives
    as a new Actor value with the same actor_id.
    """
    actor_id: str
    role: Optional[Role] = None
    display_name: Optional[str] = None
    email: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    @classmethod
    def from_profile(cls, data: Dict[str, Any]) -> "Actor":
        """Build from a profile/user_roles row ({"user_id", "role", ...})."""
        actor_id = data.get("user_id") or data.get("id")
        if not actor_id:
            raise ValueError("Profile row has no user_id")

        return cls(
            actor_id=str(actor_id),
            role=Role.parse(data.get("role")),
            display_name=data.get("full_name") or data.get("display_name"),
            email=data.get("email"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "actor_id": self.actor_id,
            "role": self.role.value if self.role else None,
            "display_name": self.display_name,
            "email": self.email,
        }

"""
Permission Models

Typed rows for the `permissions` and `role_permissions` tables, and the
decoded PermissionOverride value the resolver consumes. Raw store rows are
loosely shaped; everything the core relies on passes through these models.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, FrozenSet, Iterable, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from ...core.auth.actor import Role


class PermissionRecord(BaseModel):
    """Row of the `permissions` table (administrator-editable catalog mirror)."""
    id: UUID = Field(default_factory=uuid4)
    name: str
    category: str = "general"
    description: Optional[str] = None
    name_ar: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PermissionRef(BaseModel):
    """Embedded `permissions (name, is_active)` join."""
    name: str
    is_active: Optional[bool] = True


class RolePermissionRow(BaseModel):
    """Row of the `role_permissions` binding table."""
    id: UUID = Field(default_factory=uuid4)
    role: Role
    permission_id: Optional[UUID] = None
    permissions: Optional[PermissionRef] = None
    created_at: Optional[datetime] = None

    @property
    def capability_name(self) -> Optional[str]:
        if self.permissions is None:
            return None
        if self.permissions.is_active is False:
            return None
        return self.permissions.name


class PermissionOverride(BaseModel):
    """
    Capability names currently granted to a role by the override table.

    Immutable once decoded.
    """
    model_config = ConfigDict(frozen=True)

    role: Role
    capabilities: FrozenSet[str] = frozenset()
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_rows(cls, role: Role, rows: Iterable[Any]) -> "PermissionOverride":
        """
        Decode joined role_permissions rows.

        Rows with a dangling or inactive permission are skipped. Rows of a
        different role are a decoding error.
        """
        names = set()
        for raw in rows:
            row = raw if isinstance(raw, RolePermissionRow) else RolePermissionRow.model_validate(raw)
            if row.role is not role:
                raise ValueError(f"Row for role {row.role.value} in {role.value} override set")
            name = row.capability_name
            if name:
                names.add(name)
        return cls(role=role, capabilities=frozenset(names))

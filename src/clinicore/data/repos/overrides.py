"""
Override Store

Loads and edits the administrator-managed role→capability bindings held in
the `role_permissions` table (joined to `permissions` for the capability
name). Everything leaving this module is typed: raw rows are decoded into a
PermissionOverride here, and any store or decoding failure is reported as
AuthorizationUnavailable.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

from pydantic import ValidationError

from ...core.auth.actor import Role
from ...errors import AuthorizationUnavailable, UnknownCapability
from ..models.permissions import PermissionOverride, PermissionRecord, RolePermissionRow
from .base import Repository, execute

if TYPE_CHECKING:
    from ...core.capability_catalog import CapabilityCatalog

logger = logging.getLogger(__name__)

BINDING_COLUMNS = "id, role, permission_id, created_at, permissions (name, is_active)"


class PermissionRepository(Repository[PermissionRecord]):
    """Repository for the `permissions` table."""

    def __init__(self, client: Any = None, table: str = "permissions"):
        super().__init__(client)
        self._table = table

    @property
    def table_name(self) -> str:
        return self._table

    @property
    def model_class(self) -> type[PermissionRecord]:
        return PermissionRecord

    async def get_by_name(self, name: str) -> Optional[PermissionRecord]:
        """Find a permission by its capability name."""
        if self.client:
            query = self.client.table(self.table_name).select("*").eq("name", name).limit(1)
            response = await execute(query)
            return PermissionRecord(**response.data[0]) if response.data else None

        for record in self._in_memory_store.values():
            if record.name == name:
                return record
        return None

    async def list_ordered(self) -> list[PermissionRecord]:
        """All permissions ordered by category, then name."""
        if self.client:
            query = self.client.table(self.table_name).select("*").order("category").order("name")
            response = await execute(query)
            return [PermissionRecord(**r) for r in response.data]

        return sorted(self._in_memory_store.values(), key=lambda r: (r.category, r.name))


class RolePermissionRepository(Repository[RolePermissionRow]):
    """Repository for the `role_permissions` binding table."""

    def __init__(
        self,
        client: Any = None,
        table: str = "role_permissions",
        permissions: Optional[PermissionRepository] = None,
    ):
        super().__init__(client)
        self._table = table
        self._permissions = permissions

    @property
    def table_name(self) -> str:
        return self._table

    @property
    def model_class(self) -> type[RolePermissionRow]:
        return RolePermissionRow

    async def fetch_for_role(self, role: Role) -> list[dict]:
        """
        Raw joined rows for a role.

        Rows are returned undecoded so that a malformed store response is
        caught by the caller's decoding step.
        """
        if self.client:
            query = self.client.table(self.table_name).select(BINDING_COLUMNS).eq("role", role.value)
            response = await execute(query)
            return list(response.data or [])

        rows = []
        for binding in self._in_memory_store.values():
            if binding.role is not role:
                continue
            row = binding.model_dump(mode="json", exclude={"permissions"})
            permission = None
            if self._permissions is not None and binding.permission_id is not None:
                permission = await self._permissions.get(binding.permission_id)
            row["permissions"] = (
                {"name": permission.name, "is_active": permission.is_active} if permission else None
            )
            rows.append(row)
        return rows

    async def find(self, role: Role, permission_id: Any) -> Optional[RolePermissionRow]:
        """Find the binding of a permission to a role."""
        if self.client:
            query = (
                self.client.table(self.table_name)
                .select("*")
                .eq("role", role.value)
                .eq("permission_id", str(permission_id))
                .limit(1)
            )
            response = await execute(query)
            return RolePermissionRow(**response.data[0]) if response.data else None

        for binding in self._in_memory_store.values():
            if binding.role is role and binding.permission_id == permission_id:
                return binding
        return None


class OverrideStore:
    """
    Accessor for dynamic role overrides.

    Example:
        store = OverrideStore(supabase_client)
        override = await store.load(Role.DOCTOR)
        "create_appointments" in override.capabilities
    """

    def __init__(
        self,
        client: Any = None,
        override_table: str = "role_permissions",
        permission_table: str = "permissions",
    ):
        self.permissions = PermissionRepository(client, permission_table)
        self.bindings = RolePermissionRepository(client, override_table, self.permissions)

    @property
    def is_in_memory(self) -> bool:
        return self.bindings.client is None

    async def load(self, role: Role) -> PermissionOverride:
        """
        Load the override set for a role.

        Raises:
            AuthorizationUnavailable: fetch failed or rows could not be decoded
        """
        try:
            rows = await self.bindings.fetch_for_role(role)
        except Exception as e:
            logger.warning(f"Override fetch failed for {role.value}: {e}")
            raise AuthorizationUnavailable(role.value, f"fetch failed: {e}") from e

        try:
            override = PermissionOverride.from_rows(role, rows)
        except (ValidationError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Override rows for {role.value} could not be decoded: {e}")
            raise AuthorizationUnavailable(role.value, f"malformed override rows: {e}") from e

        logger.debug(f"Loaded {len(override.capabilities)} overrides for {role.value}")
        return override

    async def list_permissions(self) -> list[PermissionRecord]:
        return await self.permissions.list_ordered()

    async def grant(self, role: Role, name: str) -> bool:
        """
        Bind a capability to a role.

        Returns:
            True if a binding was created, False if it already existed

        Raises:
            UnknownCapability: no permission row carries that name
        """
        permission = await self.permissions.get_by_name(name)
        if permission is None:
            raise UnknownCapability(name)

        if await self.bindings.find(role, permission.id):
            return False

        await self.bindings.create(RolePermissionRow(role=role, permission_id=permission.id))
        logger.info(f"Granted {name} to {role.value}")
        return True

    async def revoke(self, role: Role, name: str) -> bool:
        """
        Remove a capability binding from a role.

        Returns:
            True if a binding was removed
        """
        permission = await self.permissions.get_by_name(name)
        if permission is None:
            raise UnknownCapability(name)

        binding = await self.bindings.find(role, permission.id)
        if binding is None:
            return False

        removed = await self.bindings.delete(binding.id)
        if removed:
            logger.info(f"Revoked {name} from {role.value}")
        return removed

    async def seed_defaults(self, catalog: "CapabilityCatalog") -> dict[str, int]:
        """
        Mirror the static catalog into the store.

        Creates missing permission rows and binds every non-admin role to its
        catalog defaults. Existing rows are left alone.

        Returns:
            Dict with counts of created items
        """
        created = {"permissions": 0, "bindings": 0}

        for definition in sorted(catalog.names()):
            if await self.permissions.get_by_name(definition) is None:
                entry = catalog.require(definition)
                await self.permissions.create(PermissionRecord(
                    name=entry.name,
                    category=entry.category,
                    description=entry.description,
                ))
                created["permissions"] += 1

        for role in Role:
            if role is Role.ADMIN:
                continue
            for name in sorted(catalog.default_grants(role)):
                if await self.grant(role, name):
                    created["bindings"] += 1

        logger.info(f"Seeded overrides: {created}")
        return created

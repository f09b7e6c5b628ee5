"""
Test Authorization Resolver

Admin bypass, override membership, single-flight fetches, forced refresh,
role changes and fail-closed behaviour when the store is unavailable.
"""

import asyncio
from collections import Counter
from unittest.mock import AsyncMock

import pytest

from clinicore.core.auth import Actor, AuthorizationResolver, CheckOutcome, ResolutionStatus, Role
from clinicore.core.capability_catalog import CapabilityCatalog
from clinicore.data.models.permissions import PermissionOverride
from clinicore.errors import AuthorizationUnavailable
from clinicore.realtime import ChangeKind, InMemoryChangeFeed, SubscriptionManager


class FakeOverrideStore:
    """Counts loads; optionally blocks on a gate or fails."""

    def __init__(self, grants=None):
        self.grants = {role: set(names) for role, names in (grants or {}).items()}
        self.calls = Counter()
        self.gate = None
        self.error = None

    async def load(self, role):
        self.calls[role] += 1
        # Snapshot before suspending
        names = frozenset(self.grants.get(role, ()))
        error = self.error
        if self.gate is not None:
            await self.gate.wait()
        if error:
            raise AuthorizationUnavailable(role.value, error)
        return PermissionOverride(role=role, capabilities=names)


async def drain(rounds: int = 20):
    for _ in range(rounds):
        await asyncio.sleep(0)


ADMIN = Actor("admin-1", Role.ADMIN)
DOCTOR = Actor("doc-1", Role.DOCTOR)
RECEPTIONIST = Actor("rec-1", Role.RECEPTIONIST)
PATIENT = Actor("pat-1", Role.PATIENT)


class TestAdminBypass:
    """Admin holds every capability regardless of stored data"""

    @pytest.mark.asyncio
    async def test_admin_never_fetches(self):
        store = AsyncMock()
        store.load.side_effect = RuntimeError("store down")
        resolver = AuthorizationResolver(store)

        snapshot = await resolver.resolve(ADMIN)

        assert snapshot.status is ResolutionStatus.BYPASS
        store.load.assert_not_awaited()
        assert resolver.check(ADMIN, "manage_permissions")

    def test_admin_allowed_without_resolution(self):
        resolver = AuthorizationResolver(FakeOverrideStore())
        for name in CapabilityCatalog.default().names():
            assert resolver.evaluate(ADMIN, name) is CheckOutcome.ALLOW

    @pytest.mark.asyncio
    async def test_admin_unaffected_by_empty_overrides(self):
        store = FakeOverrideStore({Role.ADMIN: set()})
        resolver = AuthorizationResolver(store)
        await resolver.resolve(ADMIN)
        assert resolver.check(ADMIN, "delete_patients")
        assert resolver.capabilities(ADMIN) == CapabilityCatalog.default().names()


class TestMembership:
    """Non-admin roles are decided by the override set"""

    @pytest.mark.asyncio
    async def test_create_appointments_across_roles(self):
        store = FakeOverrideStore({
            Role.RECEPTIONIST: {"create_appointments", "view_appointments"},
            Role.DOCTOR: {"view_appointments"},
            Role.PATIENT: set(),
        })
        resolver = AuthorizationResolver(store)
        for actor in (ADMIN, DOCTOR, RECEPTIONIST, PATIENT):
            await resolver.resolve(actor)

        assert resolver.check(ADMIN, "create_appointments")
        assert resolver.check(RECEPTIONIST, "create_appointments")
        assert not resolver.check(DOCTOR, "create_appointments")
        assert not resolver.check(PATIENT, "create_appointments")

    @pytest.mark.asyncio
    async def test_override_is_authoritative_by_default(self):
        # Catalog default grants receptionists create_appointments
        store = FakeOverrideStore({Role.RECEPTIONIST: {"view_dashboard"}})
        resolver = AuthorizationResolver(store)
        await resolver.resolve(RECEPTIONIST)
        assert resolver.evaluate(RECEPTIONIST, "create_appointments") is CheckOutcome.DENY

    @pytest.mark.asyncio
    async def test_static_floor_unions_catalog_defaults(self):
        store = FakeOverrideStore({Role.DOCTOR: {"export_reports"}})
        resolver = AuthorizationResolver(store, static_floor=True)
        await resolver.resolve(DOCTOR)
        assert resolver.check(DOCTOR, "export_reports")
        assert resolver.check(DOCTOR, "view_medical_records")
        assert not resolver.check(DOCTOR, "manage_users")

    @pytest.mark.asyncio
    async def test_unknown_capability_denied(self):
        store = FakeOverrideStore({Role.DOCTOR: {"view_patients", "teleport"}})
        resolver = AuthorizationResolver(store)
        await resolver.resolve(DOCTOR)
        assert resolver.evaluate(DOCTOR, "teleport") is CheckOutcome.DENY
        assert "teleport" not in resolver.capabilities(DOCTOR)

    @pytest.mark.asyncio
    async def test_actor_without_role_denied(self):
        store = FakeOverrideStore()
        resolver = AuthorizationResolver(store)
        nobody = Actor("anon")
        snapshot = await resolver.resolve(nobody)
        assert snapshot.status is ResolutionStatus.NO_ROLE
        assert resolver.evaluate(nobody, "view_dashboard") is CheckOutcome.DENY
        assert sum(store.calls.values()) == 0

    @pytest.mark.asyncio
    async def test_has_any_and_has_all(self):
        store = FakeOverrideStore({Role.PATIENT: {"view_dashboard", "view_notifications"}})
        resolver = AuthorizationResolver(store)
        await resolver.resolve(PATIENT)
        assert resolver.has_any(PATIENT, ["manage_users", "view_dashboard"])
        assert not resolver.has_any(PATIENT, ["manage_users", "export_reports"])
        assert resolver.has_all(PATIENT, ["view_dashboard", "view_notifications"])
        assert not resolver.has_all(PATIENT, ["view_dashboard", "manage_users"])


class TestFailClosed:
    """Unloaded or unavailable overrides never grant anything"""

    def test_unknown_before_resolution(self):
        resolver = AuthorizationResolver(FakeOverrideStore({Role.DOCTOR: {"view_patients"}}))
        assert resolver.evaluate(DOCTOR, "view_patients") is CheckOutcome.UNKNOWN
        assert not resolver.check(DOCTOR, "view_patients")

    @pytest.mark.asyncio
    async def test_store_failure_yields_unknown(self):
        store = FakeOverrideStore({Role.DOCTOR: {"view_patients"}})
        store.error = "connection refused"
        resolver = AuthorizationResolver(store)

        snapshot = await resolver.resolve(DOCTOR)

        assert snapshot.status is ResolutionStatus.UNAVAILABLE
        assert "connection refused" in snapshot.error
        assert resolver.evaluate(DOCTOR, "view_patients") is CheckOutcome.UNKNOWN
        assert not resolver.check(DOCTOR, "view_patients")
        # Admin bypass is unaffected by the outage
        assert resolver.check(ADMIN, "view_patients")

    @pytest.mark.asyncio
    async def test_unavailable_snapshot_retried_on_next_resolve(self):
        store = FakeOverrideStore({Role.DOCTOR: {"view_patients"}})
        store.error = "timeout"
        resolver = AuthorizationResolver(store)
        await resolver.resolve(DOCTOR)

        store.error = None
        snapshot = await resolver.resolve(DOCTOR)

        assert snapshot.status is ResolutionStatus.RESOLVED
        assert resolver.check(DOCTOR, "view_patients")
        assert store.calls[Role.DOCTOR] == 2

    @pytest.mark.asyncio
    async def test_invalidate_returns_to_unknown(self):
        store = FakeOverrideStore({Role.DOCTOR: {"view_patients"}})
        resolver = AuthorizationResolver(store)
        await resolver.resolve(DOCTOR)
        resolver.invalidate(Role.DOCTOR)
        assert resolver.evaluate(DOCTOR, "view_patients") is CheckOutcome.UNKNOWN


class TestFetching:
    """Single-flight loads, refresh and role changes"""

    @pytest.mark.asyncio
    async def test_concurrent_resolves_share_one_fetch(self):
        store = FakeOverrideStore({Role.DOCTOR: {"view_patients"}})
        store.gate = asyncio.Event()
        resolver = AuthorizationResolver(store)

        tasks = [
            asyncio.create_task(resolver.resolve(Actor(f"doc-{i}", Role.DOCTOR)))
            for i in range(5)
        ]
        await drain()
        store.gate.set()
        results = await asyncio.gather(*tasks)

        assert store.calls[Role.DOCTOR] == 1
        assert all(r is results[0] for r in results)

    @pytest.mark.asyncio
    async def test_cached_snapshot_reused(self):
        store = FakeOverrideStore({Role.DOCTOR: {"view_patients"}})
        resolver = AuthorizationResolver(store)
        await resolver.resolve(DOCTOR)
        await resolver.resolve(Actor("doc-2", Role.DOCTOR))
        assert store.calls[Role.DOCTOR] == 1

    @pytest.mark.asyncio
    async def test_refresh_is_observed_by_later_checks(self):
        store = FakeOverrideStore({Role.DOCTOR: {"view_patients"}})
        resolver = AuthorizationResolver(store)
        await resolver.resolve(DOCTOR)
        assert not resolver.check(DOCTOR, "create_appointments")

        store.grants[Role.DOCTOR].add("create_appointments")
        await resolver.refresh(Role.DOCTOR)

        assert resolver.check(DOCTOR, "create_appointments")
        assert store.calls[Role.DOCTOR] == 2

    @pytest.mark.asyncio
    async def test_refresh_does_not_join_stale_fetch(self):
        store = FakeOverrideStore({Role.DOCTOR: set()})
        store.gate = asyncio.Event()
        resolver = AuthorizationResolver(store)

        first = asyncio.create_task(resolver.resolve(DOCTOR))
        await drain()
        store.grants[Role.DOCTOR].add("view_reports")
        refresh = asyncio.create_task(resolver.refresh(Role.DOCTOR))
        await drain()
        store.gate.set()
        await asyncio.gather(first, refresh)

        assert store.calls[Role.DOCTOR] == 2
        assert resolver.check(DOCTOR, "view_reports")
        assert resolver.snapshot(DOCTOR).generation == 2

    @pytest.mark.asyncio
    async def test_back_to_back_refreshes_see_the_later_edit(self):
        store = FakeOverrideStore({Role.DOCTOR: set()})
        store.gate = asyncio.Event()
        resolver = AuthorizationResolver(store)

        first = asyncio.create_task(resolver.refresh(Role.DOCTOR))
        await drain()
        store.grants[Role.DOCTOR].add("view_reports")
        second = asyncio.create_task(resolver.refresh(Role.DOCTOR))
        await drain()
        store.gate.set()
        await asyncio.gather(first, second)

        assert store.calls[Role.DOCTOR] == 2
        assert resolver.check(DOCTOR, "view_reports")

    @pytest.mark.asyncio
    async def test_refresh_all_seen_roles(self):
        store = FakeOverrideStore({Role.DOCTOR: set(), Role.PATIENT: set()})
        resolver = AuthorizationResolver(store)
        await resolver.resolve(DOCTOR)
        await resolver.resolve(PATIENT)
        await resolver.resolve(ADMIN)

        await resolver.refresh()

        assert store.calls[Role.DOCTOR] == 2
        assert store.calls[Role.PATIENT] == 2
        assert store.calls[Role.ADMIN] == 0

    @pytest.mark.asyncio
    async def test_role_change_forces_reload(self):
        store = FakeOverrideStore({
            Role.DOCTOR: {"view_medical_records"},
            Role.RECEPTIONIST: {"create_appointments"},
        })
        resolver = AuthorizationResolver(store)
        await resolver.resolve(RECEPTIONIST)
        await resolver.resolve(Actor("user-9", Role.DOCTOR))

        promoted = Actor("user-9", Role.RECEPTIONIST)
        await resolver.resolve(promoted)

        assert store.calls[Role.RECEPTIONIST] == 2
        assert resolver.check(promoted, "create_appointments")
        assert not resolver.check(promoted, "view_medical_records")


class TestWatch:
    """Override table changes refresh resolved roles"""

    @pytest.mark.asyncio
    async def test_change_event_triggers_refresh(self):
        store = FakeOverrideStore({Role.DOCTOR: set()})
        resolver = AuthorizationResolver(store)
        feed = InMemoryChangeFeed()
        manager = SubscriptionManager(feed)

        handles = await resolver.watch(manager)
        assert len(handles) == 2
        await resolver.resolve(DOCTOR)

        store.grants[Role.DOCTOR].add("export_reports")
        feed.emit("role_permissions", ChangeKind.INSERT, {"role": "doctor"})
        await drain()

        assert resolver.check(DOCTOR, "export_reports")

        for handle in handles:
            await handle.release()
        assert len(manager) == 0
        await manager.close()

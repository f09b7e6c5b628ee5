"""
Authorization Resolver

Decides whether an actor may perform a named action by combining:
- the admin bypass (explicit policy branch, never data-driven)
- the static CapabilityCatalog (valid names, optional static floor)
- the dynamic override set loaded through the OverrideStore

Resolution suspends while overrides are fetched; checks are synchronous
reads against the cached snapshot. Snapshots are keyed by role since the
override set is a function of the role alone; actors sharing a role share
one snapshot and one in-flight fetch.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Dict, FrozenSet, Iterable, List, Optional

from .actor import Actor, Role
from ..capability_catalog import CapabilityCatalog
from ...errors import AuthorizationUnavailable, UnknownCapability

if TYPE_CHECKING:
    from ...data.repos.overrides import OverrideStore
    from ...realtime.subscriptions import SubscriptionHandle, SubscriptionManager

logger = logging.getLogger(__name__)


class CheckOutcome(str, Enum):
    """Result of a capability evaluation"""
    ALLOW = "allow"
    DENY = "deny"
    UNKNOWN = "unknown"  # Overrides not loaded yet, or the store was unavailable


class ResolutionStatus(str, Enum):
    """How a ResolvedCapabilitySet came about"""
    RESOLVED = "resolved"        # Overrides loaded
    UNAVAILABLE = "unavailable"  # Override fetch failed; grants nothing
    NO_ROLE = "no_role"          # Actor has no role; grants nothing
    BYPASS = "bypass"            # Admin; every capability


@dataclass(frozen=True)
class ResolvedCapabilitySet:
    """Immutable per-role snapshot owned by the resolver."""
    role: Optional[Role]
    capabilities: FrozenSet[str]
    status: ResolutionStatus
    generation: int = 0
    resolved_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error: Optional[str] = None

    @property
    def is_available(self) -> bool:
        return self.status in (ResolutionStatus.RESOLVED, ResolutionStatus.BYPASS)

    def grants(self, name: str) -> bool:
        if self.status is ResolutionStatus.BYPASS:
            return True
        return name in self.capabilities


class AuthorizationResolver:
    """
    Capability check for explicit actors.

    Example:
        resolver = AuthorizationResolver(store, CapabilityCatalog.default())
        await resolver.resolve(actor)
        if resolver.check(actor, "create_appointments"):
            ...

    Args:
        store: OverrideStore providing per-role override sets
        catalog: Static capability table (defaults to the built-in catalog)
        static_floor: Union catalog defaults into non-admin override sets.
            Off by default: the override set is authoritative.
    """

    def __init__(
        self,
        store: "OverrideStore",
        catalog: Optional[CapabilityCatalog] = None,
        static_floor: bool = False,
    ):
        self.store = store
        self.catalog = catalog or CapabilityCatalog.default()
        self.static_floor = static_floor

        self._cache: Dict[Role, ResolvedCapabilitySet] = {}
        self._inflight: Dict[Role, "asyncio.Future[ResolvedCapabilitySet]"] = {}
        self._actor_roles: Dict[str, Optional[Role]] = {}
        self._generation = 0

    # =========================================================================
    # RESOLUTION (may suspend)
    # =========================================================================

    async def resolve(self, actor: Actor) -> ResolvedCapabilitySet:
        """
        Resolve the capability set for an actor.

        Never raises for store failures: an unavailable snapshot is returned
        instead and the admin bypass is unaffected.
        """
        role = actor.role
        previous = self._actor_roles.get(actor.actor_id)
        self._actor_roles[actor.actor_id] = role

        if role is None:
            return ResolvedCapabilitySet(role=None, capabilities=frozenset(), status=ResolutionStatus.NO_ROLE)

        if role is Role.ADMIN:
            return ResolvedCapabilitySet(
                role=role, capabilities=self.catalog.names(), status=ResolutionStatus.BYPASS
            )

        if previous is not None and previous is not role:
            logger.info(f"Role of {actor.actor_id} changed {previous.value} -> {role.value}, rebuilding")
            return await self._load(role, forced=True)

        cached = self._cache.get(role)
        if cached is not None and cached.status is ResolutionStatus.RESOLVED:
            return cached

        return await self._load(role, forced=False)

    async def refresh(self, role: Optional[Role] = None) -> Optional[ResolvedCapabilitySet]:
        """
        Force a reload of overrides.

        Every check starting after this returns observes the reloaded set.

        Args:
            role: Role to reload; None reloads every non-admin role seen so far
        """
        if role is not None:
            if role is Role.ADMIN:
                return None
            return await self._load(role, forced=True)

        roles = {r for r in self._cache}
        roles.update(r for r in self._actor_roles.values() if r is not None and r is not Role.ADMIN)
        if roles:
            await asyncio.gather(*(self._load(r, forced=True) for r in roles))
        return None

    def invalidate(self, role: Optional[Role] = None) -> None:
        """Drop cached snapshots; checks report UNKNOWN until re-resolved."""
        if role is None:
            self._cache.clear()
        else:
            self._cache.pop(role, None)

    def forget(self, actor: Actor) -> None:
        """Stop tracking an actor (e.g. on sign-out)."""
        self._actor_roles.pop(actor.actor_id, None)

    async def _load(self, role: Role, forced: bool) -> ResolvedCapabilitySet:
        pending = self._inflight.get(role)
        # Concurrent resolves join one fetch. A forced call never joins a fetch
        # already in flight; the generation guard keeps the newest result.
        if pending is None or forced:
            self._generation += 1
            pending = asyncio.ensure_future(self._fetch(role, self._generation))
            self._inflight[role] = pending
            pending.add_done_callback(lambda fut, r=role: self._clear_inflight(r, fut))

        return await asyncio.shield(pending)

    def _clear_inflight(self, role: Role, fut: "asyncio.Future") -> None:
        if self._inflight.get(role) is fut:
            del self._inflight[role]

    async def _fetch(self, role: Role, generation: int) -> ResolvedCapabilitySet:
        try:
            override = await self.store.load(role)
        except AuthorizationUnavailable as e:
            snapshot = ResolvedCapabilitySet(
                role=role,
                capabilities=frozenset(),
                status=ResolutionStatus.UNAVAILABLE,
                generation=generation,
                error=e.reason,
            )
        else:
            capabilities = override.capabilities
            unknown = capabilities - self.catalog.names()
            if unknown:
                logger.debug(f"Ignoring unknown override names for {role.value}: {sorted(unknown)}")
            if self.static_floor:
                capabilities = capabilities | self.catalog.default_grants(role)
            snapshot = ResolvedCapabilitySet(
                role=role,
                capabilities=frozenset(capabilities),
                status=ResolutionStatus.RESOLVED,
                generation=generation,
            )

        current = self._cache.get(role)
        if current is None or current.generation <= generation:
            self._cache[role] = snapshot
            logger.info(
                f"Resolved {role.value}: {snapshot.status.value}, "
                f"{len(snapshot.capabilities)} capabilities (gen {generation})"
            )
        else:
            logger.debug(f"Discarding stale fetch for {role.value} (gen {generation} < {current.generation})")
        return snapshot

    # =========================================================================
    # CHECKS (synchronous)
    # =========================================================================

    def evaluate(self, actor: Actor, name: str) -> CheckOutcome:
        """
        Evaluate a capability for an actor against cached state.

        UNKNOWN means "still loading" or "store unavailable"; callers may
        treat it as denial but should not present it as one.
        """
        # Policy: admin holds every capability. Decided before any catalog or
        # override data is consulted so it cannot be edited away.
        if actor.role is Role.ADMIN:
            return CheckOutcome.ALLOW

        if actor.role is None:
            return CheckOutcome.DENY

        try:
            self.catalog.require(name)
        except UnknownCapability as e:
            logger.debug(f"{e}; denying for {actor.actor_id}")
            return CheckOutcome.DENY

        snapshot = self._cache.get(actor.role)
        if snapshot is None or snapshot.status is ResolutionStatus.UNAVAILABLE:
            return CheckOutcome.UNKNOWN

        return CheckOutcome.ALLOW if name in snapshot.capabilities else CheckOutcome.DENY

    def check(self, actor: Actor, name: str) -> bool:
        """True iff the actor currently holds the capability"""
        return self.evaluate(actor, name) is CheckOutcome.ALLOW

    def has_any(self, actor: Actor, names: Iterable[str]) -> bool:
        return any(self.check(actor, n) for n in names)

    def has_all(self, actor: Actor, names: Iterable[str]) -> bool:
        return all(self.check(actor, n) for n in names)

    def snapshot(self, actor: Actor) -> Optional[ResolvedCapabilitySet]:
        """Cached snapshot for the actor's role, without fetching"""
        if actor.role is None:
            return None
        if actor.role is Role.ADMIN:
            return ResolvedCapabilitySet(
                role=Role.ADMIN, capabilities=self.catalog.names(), status=ResolutionStatus.BYPASS
            )
        return self._cache.get(actor.role)

    def capabilities(self, actor: Actor) -> FrozenSet[str]:
        """Known capability names the actor currently holds"""
        snapshot = self.snapshot(actor)
        if snapshot is None:
            return frozenset()
        return snapshot.capabilities & self.catalog.names()

    # =========================================================================
    # LIVE OVERRIDES
    # =========================================================================

    async def watch(
        self,
        manager: "SubscriptionManager",
        tables: Iterable[str] = ("role_permissions", "permissions"),
    ) -> List["SubscriptionHandle"]:
        """
        Refresh every cached role whenever the override tables change.

        Returns:
            Subscription handles; release them to stop watching
        """
        from ...realtime.base import ChangeHandlers, SubscriptionTopic

        async def on_change(event) -> None:
            logger.info(f"Override table {event.topic.resource} changed ({event.kind.value}), refreshing")
            await self.refresh()

        handlers = ChangeHandlers(on_insert=on_change, on_update=on_change, on_delete=on_change)
        handles = []
        try:
            for table in tables:
                handles.append(await manager.subscribe(SubscriptionTopic(table), handlers))
        except BaseException:
            for handle in handles:
                await handle.release()
            raise
        return handles

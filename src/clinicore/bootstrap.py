"""
Clinic Core Bootstrap

Wires the store, catalog, resolver, connectivity monitor, reachability probe
and subscription manager from a ClinicConfig, and exposes the caller-facing
API (check, subscribe, unsubscribe, current_state).

Without Supabase credentials every backend falls back to its in-memory
implementation, which is what local development and tests use.
"""

import logging
from typing import Any, List, Optional

from .config import ClinicConfig, load_config
from .core.auth import Actor, AuthorizationResolver, CheckOutcome, ResolvedCapabilitySet
from .core.capability_catalog import CapabilityCatalog
from .core.connectivity import ConnectivityMonitor, ConnectivityState, ReachabilityProbe
from .data.repos.overrides import OverrideStore
from .realtime.base import ChangeFeedSource, ChangeHandlers, SubscriptionTopic
from .realtime.memory import InMemoryChangeFeed
from .realtime.subscriptions import SubscriptionHandle, SubscriptionManager
from .realtime.supabase_feed import SupabaseChangeFeed, create_async_supabase_client

logger = logging.getLogger(__name__)


class ClinicCore:
    """
    Example:
        async with await ClinicCore.from_config() as core:
            await core.resolve(actor)
            if core.check(actor, "create_appointments"):
                ...
            async with core.subscriptions.subscription(topic, handlers):
                ...
    """

    def __init__(
        self,
        config: ClinicConfig,
        store: OverrideStore,
        feed: ChangeFeedSource,
        monitor: Optional[ConnectivityMonitor] = None,
        catalog: Optional[CapabilityCatalog] = None,
        probe: Optional[ReachabilityProbe] = None,
        client: Any = None,
    ):
        self.config = config
        self.client = client
        self.catalog = catalog or CapabilityCatalog.default()
        self.store = store
        self.monitor = monitor or ConnectivityMonitor(config.connectivity.initially_online)
        self.probe = probe
        self.resolver = AuthorizationResolver(
            store, self.catalog, static_floor=config.authorization.static_floor
        )
        subs = config.subscriptions
        self.subscriptions = SubscriptionManager(
            feed,
            self.monitor,
            backoff_initial=subs.backoff_initial,
            backoff_max=subs.backoff_max,
            backoff_factor=subs.backoff_factor,
            max_online_attempts=subs.max_online_attempts,
        )
        self._override_watch: List[SubscriptionHandle] = []
        self._started = False

    @classmethod
    async def from_config(cls, config: Optional[ClinicConfig] = None) -> "ClinicCore":
        """Build every component from configuration."""
        config = config or load_config()
        auth = config.authorization

        client = None
        if config.supabase.is_configured:
            client = await create_async_supabase_client(config.supabase.url, config.supabase.key)
            store = OverrideStore(client, auth.override_table, auth.permission_table)
            feed: ChangeFeedSource = SupabaseChangeFeed(client, join_timeout=config.subscriptions.join_timeout)
        else:
            logger.warning("Supabase is not configured; using in-memory store and change feed")
            store = OverrideStore(None, auth.override_table, auth.permission_table)
            feed = InMemoryChangeFeed()

        monitor = ConnectivityMonitor(config.connectivity.initially_online)

        probe = None
        if config.connectivity.probe_enabled and config.probe_url:
            headers = {"apikey": config.supabase.key} if config.supabase.key else {}
            probe = ReachabilityProbe(
                monitor,
                config.probe_url,
                interval=config.connectivity.probe_interval,
                timeout=config.connectivity.probe_timeout,
                headers=headers,
            )

        return cls(config, store, feed, monitor=monitor, probe=probe, client=client)

    async def start(self) -> None:
        if self._started:
            return
        self._started = True

        if self.probe:
            self.probe.start()

        if self.config.authorization.watch_overrides:
            auth = self.config.authorization
            self._override_watch = await self.resolver.watch(
                self.subscriptions, tables=(auth.override_table, auth.permission_table)
            )

        logger.info("Clinic core started")

    async def stop(self) -> None:
        for handle in self._override_watch:
            await handle.release()
        self._override_watch = []

        if self.probe:
            await self.probe.stop()

        await self.subscriptions.close()
        self._started = False
        logger.info("Clinic core stopped")

    async def __aenter__(self) -> "ClinicCore":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    # =========================================================================
    # CALLER-FACING API
    # =========================================================================

    async def resolve(self, actor: Actor) -> ResolvedCapabilitySet:
        return await self.resolver.resolve(actor)

    def check(self, actor: Actor, capability: str) -> bool:
        return self.resolver.check(actor, capability)

    def evaluate(self, actor: Actor, capability: str) -> CheckOutcome:
        return self.resolver.evaluate(actor, capability)

    async def subscribe(self, topic: SubscriptionTopic, handlers: ChangeHandlers) -> SubscriptionHandle:
        return await self.subscriptions.subscribe(topic, handlers)

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        await self.subscriptions.unsubscribe(handle)

    def current_state(self) -> ConnectivityState:
        return self.monitor.current_state()

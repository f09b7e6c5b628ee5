"""
Connectivity Monitor

Tracks reachability of the backend and notifies listeners of transitions.

The monitor is purely observational: it consumes reachability edges from the
host environment (a ReachabilityProbe, an OS hook, a test) and performs no
retries of its own. Consumers:
- SubscriptionManager re-establishes channels on offline -> online
- write paths call require_online() before mutating
"""

import asyncio
import inspect
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Union

import httpx

from ..errors import OfflineError

logger = logging.getLogger(__name__)


class ConnectivityState(str, Enum):
    """Process-wide backend reachability"""
    ONLINE = "online"
    OFFLINE = "offline"

    @classmethod
    def from_reachable(cls, reachable: bool) -> "ConnectivityState":
        return cls.ONLINE if reachable else cls.OFFLINE


@dataclass(frozen=True)
class ConnectivityTransition:
    """One actual state change. Sequence numbers increase monotonically."""
    previous: ConnectivityState
    current: ConnectivityState
    sequence: int
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_reconnect(self) -> bool:
        return self.previous is ConnectivityState.OFFLINE and self.current is ConnectivityState.ONLINE


TransitionHandler = Callable[[ConnectivityTransition], Union[None, Awaitable[None]]]


class ConnectivityMonitor:
    """
    Two-state reachability tracker.

    Example:
        monitor = ConnectivityMonitor(initially_online=True)
        unsubscribe = monitor.on_transition(lambda t: print(t.current))
        monitor.signal(False)   # fires once
        monitor.signal(False)   # ignored, no transition
    """

    def __init__(self, initially_online: bool = True):
        self._state = ConnectivityState.from_reachable(initially_online)
        self._sequence = 0
        self._handlers: List[TransitionHandler] = []
        self._lock = threading.Lock()
        self._tasks: set = set()

    def current_state(self) -> ConnectivityState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._state is ConnectivityState.ONLINE

    def require_online(self, action: str = "this action") -> None:
        """Raise OfflineError for mutating callers while offline."""
        if not self.is_online:
            raise OfflineError(f"Backend unreachable; {action} is unavailable offline")

    def on_transition(self, handler: TransitionHandler) -> Callable[[], None]:
        """
        Register a transition handler.

        Plain handlers may be signalled from any thread. Coroutine handlers
        are scheduled on the running loop, so their signals must come from
        the loop thread.

        Returns:
            Callable that removes the handler
        """
        with self._lock:
            self._handlers.append(handler)

        def remove() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return remove

    def signal(self, reachable: bool) -> Optional[ConnectivityTransition]:
        """
        Feed a reachability observation.

        Returns:
            The transition if the state changed, None for a repeated signal
        """
        new_state = ConnectivityState.from_reachable(reachable)
        with self._lock:
            if new_state is self._state:
                return None
            self._sequence += 1
            transition = ConnectivityTransition(
                previous=self._state, current=new_state, sequence=self._sequence
            )
            self._state = new_state
            handlers = list(self._handlers)

        logger.info(f"Connectivity {transition.previous.value} -> {transition.current.value} (#{transition.sequence})")

        for handler in handlers:
            try:
                result = handler(transition)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            except Exception as e:
                logger.error(f"Error in connectivity handler: {e}")

        return transition


class ReachabilityProbe:
    """
    Host-side reachability signal source.

    Periodically issues a lightweight request against the backend and feeds
    the result into a ConnectivityMonitor. Only edges reach listeners; the
    monitor drops repeated observations.
    """

    def __init__(
        self,
        monitor: ConnectivityMonitor,
        url: str,
        interval: float = 15.0,
        timeout: float = 5.0,
        headers: Optional[dict] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.monitor = monitor
        self.url = url
        self.interval = interval
        self.timeout = timeout
        self.headers = headers or {}
        self._client = client
        self._owns_client = client is None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def probe_once(self) -> bool:
        """Single reachability probe. Any HTTP response counts as reachable."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        try:
            await self._client.get(self.url, headers=self.headers)
            reachable = True
        except httpx.HTTPError as e:
            logger.debug(f"Reachability probe failed: {e}")
            reachable = False

        self.monitor.signal(reachable)
        return reachable

    async def _run(self) -> None:
        while True:
            await self.probe_once()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"Reachability probe started ({self.url}, every {self.interval}s)")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

        logger.info("Reachability probe stopped")

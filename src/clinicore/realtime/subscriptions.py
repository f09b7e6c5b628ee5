"""
Subscription Manager

Multiplexes logical "watch this resource" requests onto change-feed channels.

Per topic there is at most one underlying channel, one FIFO event queue and
one dispatcher task. Every subscriber of the topic receives every event
(fan-out) in the order the feed delivered it. Channels are opened on the
first subscribe and closed on the last release.

Connectivity:
- while offline, channel establishment is retried with capped backoff
- once online, a channel that keeps failing becomes DEGRADED and every
  subscriber's on_degraded handler is told
- on offline -> online every active topic is re-established once; events
  missed while offline are not replayed
- a channel that fails after it was joined is replaced, and degrades like a
  new one if replacement keeps failing
"""

import asyncio
import inspect
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional
from uuid import uuid4

from .base import ChangeEvent, ChangeFeedSource, ChangeHandlers, FeedChannel, SubscriptionTopic
from ..core.connectivity import ConnectivityMonitor, ConnectivityTransition
from ..errors import SubscriptionEstablishError

logger = logging.getLogger(__name__)

_STOP = object()


class ChannelState(str, Enum):
    """Lifecycle of a topic's underlying channel"""
    PENDING = "pending"    # Being established (or retrying)
    OPEN = "open"
    DEGRADED = "degraded"  # Online and still failing to establish
    CLOSED = "closed"      # Torn down after the last release


class SubscriptionHandle:
    """
    Caller-owned binding of handlers to a topic.

    Release it when updates are no longer needed; `async with` releases on
    every exit path. Once release() returns no handler of this handle is
    invoked again.
    """

    def __init__(self, manager: "SubscriptionManager", channel: "_TopicChannel", handlers: ChangeHandlers):
        self.id = uuid4().hex
        self.topic = channel.topic
        self.handlers = handlers
        self._manager = manager
        self._channel = channel
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    @property
    def state(self) -> ChannelState:
        if not self._active:
            return ChannelState.CLOSED
        return self._channel.state

    @property
    def degraded(self) -> bool:
        return self.state is ChannelState.DEGRADED

    @property
    def last_error(self) -> Optional[Exception]:
        return self._channel.last_error

    async def release(self) -> None:
        await self._manager.unsubscribe(self)

    async def __aenter__(self) -> "SubscriptionHandle":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.release()

    def __repr__(self) -> str:
        return f"SubscriptionHandle({self.topic}, {self.state.value})"


class _TopicChannel:
    """Per-topic state: subscribers, queue, dispatcher and feed channel."""

    def __init__(self, topic: SubscriptionTopic):
        self.topic = topic
        self.state = ChannelState.PENDING
        self.subscribers: List[SubscriptionHandle] = []
        self.queue: asyncio.Queue = asyncio.Queue()
        self.feed_channel: Optional[FeedChannel] = None
        self.dispatcher: Optional[asyncio.Task] = None
        self.establishing: Optional[asyncio.Task] = None
        # Set once the channel is OPEN, DEGRADED or CLOSED; cleared while establishing
        self.settled = asyncio.Event()
        self.last_error: Optional[Exception] = None
        # Bumped per establishment attempt; events from older feed channels are dropped
        self.generation = 0
        self.established_count = 0


class SubscriptionManager:
    """
    Example:
        manager = SubscriptionManager(feed, monitor)
        handle = await manager.subscribe(
            SubscriptionTopic("appointments", "doctor_id=eq.42"),
            ChangeHandlers(on_insert=refresh, on_update=refresh),
        )
        ...
        await manager.unsubscribe(handle)

    Args:
        feed: ChangeFeedSource the channels are opened on
        monitor: ConnectivityMonitor driving retries and reconnection
        backoff_initial: First retry delay in seconds
        backoff_max: Retry delay cap in seconds
        backoff_factor: Multiplier between retries
        max_online_attempts: Failed attempts while online before DEGRADED
    """

    def __init__(
        self,
        feed: ChangeFeedSource,
        monitor: Optional[ConnectivityMonitor] = None,
        backoff_initial: float = 0.5,
        backoff_max: float = 30.0,
        backoff_factor: float = 2.0,
        max_online_attempts: int = 5,
    ):
        self.feed = feed
        self.monitor = monitor
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.backoff_factor = backoff_factor
        self.max_online_attempts = max(1, max_online_attempts)

        self._topics: Dict[SubscriptionTopic, _TopicChannel] = {}
        self._lock = asyncio.Lock()
        self._reconnect_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._remove_listener = monitor.on_transition(self._on_transition) if monitor else None

    @property
    def is_online(self) -> bool:
        return self.monitor is None or self.monitor.is_online

    def active_topics(self) -> List[SubscriptionTopic]:
        return list(self._topics)

    def subscriber_count(self, topic: SubscriptionTopic) -> int:
        channel = self._topics.get(topic)
        return len(channel.subscribers) if channel else 0

    def channel_state(self, topic: SubscriptionTopic) -> ChannelState:
        channel = self._topics.get(topic)
        return channel.state if channel else ChannelState.CLOSED

    def __len__(self) -> int:
        return len(self._topics)

    # =========================================================================
    # SUBSCRIBE / UNSUBSCRIBE
    # =========================================================================

    async def subscribe(self, topic: SubscriptionTopic, handlers: ChangeHandlers) -> SubscriptionHandle:
        """
        Register handlers for a topic.

        While online this waits for the channel to be established (or to
        become DEGRADED). While offline it returns at once and establishment
        continues in the background.
        """
        self._loop = asyncio.get_running_loop()
        async with self._lock:
            channel = self._topics.get(topic)
            if channel is None:
                channel = _TopicChannel(topic)
                self._topics[topic] = channel
                channel.dispatcher = asyncio.create_task(self._dispatch(channel))
                self._start_establishing(channel)
                logger.info(f"Created channel for {topic}")
            elif channel.state is ChannelState.DEGRADED and self.is_online:
                self._start_establishing(channel)

            handle = SubscriptionHandle(self, channel, handlers)
            channel.subscribers.append(handle)

        try:
            if self.is_online:
                await channel.settled.wait()
        except BaseException:
            await self.unsubscribe(handle)
            raise

        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """
        Release a handle. Idempotent.

        The last release of a topic closes its channel.
        """
        if not handle._active:
            return
        handle._active = False

        async with self._lock:
            channel = self._topics.get(handle.topic)
            if channel is None or handle not in channel.subscribers:
                return
            channel.subscribers.remove(handle)
            if channel.subscribers:
                return
            del self._topics[handle.topic]
            await self._teardown(channel)

    @asynccontextmanager
    async def subscription(self, topic: SubscriptionTopic, handlers: ChangeHandlers) -> AsyncIterator[SubscriptionHandle]:
        """Scoped subscription, released on every exit path."""
        handle = await self.subscribe(topic, handlers)
        try:
            yield handle
        finally:
            await handle.release()

    # =========================================================================
    # ESTABLISHMENT
    # =========================================================================

    def _start_establishing(self, channel: _TopicChannel, replace: bool = False) -> None:
        channel.state = ChannelState.PENDING
        channel.settled.clear()
        channel.establishing = asyncio.create_task(self._establish(channel, replace))

    async def _establish(self, channel: _TopicChannel, replace: bool) -> None:
        topic = channel.topic

        if replace and channel.feed_channel is not None:
            old, channel.feed_channel = channel.feed_channel, None
            channel.generation += 1
            await self._close_feed(old)

        delay = self.backoff_initial
        online_failures = 0

        while True:
            channel.generation += 1
            generation = channel.generation
            try:
                feed_channel = await self.feed.open(
                    topic,
                    lambda event, g=generation: self._enqueue(channel, g, event),
                    on_failure=lambda error, g=generation: self._on_channel_failure(channel, g, error),
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if not isinstance(e, SubscriptionEstablishError):
                    e = SubscriptionEstablishError(topic, str(e))
                channel.last_error = e

                if self.is_online:
                    online_failures += 1
                    if online_failures >= self.max_online_attempts:
                        channel.state = ChannelState.DEGRADED
                        logger.error(f"Channel for {topic} degraded after {online_failures} attempts: {e}")
                        channel.queue.put_nowait(("degraded", e))
                        channel.settled.set()
                        return

                logger.warning(f"Channel for {topic} failed ({e}); retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                delay = min(delay * self.backoff_factor, self.backoff_max)
                continue

            channel.feed_channel = feed_channel
            channel.last_error = None
            channel.state = ChannelState.OPEN
            channel.established_count += 1
            channel.settled.set()
            logger.info(f"Channel for {topic} open (establishment #{channel.established_count})")
            return

    async def _stop_establishing(self, channel: _TopicChannel) -> None:
        task = channel.establishing
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _close_feed(self, feed_channel: FeedChannel) -> None:
        try:
            await self.feed.close(feed_channel)
        except Exception as e:
            logger.warning(f"Error closing channel {feed_channel.name}: {e}")

    async def _teardown(self, channel: _TopicChannel) -> None:
        channel.state = ChannelState.CLOSED
        channel.generation += 1
        await self._stop_establishing(channel)
        channel.settled.set()
        # The dispatcher exits on the sentinel; it may be the task running us
        channel.queue.put_nowait(_STOP)
        if channel.feed_channel is not None:
            await self._close_feed(channel.feed_channel)
            channel.feed_channel = None
        logger.info(f"Closed channel for {channel.topic}")

    async def settle(self) -> None:
        """Wait for a pending reconnect and for every channel being established."""
        reconnect = self._reconnect_task
        if reconnect is not None and not reconnect.done() and reconnect is not asyncio.current_task():
            await asyncio.gather(reconnect, return_exceptions=True)
        await self._await_establishing()

    async def _await_establishing(self) -> None:
        tasks = [
            c.establishing for c in list(self._topics.values())
            if c.establishing is not None and not c.establishing.done()
        ]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # =========================================================================
    # RECONNECTION
    # =========================================================================

    def _on_transition(self, transition: ConnectivityTransition) -> None:
        """Monitor listener; may be called from a thread other than the loop's."""
        if not transition.is_reconnect:
            if self._topics:
                logger.info(f"Offline; {len(self._topics)} channel(s) will be re-established on reconnect")
            return

        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._schedule_reconnect()
        else:
            loop.call_soon_threadsafe(self._schedule_reconnect)

    def _schedule_reconnect(self) -> None:
        self._reconnect_task = self._loop.create_task(self.reconnect())

    def _on_channel_failure(self, channel: _TopicChannel, generation: int, error: Exception) -> None:
        """A joined channel failed; replace it unless it is already being replaced."""
        if channel.state is ChannelState.CLOSED or generation != channel.generation:
            return
        if channel.establishing is not None and not channel.establishing.done():
            return
        channel.last_error = error
        logger.warning(f"Channel for {channel.topic} failed while open ({error}); re-establishing")
        self._start_establishing(channel, replace=True)

    async def reconnect(self) -> None:
        """Re-establish every active topic exactly once."""
        async with self._lock:
            channels = [c for c in self._topics.values() if c.state is not ChannelState.CLOSED]
            for channel in channels:
                await self._stop_establishing(channel)
                self._start_establishing(channel, replace=True)

        if channels:
            logger.info(f"Re-establishing {len(channels)} channel(s) after reconnect")
        await self._await_establishing()

    # =========================================================================
    # DISPATCH
    # =========================================================================

    def _enqueue(self, channel: _TopicChannel, generation: int, event: ChangeEvent) -> None:
        if channel.state is ChannelState.CLOSED or generation != channel.generation:
            return
        channel.queue.put_nowait(("event", event))

    async def _dispatch(self, channel: _TopicChannel) -> None:
        while True:
            item = await channel.queue.get()
            if item is _STOP:
                return

            kind, payload = item
            for handle in list(channel.subscribers):
                # Re-checked per handler so a release mid-fan-out takes effect at once
                if not handle._active:
                    continue
                if kind == "event":
                    handler = handle.handlers.for_kind(payload.kind)
                    if handler is not None:
                        await self._invoke(handler, channel.topic, payload)
                elif kind == "degraded":
                    if handle.handlers.on_degraded is not None:
                        await self._invoke(handle.handlers.on_degraded, channel.topic, channel.topic, payload)

    @staticmethod
    async def _invoke(handler: Any, topic: SubscriptionTopic, *args: Any) -> None:
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Error in handler for {topic}: {e}")

    # =========================================================================
    # SHUTDOWN
    # =========================================================================

    async def close(self) -> None:
        """Release every subscription and close all channels."""
        if self._remove_listener:
            self._remove_listener()
            self._remove_listener = None

        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            await asyncio.gather(self._reconnect_task, return_exceptions=True)

        async with self._lock:
            channels = list(self._topics.values())
            self._topics.clear()
            for channel in channels:
                for handle in channel.subscribers:
                    handle._active = False
                channel.subscribers.clear()
                await self._teardown(channel)

        await self.feed.shutdown()

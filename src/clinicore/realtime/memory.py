"""
In-Memory Change Feed

ChangeFeedSource without a backend. Used for local development and tests:
mutations are pushed with emit() and delivered to every open channel whose
topic matches.
"""

import logging
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from .base import ChangeEvent, ChangeFeedSource, ChangeKind, FailureHandler, FeedChannel, SubscriptionTopic
from ..errors import SubscriptionEstablishError

logger = logging.getLogger(__name__)


def matches_filter(filter_expr: Optional[str], record: Dict[str, Any]) -> bool:
    """
    Evaluate a postgres_changes filter against a row.

    Supports "column=eq.value" and "column=in.(a,b)"; anything else matches.
    """
    if not filter_expr:
        return True
    column, _, condition = filter_expr.partition("=")
    op, _, value = condition.partition(".")
    actual = record.get(column)
    if op == "eq":
        return actual is not None and str(actual) == value
    if op == "neq":
        return actual is None or str(actual) != value
    if op == "in":
        options = value.strip("()").split(",")
        return actual is not None and str(actual) in options
    return True


class InMemoryChangeFeed(ChangeFeedSource):
    """
    Example:
        feed = InMemoryChangeFeed()
        manager = SubscriptionManager(feed, monitor)
        await manager.subscribe(SubscriptionTopic("appointments"), handlers)
        feed.emit("appointments", ChangeKind.INSERT, {"id": 1})
    """

    def __init__(self):
        self.channels: List[FeedChannel] = []
        self.open_counts: Counter = Counter()
        self.close_counts: Counter = Counter()
        self._callbacks: Dict[int, Callable[[ChangeEvent], None]] = {}
        self._failure_callbacks: Dict[int, FailureHandler] = {}
        self._failures_remaining = 0
        self._fail_always = False

    def fail_next(self, count: int = 1) -> None:
        """Make the next `count` open() calls fail."""
        self._failures_remaining = count

    def fail_always(self, enabled: bool = True) -> None:
        self._fail_always = enabled

    def active_channels(self, topic: Optional[SubscriptionTopic] = None) -> List[FeedChannel]:
        return [c for c in self.channels if not c.closed and (topic is None or c.topic == topic)]

    async def open(
        self,
        topic: SubscriptionTopic,
        on_event: Callable[[ChangeEvent], None],
        on_failure: Optional[FailureHandler] = None,
    ) -> FeedChannel:
        if self._fail_always or self._failures_remaining > 0:
            if self._failures_remaining > 0:
                self._failures_remaining -= 1
            raise SubscriptionEstablishError(topic, "simulated failure")

        channel = FeedChannel(topic=topic, name=topic.channel_name)
        self.channels.append(channel)
        self._callbacks[id(channel)] = on_event
        if on_failure is not None:
            self._failure_callbacks[id(channel)] = on_failure
        self.open_counts[topic] += 1
        logger.debug(f"Opened in-memory channel {channel.name}")
        return channel

    async def close(self, channel: FeedChannel) -> None:
        if channel.closed:
            return
        channel.closed = True
        self._callbacks.pop(id(channel), None)
        self._failure_callbacks.pop(id(channel), None)
        self.close_counts[channel.topic] += 1
        self.channels = [c for c in self.channels if c is not channel]

    def emit(
        self,
        resource: str,
        kind: ChangeKind,
        record: Optional[Dict[str, Any]] = None,
        old_record: Optional[Dict[str, Any]] = None,
        schema: str = "public",
    ) -> int:
        """
        Push a mutation to matching channels.

        Returns:
            Number of channels the event was delivered to
        """
        record = record or {}
        delivered = 0
        for channel in list(self.channels):
            topic = channel.topic
            if channel.closed or topic.resource != resource or topic.schema != schema:
                continue
            row = record if kind is not ChangeKind.DELETE else (old_record or record)
            if not matches_filter(topic.filter, row):
                continue
            callback = self._callbacks.get(id(channel))
            if callback is None:
                continue
            callback(ChangeEvent(
                topic=topic,
                kind=kind,
                record=dict(record),
                old_record=dict(old_record or {}),
            ))
            delivered += 1
        return delivered

    def break_channels(self, topic: SubscriptionTopic, reason: str = "simulated channel error") -> int:
        """
        Fail every open channel of a topic after it was joined.

        Returns:
            Number of channels whose failure was reported
        """
        reported = 0
        for channel in self.active_channels(topic):
            callback = self._failure_callbacks.pop(id(channel), None)
            if callback is None:
                continue
            callback(SubscriptionEstablishError(topic, reason))
            reported += 1
        return reported

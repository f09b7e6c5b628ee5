"""
Change-Feed Primitives

Topics, events, handler triples and the abstract change-feed source the
SubscriptionManager multiplexes onto.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union


class ChangeKind(str, Enum):
    """Mutation kind carried by a change event"""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class SubscriptionTopic:
    """
    Logical watch target.

    Two topics with the same resource, filter and schema share one channel.
    Filters use the postgres_changes syntax, e.g. "doctor_id=eq.42".
    """
    resource: str
    filter: Optional[str] = None
    schema: str = "public"

    @property
    def channel_name(self) -> str:
        suffix = f"{self.resource}-{self.filter}" if self.filter else self.resource
        return f"realtime-{suffix}"

    def __str__(self) -> str:
        return f"{self.resource}[{self.filter}]" if self.filter else self.resource


@dataclass
class ChangeEvent:
    """One server-side mutation on a watched resource."""
    topic: SubscriptionTopic
    kind: ChangeKind
    record: Dict[str, Any] = field(default_factory=dict)
    old_record: Dict[str, Any] = field(default_factory=dict)
    commit_timestamp: Optional[str] = None

    @classmethod
    def from_payload(cls, topic: SubscriptionTopic, payload: Dict[str, Any]) -> "ChangeEvent":
        """
        Create from a postgres_changes payload.

        Accepts both the nested realtime-py shape
        ({"data": {"type", "record", "old_record", ...}}) and the flat shape
        ({"eventType", "new", "old", ...}).

        Raises:
            ValueError: payload carries no recognisable event type
        """
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload

        kind = data.get("type") or data.get("eventType") or payload.get("eventType")
        if not kind:
            raise ValueError(f"Change payload without event type: {sorted(payload)}")

        record = data.get("record")
        if record is None:
            record = data.get("new")
        old_record = data.get("old_record")
        if old_record is None:
            old_record = data.get("old")

        return cls(
            topic=topic,
            kind=ChangeKind(str(kind).upper()),
            record=dict(record or {}),
            old_record=dict(old_record or {}),
            commit_timestamp=data.get("commit_timestamp"),
        )

    @property
    def committed_at(self) -> Optional[datetime]:
        if not self.commit_timestamp:
            return None
        return datetime.fromisoformat(self.commit_timestamp.replace("Z", "+00:00"))


EventHandler = Callable[[ChangeEvent], Union[None, Awaitable[None]]]
DegradedHandler = Callable[[SubscriptionTopic, Exception], Union[None, Awaitable[None]]]
FailureHandler = Callable[[Exception], None]


@dataclass(frozen=True)
class ChangeHandlers:
    """
    Handler triple for one subscriber.

    Missing handlers mean the subscriber is not interested in that kind;
    such events are dropped for this subscriber only.
    """
    on_insert: Optional[EventHandler] = None
    on_update: Optional[EventHandler] = None
    on_delete: Optional[EventHandler] = None
    on_degraded: Optional[DegradedHandler] = None

    def for_kind(self, kind: ChangeKind) -> Optional[EventHandler]:
        if kind is ChangeKind.INSERT:
            return self.on_insert
        if kind is ChangeKind.UPDATE:
            return self.on_update
        if kind is ChangeKind.DELETE:
            return self.on_delete
        return None


@dataclass
class FeedChannel:
    """An open push channel as returned by a ChangeFeedSource."""
    topic: SubscriptionTopic
    name: str
    native: Any = None
    closed: bool = False


class ChangeFeedSource(ABC):
    """
    Push subscription source keyed by topic.

    A source delivers events for a channel in backend order through the
    callback passed to open(). A channel that fails after it was joined is
    reported once through on_failure. close() must be idempotent.
    """

    @abstractmethod
    async def open(
        self,
        topic: SubscriptionTopic,
        on_event: Callable[[ChangeEvent], None],
        on_failure: Optional[FailureHandler] = None,
    ) -> FeedChannel:
        """
        Open a channel for a topic.

        Raises:
            SubscriptionEstablishError: the channel could not be joined
        """
        pass

    @abstractmethod
    async def close(self, channel: FeedChannel) -> None:
        """Close a channel. Closing a closed channel is a no-op."""
        pass

    async def shutdown(self) -> None:
        """Release source-wide resources (connections, sockets)."""
        return None

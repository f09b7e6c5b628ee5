"""
Realtime change-feed subscriptions.

- base: topics, events, handler triples, ChangeFeedSource
- subscriptions: SubscriptionManager (dedup, fan-out, lifecycle, reconnect)
- supabase_feed: Supabase Realtime postgres_changes source
- memory: in-memory source for development and tests
"""

from .base import (
    ChangeEvent,
    ChangeFeedSource,
    ChangeHandlers,
    ChangeKind,
    FeedChannel,
    SubscriptionTopic,
)
from .memory import InMemoryChangeFeed
from .subscriptions import ChannelState, SubscriptionHandle, SubscriptionManager
from .supabase_feed import SupabaseChangeFeed, create_async_supabase_client

__all__ = [
    "ChangeEvent",
    "ChangeFeedSource",
    "ChangeHandlers",
    "ChangeKind",
    "FeedChannel",
    "SubscriptionTopic",
    "InMemoryChangeFeed",
    "ChannelState",
    "SubscriptionHandle",
    "SubscriptionManager",
    "SupabaseChangeFeed",
    "create_async_supabase_client",
]

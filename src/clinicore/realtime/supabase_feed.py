"""
Supabase Realtime Change Feed

ChangeFeedSource over Supabase Realtime postgres_changes channels.
Requires the async Supabase client (realtime is not available on the sync
client).

Environment Variables:
    SUPABASE_URL: Your Supabase project URL
    SUPABASE_KEY: Your Supabase API key
"""

import asyncio
import logging
import os
from typing import Any, Callable, Dict, Optional

from .base import ChangeEvent, ChangeFeedSource, FailureHandler, FeedChannel, SubscriptionTopic
from ..errors import SubscriptionEstablishError

logger = logging.getLogger(__name__)

JOINED = "SUBSCRIBED"
FAILED = {"CHANNEL_ERROR", "TIMED_OUT", "CLOSED"}


async def create_async_supabase_client(url: Optional[str] = None, key: Optional[str] = None) -> Any:
    """Create an async Supabase client from arguments or the environment."""
    from supabase import acreate_client

    url = url or os.environ.get("SUPABASE_URL")
    key = key or os.environ.get("SUPABASE_KEY")
    if not url or not key:
        raise ValueError("SUPABASE_URL and SUPABASE_KEY must be set")

    client = await acreate_client(url, key)
    logger.info("Supabase async client initialized")
    return client


def _status_name(status: Any) -> str:
    return str(getattr(status, "value", status)).upper()


class SupabaseChangeFeed(ChangeFeedSource):
    """
    postgres_changes channels on a Supabase project.

    Example:
        client = await create_async_supabase_client()
        feed = SupabaseChangeFeed(client)
        channel = await feed.open(SubscriptionTopic("appointments"), print)
    """

    def __init__(self, client: Any, join_timeout: float = 10.0):
        self.client = client
        self.join_timeout = join_timeout

    async def open(
        self,
        topic: SubscriptionTopic,
        on_event: Callable[[ChangeEvent], None],
        on_failure: Optional[FailureHandler] = None,
    ) -> FeedChannel:
        loop = asyncio.get_running_loop()
        joined: asyncio.Future = loop.create_future()
        channel = FeedChannel(topic=topic, name=topic.channel_name)
        failed = False

        def handle_change(payload: Dict[str, Any]) -> None:
            try:
                event = ChangeEvent.from_payload(topic, payload)
            except ValueError as e:
                logger.debug(f"Dropping unrecognised payload on {topic}: {e}")
                return
            on_event(event)

        def handle_status(status: Any, error: Optional[Exception] = None) -> None:
            nonlocal failed
            name = _status_name(status)
            if joined.done():
                # Failures after the join are reported once; our own close is not one
                if name not in FAILED or channel.closed or failed:
                    return
                if joined.cancelled() or joined.exception() is not None:
                    return
                failed = True
                logger.warning(f"Channel {topic.channel_name} reported {name}: {error}")
                if on_failure is not None:
                    on_failure(SubscriptionEstablishError(topic, f"{name}: {error}"))
                return
            if name == JOINED:
                joined.set_result(True)
            elif name in FAILED:
                joined.set_exception(SubscriptionEstablishError(topic, f"{name}: {error}"))

        try:
            native = self.client.channel(topic.channel_name)
            options: Dict[str, Any] = {"schema": topic.schema, "table": topic.resource}
            if topic.filter:
                options["filter"] = topic.filter
            native.on_postgres_changes("*", callback=handle_change, **options)
            await native.subscribe(handle_status)
        except SubscriptionEstablishError:
            raise
        except Exception as e:
            raise SubscriptionEstablishError(topic, str(e)) from e

        try:
            await asyncio.wait_for(joined, timeout=self.join_timeout)
        except asyncio.TimeoutError as e:
            await self._remove(native)
            raise SubscriptionEstablishError(topic, f"join timed out after {self.join_timeout}s") from e
        except (SubscriptionEstablishError, asyncio.CancelledError):
            await self._remove(native)
            raise

        channel.native = native
        logger.info(f"Joined realtime channel {topic.channel_name}")
        return channel

    async def close(self, channel: FeedChannel) -> None:
        if channel.closed:
            return
        channel.closed = True
        await self._remove(channel.native)
        logger.info(f"Left realtime channel {channel.name}")

    async def _remove(self, native: Any) -> None:
        try:
            await self.client.remove_channel(native)
        except Exception as e:
            logger.warning(f"Error removing realtime channel: {e}")

    async def shutdown(self) -> None:
        try:
            await self.client.remove_all_channels()
        except Exception as e:
            logger.warning(f"Error removing realtime channels: {e}")

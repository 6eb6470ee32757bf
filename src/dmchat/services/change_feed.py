"""
Live change notification channels.

Writers publish a JSON-able payload on a channel named after the changed
path (chats/{room_id}, userChats/{owner_id}); listeners receive every
payload published after they subscribed. The local feed keeps everything in
this process, the Redis feed fans out across every node sharing the server.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, Optional, Set

import redis.asyncio as redis
from redis.exceptions import RedisError

from dmchat.core.errors import BackendUnavailable

logger = logging.getLogger(__name__)

Payload = Dict[str, Any]


def room_channel(room_id: str) -> str:
    return f"chats/{room_id}"


def mailbox_channel(owner_id: str) -> str:
    return f"userChats/{owner_id}"


class FeedListener(ABC):
    """An open subscription to one channel."""

    @abstractmethod
    async def get(self) -> Payload:
        """
        Waits for the next payload.
        Raises BackendUnavailable if the channel was lost.
        """

    @abstractmethod
    async def close(self) -> None:
        """Stops delivery. Safe to call more than once."""


class IChangeFeed(ABC):
    """
    Abstract Interface for the change notification transport.
    """

    @abstractmethod
    async def publish(self, channel: str, payload: Payload) -> None:
        """Delivers payload to every current listener of channel."""

    @abstractmethod
    async def subscribe(self, channel: str) -> FeedListener:
        """
        Registers a listener. Payloads published after this call returns
        are delivered to it.
        """

    async def close(self) -> None:
        """Releases transport resources."""


class LocalFeedListener(FeedListener):
    def __init__(self, feed: "LocalChangeFeed", channel: str, queue: "asyncio.Queue[Payload]"):
        self._feed = feed
        self._channel = channel
        self._queue = queue
        self._closed = False

    async def get(self) -> Payload:
        return await self._queue.get()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._feed.unsubscribe(self._channel, self._queue)


class LocalChangeFeed(IChangeFeed):
    """In-process feed: one asyncio queue per listener."""

    def __init__(self) -> None:
        self._listeners: Dict[str, Set["asyncio.Queue[Payload]"]] = {}
        self._lock = asyncio.Lock()

    async def publish(self, channel: str, payload: Payload) -> None:
        async with self._lock:
            queues = list(self._listeners.get(channel, set()))
        for queue in queues:
            queue.put_nowait(payload)

    async def subscribe(self, channel: str) -> FeedListener:
        queue: "asyncio.Queue[Payload]" = asyncio.Queue()
        async with self._lock:
            self._listeners.setdefault(channel, set()).add(queue)
        logger.debug("Local listener added on %s", channel)
        return LocalFeedListener(self, channel, queue)

    async def unsubscribe(self, channel: str, queue: "asyncio.Queue[Payload]") -> None:
        async with self._lock:
            queues = self._listeners.get(channel)
            if not queues:
                return
            queues.discard(queue)
            if not queues:
                self._listeners.pop(channel, None)
        logger.debug("Local listener removed from %s", channel)

    def listener_count(self, channel: str) -> int:
        return len(self._listeners.get(channel, set()))


class RedisFeedListener(FeedListener):
    def __init__(self, pubsub: Any, channel: str):
        self._pubsub = pubsub
        self._channel = channel
        self._messages: Optional[AsyncIterator[Dict[str, Any]]] = None
        self._closed = False

    async def get(self) -> Payload:
        if self._messages is None:
            self._messages = self._pubsub.listen()

        try:
            async for message in self._messages:
                if message["type"] != "message":
                    continue
                try:
                    return json.loads(message["data"])
                except (TypeError, ValueError) as e:
                    logger.error("Could not parse Redis message on %s: %s", self._channel, e)
        except RedisError as e:
            raise BackendUnavailable(f"Lost Redis channel {self._channel}: {e}") from e

        raise BackendUnavailable(f"Redis channel {self._channel} closed")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
            logger.info("Unsubscribed from %s", self._channel)
        except RedisError as e:
            logger.warning("Error while unsubscribing from %s: %s", self._channel, e)


class RedisChangeFeed(IChangeFeed):
    """Feed backed by Redis Pub/Sub."""

    def __init__(self, redis_url: str, client: Any = None):
        self.redis_url = redis_url
        self._client = client or redis.from_url(redis_url, decode_responses=True)  # type: ignore[no-untyped-call]

    async def publish(self, channel: str, payload: Payload) -> None:
        try:
            await self._client.publish(channel, json.dumps(payload))
        except RedisError as e:
            raise BackendUnavailable(f"Could not publish on {channel}: {e}") from e

    async def subscribe(self, channel: str) -> FeedListener:
        pubsub = self._client.pubsub()
        try:
            await pubsub.subscribe(channel)
        except RedisError as e:
            raise BackendUnavailable(f"Could not subscribe to {channel}: {e}") from e
        logger.info("Subscribed to Redis channel: %s", channel)
        return RedisFeedListener(pubsub, channel)

    async def close(self) -> None:
        await self._client.aclose()


def create_change_feed(redis_url: Optional[str]) -> IChangeFeed:
    """Picks the Redis feed when a URL is configured, the local one otherwise."""
    if redis_url:
        logger.info("Using Redis change feed at %s", redis_url)
        return RedisChangeFeed(redis_url)
    logger.info("Using in-process change feed")
    return LocalChangeFeed()

"""
Message log: append-only, timestamp-ordered messages per room, stored under
chats/{room_id} and streamed to live subscribers.
"""

import logging
import sqlite3
from typing import List, Optional

from dmchat.core.errors import BackendUnavailable, EmptyMessage, InvalidIdentifier
from dmchat.core.message import Message, is_blank
from dmchat.services.change_feed import IChangeFeed, Payload, room_channel
from dmchat.services.live_query import LiveQuery
from dmchat.services.storage import StorageService

logger = logging.getLogger(__name__)

DEFAULT_RECENT_LIMIT = 50


class MessageStream(LiveQuery[Message]):
    """
    Live view of a room's log: replays up to `limit` recent messages, then
    yields every newly appended message once, in append order.

    The last delivered timestamp is the cursor. Notifications are only a
    signal to read what follows the cursor from storage, so a redelivered or
    out-of-order notification cannot reorder or duplicate messages.
    """

    def __init__(self, log: "MessageLog", room_id: str, limit: int, **kwargs: float):
        super().__init__(log.feed, room_channel(room_id), **kwargs)
        self.log = log
        self.room_id = room_id
        self.limit = limit
        self.cursor: Optional[int] = None

    def _advance(self, messages: List[Message]) -> List[Message]:
        fresh = [m for m in messages if self.cursor is None or m.timestamp > self.cursor]
        if fresh:
            self.cursor = fresh[-1].timestamp
        return fresh

    def _resync(self) -> List[Message]:
        if self.cursor is not None:
            # Reconnect: catch up on everything missed, not just the tail.
            return self._advance(self.log.after(self.room_id, self.cursor))

        # The newest stored message anchors the cursor even when limit is 0.
        tail = self.log.recent(self.room_id, max(self.limit, 1))
        self.cursor = tail[-1].timestamp if tail else 0
        return tail[-self.limit :] if self.limit else []

    def _on_change(self, payload: Payload) -> List[Message]:
        if self.cursor is None:
            return self._resync()
        if payload.get("timestamp", 0) <= self.cursor:
            return []
        return self._advance(self.log.after(self.room_id, self.cursor))


class MessageLog:
    """Owns the per-room message logs."""

    def __init__(
        self,
        storage: StorageService,
        feed: IChangeFeed,
        reconnect_initial_delay: float = 0.5,
        reconnect_max_delay: float = 30.0,
    ):
        self.storage = storage
        self.feed = feed
        self.reconnect_initial_delay = reconnect_initial_delay
        self.reconnect_max_delay = reconnect_max_delay

    async def append(self, room_id: str, sender_id: str, text: str) -> str:
        """
        Persists a message and notifies the room's subscribers.
        Returns the new message id.
        """
        if is_blank(text):
            raise EmptyMessage("Message text must not be empty")
        if not room_id:
            raise InvalidIdentifier("Room id must not be empty")

        try:
            message = self.storage.append_message(room_id, sender_id, text)
        except sqlite3.Error as e:
            raise BackendUnavailable(f"Could not append to chats/{room_id}: {e}") from e

        logger.info("Message %s appended to room %s by %s", message.id, room_id, sender_id)

        # The message is durable at this point; subscribers that miss the
        # notification pick it up on their next resync.
        try:
            await self.feed.publish(room_channel(room_id), message.model_dump(mode="json"))
        except BackendUnavailable as e:
            logger.warning("Could not notify subscribers of room %s: %s", room_id, e)

        return message.id

    def recent(self, room_id: str, limit: int = DEFAULT_RECENT_LIMIT) -> List[Message]:
        """Last `limit` messages of a room, oldest first."""
        try:
            return self.storage.get_recent_messages(room_id, limit)
        except sqlite3.Error as e:
            raise BackendUnavailable(f"Could not read chats/{room_id}: {e}") from e

    def after(self, room_id: str, timestamp: int) -> List[Message]:
        try:
            return self.storage.get_messages_after(room_id, timestamp)
        except sqlite3.Error as e:
            raise BackendUnavailable(f"Could not read chats/{room_id}: {e}") from e

    def subscribe_recent(self, room_id: str, limit: int = DEFAULT_RECENT_LIMIT) -> MessageStream:
        """
        Opens a live, ascending stream of the room's messages.
        The caller must close() it when the chat window goes away.
        """
        return MessageStream(
            self,
            room_id,
            limit,
            initial_delay=self.reconnect_initial_delay,
            max_delay=self.reconnect_max_delay,
        )

"""
Chat session manager: the active user's open chat windows, their message
streams, and the aggregated unread count of the notifications surface.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Set

from dmchat.core.auth_models import UserProfile
from dmchat.core.errors import BackendUnavailable, EmptyMessage, InvalidIdentifier, PartialMailboxWrite
from dmchat.core.mailbox import MailboxEntry
from dmchat.core.message import is_blank
from dmchat.core.room import compute_room_id
from dmchat.core.room_list import RoomSummary, summarize_rooms, total_unread
from dmchat.core.session import ChatSession
from dmchat.services.mailbox import MailboxLedger, MailboxStream
from dmchat.services.message_log import DEFAULT_RECENT_LIMIT, MessageLog, MessageStream

logger = logging.getLogger(__name__)


class ChatSessionManager:
    """
    Orchestrates chat for one authenticated user.

    Backend failures are raised to the caller; they never leave the set of
    open windows in a half-updated state.
    """

    def __init__(
        self,
        user: UserProfile,
        message_log: MessageLog,
        ledger: MailboxLedger,
        recent_limit: int = DEFAULT_RECENT_LIMIT,
    ):
        self.user = user
        self.message_log = message_log
        self.ledger = ledger
        self.recent_limit = recent_limit

        self._session = ChatSession(owner=user)
        self._streams: Dict[str, MessageStream] = {}
        self._rooms_stream: Optional[MailboxStream] = None
        self._rooms_task: Optional[asyncio.Task[None]] = None
        self._inbox_streams: Set[MailboxStream] = set()

        self.chat_rooms: List[MailboxEntry] = []
        self.total_unread_count = 0

    @property
    def open_windows(self) -> List[UserProfile]:
        return list(self._session.open_windows)

    def room_id_with(self, target_uid: str) -> str:
        return compute_room_id(self.user.uid, target_uid)

    # === Lifecycle ===

    async def start(self) -> None:
        """Starts tracking the user's mailbox."""
        if self._rooms_task is not None:
            return
        self._rooms_stream = self.ledger.list_for_user(self.user.uid)
        self._rooms_task = asyncio.create_task(self._track_rooms(self._rooms_stream))
        logger.info("Chat session started for %s", self.user.uid)

    async def _track_rooms(self, stream: MailboxStream) -> None:
        try:
            async for entries in stream:
                self.chat_rooms = entries
                self.total_unread_count = total_unread(entries, self.user.uid)
                logger.debug("%s has %d unread messages", self.user.uid, self.total_unread_count)
        # pylint: disable=broad-exception-caught
        except Exception as e:
            logger.error("Mailbox tracking for %s stopped: %s", self.user.uid, e)

    async def shutdown(self) -> None:
        """Cancels every subscription and forgets the open windows."""
        for uid in list(self._streams):
            await self._close_stream(uid)
        self._session.clear()

        for stream in list(self._inbox_streams):
            await self.close_inbox(stream)

        if self._rooms_stream is not None:
            await self._rooms_stream.close()
        if self._rooms_task is not None:
            self._rooms_task.cancel()
            try:
                await self._rooms_task
            except asyncio.CancelledError:
                pass

        self._rooms_stream = None
        self._rooms_task = None
        self.chat_rooms = []
        self.total_unread_count = 0
        logger.info("Chat session closed for %s", self.user.uid)

    # === Inbox ===

    def open_inbox(self) -> MailboxStream:
        """
        Extra live view of the user's mailbox, e.g. for a websocket.
        Closed by close_inbox() or, at the latest, by shutdown().
        """
        stream = self.ledger.list_for_user(self.user.uid)
        self._inbox_streams.add(stream)
        return stream

    async def close_inbox(self, stream: MailboxStream) -> None:
        self._inbox_streams.discard(stream)
        await stream.close()

    # === Windows ===

    async def open_chat(self, target: UserProfile) -> None:
        """
        Opens a chat window with target (no-op if already open) and marks
        the room as read.
        """
        if target.uid == self.user.uid:
            raise InvalidIdentifier("Cannot open a chat with yourself")
        room_id = self.room_id_with(target.uid)

        if self._session.open(target):
            self._streams[target.uid] = self.message_log.subscribe_recent(room_id, self.recent_limit)
            logger.info("%s opened chat %s", self.user.uid, room_id)

        try:
            await self.ledger.reset_unread(self.user.uid, room_id)
        except BackendUnavailable as e:
            logger.warning("Could not mark room %s as read: %s", room_id, e)
            raise

    async def close_chat(self, target_uid: str) -> None:
        """Closes a chat window. No backend effect."""
        if self._session.close(target_uid):
            await self._close_stream(target_uid)
            logger.info("%s closed chat with %s", self.user.uid, target_uid)

    async def _close_stream(self, target_uid: str) -> None:
        stream = self._streams.pop(target_uid, None)
        if stream is not None:
            await stream.close()

    def messages(self, target_uid: str) -> Optional[MessageStream]:
        """Message stream of an open window."""
        return self._streams.get(target_uid)

    # === Sending ===

    async def send(self, target: UserProfile, text: str) -> str:
        """
        Sends text to target: appends to the room's log, then updates both
        mailboxes with a separate server timestamp. Returns the message id.
        """
        if is_blank(text):
            raise EmptyMessage("Message text must not be empty")
        if target.uid == self.user.uid:
            raise InvalidIdentifier("Cannot send a message to yourself")
        room_id = self.room_id_with(target.uid)

        message_id = await self.message_log.append(room_id, self.user.uid, text)

        try:
            await self.ledger.record_send(
                room_id,
                self.user.uid,
                target.uid,
                self.user,
                target,
                text,
                self.ledger.server_time(),
            )
        except PartialMailboxWrite as e:
            e.message_id = message_id
            raise
        return message_id

    # === Notifications surface ===

    def room_summaries(self, limit: Optional[int] = None) -> List[RoomSummary]:
        return summarize_rooms(self.chat_rooms, self.user.uid, limit)

"""
Mailbox ledger: per-user index of rooms stored under userChats/{owner_id},
with denormalized last-message previews and unread counters.

Every write is a record-scoped optimistic transaction, so a reset never
loses a concurrent increment and vice versa.
"""

import asyncio
import logging
import sqlite3
from typing import List, Optional

from dmchat.core.auth_models import UserProfile
from dmchat.core.errors import BackendUnavailable, PartialMailboxWrite
from dmchat.core.mailbox import (
    LastMessage,
    MailboxEntry,
    apply_send,
    clear_unread,
    participants_snapshot,
)
from dmchat.core.room_list import sort_entries
from dmchat.services.change_feed import IChangeFeed, Payload, mailbox_channel
from dmchat.services.live_query import LiveQuery
from dmchat.services.storage import StorageService, TransactionFn

logger = logging.getLogger(__name__)


class MailboxStream(LiveQuery[List[MailboxEntry]]):
    """
    Live view of one user's mailbox. Every delivery is the full list of
    entries, most recently active first.
    """

    def __init__(self, ledger: "MailboxLedger", owner_id: str, **kwargs: float):
        super().__init__(ledger.feed, mailbox_channel(owner_id), **kwargs)
        self.ledger = ledger
        self.owner_id = owner_id

    def _resync(self) -> List[List[MailboxEntry]]:
        return [self.ledger.entries_for_user(self.owner_id)]

    def _on_change(self, payload: Payload) -> List[List[MailboxEntry]]:
        return self._resync()


class MailboxLedger:
    """Reads and updates users' mailboxes."""

    def __init__(
        self,
        storage: StorageService,
        feed: IChangeFeed,
        max_attempts: int = 25,
        reconnect_initial_delay: float = 0.5,
        reconnect_max_delay: float = 30.0,
    ):
        self.storage = storage
        self.feed = feed
        self.max_attempts = max_attempts
        self.reconnect_initial_delay = reconnect_initial_delay
        self.reconnect_max_delay = reconnect_max_delay

    def server_time(self) -> int:
        """Fresh store timestamp for mailbox summaries."""
        return self.storage.server_timestamp()

    def entries_for_user(self, user_id: str) -> List[MailboxEntry]:
        """Current entries of the user's mailbox, most recently active first."""
        try:
            return sort_entries(self.storage.get_mailbox_entries(user_id))
        except sqlite3.Error as e:
            raise BackendUnavailable(f"Could not read userChats/{user_id}: {e}") from e

    def list_for_user(self, user_id: str) -> MailboxStream:
        """
        Opens a live stream of the user's mailbox.
        The caller must close() it on logout.
        """
        return MailboxStream(
            self,
            user_id,
            initial_delay=self.reconnect_initial_delay,
            max_delay=self.reconnect_max_delay,
        )

    async def _transact(self, owner_id: str, room_id: str, update: TransactionFn) -> Optional[MailboxEntry]:
        try:
            committed = self.storage.run_transaction(owner_id, room_id, update, self.max_attempts)
        except sqlite3.Error as e:
            raise BackendUnavailable(f"Transaction on userChats/{owner_id}/{room_id} failed: {e}") from e

        if committed is not None:
            try:
                await self.feed.publish(mailbox_channel(owner_id), {"room_id": room_id})
            except BackendUnavailable as e:
                logger.warning("Could not notify mailbox of %s: %s", owner_id, e)

        return committed

    async def reset_unread(self, owner_id: str, room_id: str) -> None:
        """Atomically sets the owner's unread counter for the room to zero."""
        committed = await self._transact(owner_id, room_id, lambda current: clear_unread(current, owner_id))
        if committed is not None:
            logger.debug("Unread counter of %s reset for room %s", owner_id, room_id)

    async def record_send(
        self,
        room_id: str,
        sender_id: str,
        receiver_id: str,
        sender_profile: UserProfile,
        receiver_profile: UserProfile,
        text: str,
        timestamp: int,
    ) -> None:
        """
        Upserts the room's summary in both participants' mailboxes.

        The two transactions are independent: if only one commits, the
        other side is not rolled back and PartialMailboxWrite is raised.
        """
        participants = participants_snapshot(sender_profile, receiver_profile)
        last_message = LastMessage(text=text, timestamp=timestamp)

        def for_sender(current: Optional[MailboxEntry]) -> MailboxEntry:
            return apply_send(current, room_id, participants, last_message)

        def for_receiver(current: Optional[MailboxEntry]) -> MailboxEntry:
            return apply_send(current, room_id, participants, last_message, increment_for=receiver_id)

        results = await asyncio.gather(
            self._transact(sender_id, room_id, for_sender),
            self._transact(receiver_id, room_id, for_receiver),
            return_exceptions=True,
        )

        owners = (sender_id, receiver_id)
        failed = [owner for owner, result in zip(owners, results) if isinstance(result, BaseException)]
        if not failed:
            return

        for owner, result in zip(owners, results):
            if isinstance(result, BaseException):
                if not isinstance(result, BackendUnavailable):
                    raise result
                logger.error("Mailbox write for %s in room %s failed: %s", owner, room_id, result)

        written = [owner for owner in owners if owner not in failed]
        if not written:
            raise BackendUnavailable(f"Mailbox summaries for room {room_id} were not written")

        logger.warning("Partial mailbox write for room %s: written=%s failed=%s", room_id, written, failed)
        raise PartialMailboxWrite(room_id, written, failed)

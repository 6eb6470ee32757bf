"""Notifications list view over a user's mailbox entries."""

import logging
from typing import Iterable, List, Optional

from pydantic import BaseModel

from dmchat.core.auth_models import UserProfile
from dmchat.core.mailbox import LastMessage, MailboxEntry, Participant

logger = logging.getLogger(__name__)


class RoomSummary(BaseModel):
    """One row of the notifications surface."""

    room_id: str
    peer: Participant
    last_message: Optional[LastMessage] = None
    unread: int = 0

    def peer_profile(self) -> UserProfile:
        """Profile to pass to open_chat when the row is clicked."""
        return UserProfile(uid=self.peer.uid, nickname=self.peer.nickname, photo_url=self.peer.photo_url)


def sort_entries(entries: Iterable[MailboxEntry]) -> List[MailboxEntry]:
    """Most recently active room first."""
    return sorted(entries, key=lambda entry: entry.activity_timestamp(), reverse=True)


def total_unread(entries: Iterable[MailboxEntry], viewer_uid: str) -> int:
    """Sum of the viewer's unread counters across all rooms."""
    return sum(entry.unread_for(viewer_uid) for entry in entries)


def summarize_rooms(
    entries: Iterable[MailboxEntry], viewer_uid: str, limit: Optional[int] = None
) -> List[RoomSummary]:
    """
    Turns mailbox entries into list rows, most recent first.
    Entries with no participant other than the viewer are skipped.
    """
    summaries: List[RoomSummary] = []

    for entry in sort_entries(entries):
        peer = next((p for uid, p in entry.participants.items() if uid != viewer_uid), None)
        if peer is None:
            logger.warning("Chat room %s is missing participants data", entry.id)
            continue

        summaries.append(
            RoomSummary(
                room_id=entry.id,
                peer=peer,
                last_message=entry.last_message,
                unread=entry.unread_for(viewer_uid),
            )
        )
        if limit is not None and len(summaries) >= limit:
            break

    return summaries

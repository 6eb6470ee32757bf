"""
Mailbox entries: one user's denormalized summary of one room.

The functions at the bottom of this module are the transaction bodies used
by the mailbox ledger. They are pure: they receive the entry currently
stored (or None) and return the entry to write (or None to abort).
"""

from typing import Dict, Optional

from pydantic import BaseModel, Field

from dmchat.core.auth_models import UserProfile


class Participant(BaseModel):
    """Snapshot of a participant's display identity."""

    uid: str
    nickname: str
    photo_url: str = ""

    @classmethod
    def from_profile(cls, profile: UserProfile) -> "Participant":
        return cls(uid=profile.uid, nickname=profile.nickname, photo_url=profile.photo_url or "")


class LastMessage(BaseModel):
    """Preview of the most recent message in a room."""

    text: str
    timestamp: int


class MailboxEntry(BaseModel):
    """Summary record stored under userChats/{owner}/{room_id}."""

    id: str
    participants: Dict[str, Participant] = Field(default_factory=dict)
    last_message: Optional[LastMessage] = None
    # Keyed by whose unread count it is.
    unread_count: Dict[str, int] = Field(default_factory=dict)

    def unread_for(self, uid: str) -> int:
        return self.unread_count.get(uid, 0)

    def activity_timestamp(self) -> int:
        """Sort key for most-recently-active ordering."""
        return self.last_message.timestamp if self.last_message else 0


def participants_snapshot(*profiles: UserProfile) -> Dict[str, Participant]:
    """Builds the participants map from the profiles passed at call time."""
    return {profile.uid: Participant.from_profile(profile) for profile in profiles}


def apply_send(
    current: Optional[MailboxEntry],
    room_id: str,
    participants: Dict[str, Participant],
    last_message: LastMessage,
    increment_for: Optional[str] = None,
) -> MailboxEntry:
    """
    Merges a send into an owner's entry.

    participants and last_message are overwritten wholesale. When
    increment_for is given, that user's unread counter is incremented from
    the value read in current; other counters are carried over untouched.
    """
    unread = dict(current.unread_count) if current else {}
    if increment_for is not None:
        unread[increment_for] = unread.get(increment_for, 0) + 1

    return MailboxEntry(
        id=room_id,
        participants=dict(participants),
        last_message=last_message,
        unread_count=unread,
    )


def clear_unread(current: Optional[MailboxEntry], owner_id: str) -> Optional[MailboxEntry]:
    """Sets the owner's unread counter to zero. Aborts on a missing entry."""
    if current is None:
        return None
    if current.unread_count.get(owner_id) == 0:
        return current
    unread = dict(current.unread_count)
    unread[owner_id] = 0
    return current.model_copy(update={"unread_count": unread})

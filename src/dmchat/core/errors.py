"""
Error kinds raised by the chat core.

Validation errors (InvalidIdentifier, EmptyMessage) are raised before any
backend call. Backend errors are raised from suspend points.
"""

from typing import Optional, Sequence


class ChatError(Exception):
    """Base class for every error raised by the chat core."""


class InvalidIdentifier(ChatError):
    """A user identifier is empty or malformed."""


class EmptyMessage(ChatError):
    """Message text is empty or whitespace-only."""


class Unauthenticated(ChatError):
    """Operation attempted with no current user."""


class BackendUnavailable(ChatError):
    """Transport or storage failure on a backend operation."""


class TransactionConflict(BackendUnavailable):
    """An optimistic transaction kept losing the race and gave up."""


class PartialMailboxWrite(ChatError):
    """
    One of the two mailbox transactions of a send failed after the other
    one succeeded. Warning-level: the message itself was delivered.
    """

    def __init__(
        self, room_id: str, written: Sequence[str], failed: Sequence[str], message_id: Optional[str] = None
    ):
        self.room_id = room_id
        self.message_id = message_id
        self.written = list(written)
        self.failed = list(failed)
        super().__init__(
            f"Mailbox summary for room {room_id} written for {self.written} but not for {self.failed}"
        )

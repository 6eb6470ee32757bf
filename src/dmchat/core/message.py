"""
Define Message structure to ensure consistency in the system
"""

import uuid

from pydantic import BaseModel, ConfigDict, Field


def new_message_id() -> str:
    """Opaque, unique message key."""
    return uuid.uuid4().hex


class Message(BaseModel):
    """A chat message. Immutable once written to the log."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_message_id)
    room_id: str
    sender_id: str
    text: str
    # Milliseconds since epoch, assigned by the store.
    timestamp: int


def is_blank(text: str) -> bool:
    """True for empty or whitespace-only text."""
    return not text or not text.strip()

"""Canonical room identity for two-party conversations."""

from dmchat.core.errors import InvalidIdentifier

ROOM_SEPARATOR = "_"

# Characters that cannot appear in a key of the realtime store, plus the
# separator so that two different pairs never share a room id.
FORBIDDEN_KEY_CHARS = frozenset("/.#$[]" + ROOM_SEPARATOR)


def validate_user_id(user_id: str) -> str:
    """Returns the identifier unchanged, or raises InvalidIdentifier."""
    if not isinstance(user_id, str) or not user_id.strip():
        raise InvalidIdentifier(f"User identifier must be a non-empty string, got {user_id!r}")
    if user_id != user_id.strip():
        raise InvalidIdentifier(f"User identifier has surrounding whitespace: {user_id!r}")
    if FORBIDDEN_KEY_CHARS.intersection(user_id):
        raise InvalidIdentifier(f"User identifier contains a forbidden character: {user_id!r}")
    return user_id


def compute_room_id(uid_a: str, uid_b: str) -> str:
    """
    Derives the room key shared by two users.

    The smaller identifier (lexicographic order) always comes first, so
    compute_room_id(a, b) == compute_room_id(b, a).
    """
    first = validate_user_id(uid_a)
    second = validate_user_id(uid_b)
    if first > second:
        first, second = second, first
    return f"{first}{ROOM_SEPARATOR}{second}"

"""
Defines storage management APIs, using SQLite, for the chat backend:
the per-room message log and the per-user mailbox records.
"""

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional, Tuple

from dmchat.core.errors import TransactionConflict
from dmchat.core.mailbox import MailboxEntry
from dmchat.core.message import Message

logger = logging.getLogger(__name__)

# Transaction body: receives the stored entry (or None), returns the entry to
# write or None to abort without writing.
TransactionFn = Callable[[Optional[MailboxEntry]], Optional[MailboxEntry]]


def now_ms() -> int:
    return int(time.time() * 1000)


class StorageService:
    """Handles durable storage of messages and mailbox entries."""

    def __init__(self, db_name: str):
        self.db_name = db_name
        self._init_db()

    @contextmanager
    def _get_conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_name, timeout=10.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._get_conn() as conn:
            cursor = conn.cursor()

            # seq preserves acceptance order within the whole log.
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS chats (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id TEXT UNIQUE NOT NULL,
                    room_id TEXT NOT NULL,
                    sender_id TEXT NOT NULL,
                    text TEXT NOT NULL,
                    timestamp INTEGER NOT NULL
                    )
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS user_chats (
                    owner_id TEXT NOT NULL,
                    room_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    PRIMARY KEY (owner_id, room_id)
                    )
                """
            )

            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_chats_room_seq
                    ON chats(room_id, seq)
                """
            )

            conn.commit()

    def server_timestamp(self) -> int:
        """Store clock, in milliseconds since epoch."""
        return now_ms()

    # === Message log ===

    def append_message(self, room_id: str, sender_id: str, text: str) -> Message:
        """
        Appends a message to a room's log.
        The timestamp is assigned under the write lock and is strictly
        greater than every timestamp already stored for the room.
        """
        with self._get_conn() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    """
                    SELECT MAX(timestamp) AS last_ts FROM chats WHERE room_id = ?
                    """,
                    (room_id,),
                ).fetchone()
                last_ts = row["last_ts"] if row and row["last_ts"] is not None else 0

                message = Message(
                    room_id=room_id,
                    sender_id=sender_id,
                    text=text,
                    timestamp=max(now_ms(), last_ts + 1),
                )
                conn.execute(
                    """
                    INSERT INTO chats
                        (message_id, room_id, sender_id, text, timestamp)
                        VALUES (?, ?, ?, ?, ?)
                    """,
                    (message.id, message.room_id, message.sender_id, message.text, message.timestamp),
                )
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise

        return message

    def get_recent_messages(self, room_id: str, limit: int = 50) -> List[Message]:
        """Returns the last `limit` messages of a room, oldest first."""
        with self._get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT * FROM (
                    SELECT seq, message_id AS id, room_id, sender_id, text, timestamp
                        FROM chats
                        WHERE room_id = ?
                        ORDER BY seq DESC
                        LIMIT ?
                    )
                    ORDER BY seq ASC
                """,
                (room_id, limit),
            )
            rows = cursor.fetchall()

        messages = []
        for row in rows:
            msg_dict = dict(row)
            msg_dict.pop("seq")
            messages.append(Message(**msg_dict))

        return messages

    def get_messages_after(self, room_id: str, timestamp: int) -> List[Message]:
        """Messages of a room strictly after timestamp, oldest first."""
        with self._get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT message_id AS id, room_id, sender_id, text, timestamp
                    FROM chats
                    WHERE room_id = ? AND timestamp > ?
                    ORDER BY seq ASC
                """,
                (room_id, timestamp),
            )
            rows = cursor.fetchall()

        return [Message(**dict(row)) for row in rows]

    # === Mailboxes ===

    def load_mailbox_entry(self, owner_id: str, room_id: str) -> Tuple[Optional[MailboxEntry], Optional[int]]:
        """
        Reads one mailbox record.
        Returns: (MailboxEntry, version) or (None, None)
        """
        with self._get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT data, version FROM user_chats
                    WHERE owner_id = ? AND room_id = ?
                """,
                (owner_id, room_id),
            )
            row = cursor.fetchone()

        if row:
            return MailboxEntry(**json.loads(row["data"])), row["version"]
        return None, None

    def get_mailbox_entries(self, owner_id: str) -> List[MailboxEntry]:
        """All entries of an owner's mailbox, in storage order."""
        with self._get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT data FROM user_chats WHERE owner_id = ?
                """,
                (owner_id,),
            )
            rows = cursor.fetchall()

        return [MailboxEntry(**json.loads(row["data"])) for row in rows]

    def _compare_and_set(
        self, owner_id: str, room_id: str, entry: MailboxEntry, expected_version: Optional[int]
    ) -> bool:
        """Writes entry only if the stored version is still expected_version."""
        data = entry.model_dump_json()

        with self._get_conn() as conn:
            cursor = conn.cursor()
            if expected_version is None:
                cursor.execute(
                    """
                    INSERT OR IGNORE INTO user_chats
                        (owner_id, room_id, data, version)
                        VALUES (?, ?, ?, 1)
                    """,
                    (owner_id, room_id, data),
                )
            else:
                cursor.execute(
                    """
                    UPDATE user_chats
                        SET data = ?, version = version + 1
                        WHERE owner_id = ? AND room_id = ? AND version = ?
                    """,
                    (data, owner_id, room_id, expected_version),
                )
            conn.commit()
            return cursor.rowcount == 1

    def run_transaction(
        self, owner_id: str, room_id: str, update: TransactionFn, max_attempts: int = 25
    ) -> Optional[MailboxEntry]:
        """
        Optimistic read-modify-write over userChats/{owner_id}/{room_id}.

        update is called with the latest stored value and may be called
        several times. Returns the committed entry, or None when nothing was
        written (update aborted by returning None, or left the entry as is).
        """
        for attempt in range(1, max_attempts + 1):
            current, version = self.load_mailbox_entry(owner_id, room_id)
            updated = update(current)

            if updated is None or updated == current:
                return None

            if self._compare_and_set(owner_id, room_id, updated, version):
                return updated

            logger.debug(
                "Transaction on userChats/%s/%s lost a race (attempt %d), retrying",
                owner_id,
                room_id,
                attempt,
            )

        raise TransactionConflict(
            f"Transaction on userChats/{owner_id}/{room_id} did not commit after {max_attempts} attempts"
        )

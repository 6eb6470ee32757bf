"""
Chat runtime: the composition root that owns the backend services and the
session of the active user.
"""

import logging
from typing import Optional

from dmchat.config.settings import Settings
from dmchat.core.auth_models import UserProfile
from dmchat.core.errors import Unauthenticated
from dmchat.services.change_feed import IChangeFeed, create_change_feed
from dmchat.services.chat_session import ChatSessionManager
from dmchat.services.mailbox import MailboxLedger
from dmchat.services.message_log import MessageLog
from dmchat.services.storage import StorageService

logger = logging.getLogger(__name__)


class ChatRuntime:
    """
    Wires storage, change feed, message log and mailbox ledger together,
    and holds at most one ChatSessionManager (the logged-in user's).
    """

    def __init__(self, storage: StorageService, feed: IChangeFeed, config: Settings):
        self.storage = storage
        self.feed = feed
        self.config = config

        self.message_log = MessageLog(
            storage,
            feed,
            reconnect_initial_delay=config.reconnect_initial_delay,
            reconnect_max_delay=config.reconnect_max_delay,
        )
        self.ledger = MailboxLedger(
            storage,
            feed,
            max_attempts=config.transaction_max_attempts,
            reconnect_initial_delay=config.reconnect_initial_delay,
            reconnect_max_delay=config.reconnect_max_delay,
        )
        self._session: Optional[ChatSessionManager] = None

    @classmethod
    def from_settings(cls, config: Settings) -> "ChatRuntime":
        return cls(StorageService(config.db_name), create_change_feed(config.redis_url), config)

    def is_authenticated(self) -> bool:
        return self._session is not None

    @property
    def current_user(self) -> Optional[UserProfile]:
        return self._session.user if self._session else None

    @property
    def session(self) -> ChatSessionManager:
        """The active user's session. Raises Unauthenticated if nobody is logged in."""
        if self._session is None:
            raise Unauthenticated("No user is logged in")
        return self._session

    async def login(self, user: UserProfile) -> ChatSessionManager:
        """Starts the chat session of user."""
        if self._session is not None:
            if self._session.user.uid != user.uid:
                raise ValueError(f"Already logged in as {self._session.user.uid}")
            return self._session

        logger.info("Starting chat session for user: %s", user.uid)
        session = ChatSessionManager(user, self.message_log, self.ledger, self.config.recent_message_limit)
        await session.start()
        self._session = session
        return session

    async def logout(self) -> None:
        """Tears down the active session and all of its subscriptions."""
        session, self._session = self._session, None
        if session is not None:
            await session.shutdown()

    async def shutdown(self) -> None:
        await self.logout()
        await self.feed.close()
        logger.info("Chat runtime shutdown complete.")

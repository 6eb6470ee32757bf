"""Authentication Provider, handles the login and identity of users."""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from dmchat.core.auth_models import LoginRequest, UserProfile
from dmchat.core.errors import InvalidIdentifier
from dmchat.core.room import validate_user_id

logger = logging.getLogger(__name__)


class IAuthProvider(ABC):
    """
    Abstract interface for the identity provider.
    """

    @abstractmethod
    async def authenticate(self, credentials: LoginRequest) -> Optional[UserProfile]:
        """
        Verifies credentials and returns the user's profile if valid,
        otherwise None or raises an Exception
        """


class DummyAuthProvider(IAuthProvider):
    """
    Dummy implementation of the Auth Provider, used for development:
    any well-formed uid with a nickname logs in, passwords are ignored.
    """

    async def authenticate(self, credentials: LoginRequest) -> Optional[UserProfile]:
        uid = credentials.uid.strip()
        nickname = credentials.nickname.strip()

        if not nickname:
            logger.warning("Login attempt with empty nickname")
            return None
        try:
            validate_user_id(uid)
        except InvalidIdentifier as e:
            logger.warning("Login attempt with invalid uid: %s", e)
            return None

        return UserProfile(uid=uid, nickname=nickname, photo_url=credentials.photo_url, email=credentials.email)


# Create a singleton for Auth provider
current_auth_provider: IAuthProvider = DummyAuthProvider()

"""Shared fixtures: a temporary SQLite store and an in-process change feed."""

# pylint: disable=redefined-outer-name
import pytest

from dmchat.core.auth_models import UserProfile
from dmchat.services.change_feed import LocalChangeFeed
from dmchat.services.mailbox import MailboxLedger
from dmchat.services.message_log import MessageLog
from dmchat.services.storage import StorageService


@pytest.fixture
def storage(tmp_path):
    """
    Creates a temporary file-based DB.
    tmp_path is a built-in pytest fixture that provides a temporary directory
    """
    return StorageService(str(tmp_path / "test_chat.db"))


@pytest.fixture
def feed():
    return LocalChangeFeed()


@pytest.fixture
def message_log(storage, feed):
    return MessageLog(storage, feed, reconnect_initial_delay=0.01, reconnect_max_delay=0.05)


@pytest.fixture
def ledger(storage, feed):
    return MailboxLedger(storage, feed, max_attempts=5, reconnect_initial_delay=0.01, reconnect_max_delay=0.05)


@pytest.fixture
def alice():
    return UserProfile(uid="u1", nickname="Alice", photo_url="http://img/alice.png")


@pytest.fixture
def bob():
    return UserProfile(uid="u2", nickname="Bob")

"""In memory chat session state (open chat windows)."""

from dataclasses import dataclass, field
from typing import List, Optional

from dmchat.core.auth_models import UserProfile


@dataclass
class ChatSession:
    """
    Keeps the set of chat windows currently open for the active user.
    Ordered by opening time; never persisted.
    """

    owner: UserProfile
    open_windows: List[UserProfile] = field(default_factory=list)

    def find(self, uid: str) -> Optional[UserProfile]:
        """Returns the open window for uid, if any."""
        return next((profile for profile in self.open_windows if profile.uid == uid), None)

    def is_open(self, uid: str) -> bool:
        return self.find(uid) is not None

    def open(self, target: UserProfile) -> bool:
        """Adds a window for target. Returns False if it was already open."""
        if self.is_open(target.uid):
            return False
        self.open_windows.append(target)
        return True

    def close(self, uid: str) -> bool:
        """Removes the window for uid. Returns False if it was not open."""
        before = len(self.open_windows)
        self.open_windows = [profile for profile in self.open_windows if profile.uid != uid]
        return len(self.open_windows) != before

    def clear(self) -> None:
        self.open_windows = []

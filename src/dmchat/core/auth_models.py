"""Authentication models to handle logins and user identity"""

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    """Defines a Login request schema."""

    uid: str
    nickname: str
    photo_url: str = ""
    email: str = ""
    password: str = Field(default="", description="Optional for dummy login")


class UserProfile(BaseModel):
    """Display identity of a user, as served by the profile store."""

    uid: str
    nickname: str
    photo_url: str = ""
    email: str = ""

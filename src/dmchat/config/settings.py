"""Global chat settings"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Centralized configuration.
    Reads configs from env variables.
    """

    app_name: str = "DM Chat"
    server_port: int = 8000

    db_name: str = "chat.db"

    # When unset, live notifications stay inside this process.
    redis_url: str | None = None

    recent_message_limit: int = 50

    transaction_max_attempts: int = 25

    reconnect_initial_delay: float = 0.5
    reconnect_max_delay: float = 30.0

    model_config = {"env_file": ".env"}


settings = Settings()

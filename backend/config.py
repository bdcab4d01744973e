from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    APP_TITLE: str = "Call Signaling Server"
    APP_VERSION: str = "0.1.0"

    HOST: str = "0.0.0.0"
    PORT: int = 3001
    LOG_LEVEL: str = "INFO"

    # Allow all origins for local network testing
    CORS_ORIGINS: List[str] = ["*"]

    CONTACTS_FILE: str = "contacts.json"

    ICE_SERVERS: List[str] = [
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
    ]

    # Frames queued per connection before new ones are dropped
    OUTBOX_MAX_SIZE: int = 256


@lru_cache
def get_settings() -> Settings:
    return Settings()

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ADMIN_KEY: str = "change-me"
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:8080"
    CORS_ORIGIN_REGEX: Optional[str] = None
    AZURE_STORAGE_CONNECTION_STRING: Optional[str] = None
    AZURE_STORAGE_CONTAINER: str = "question-images"

    # Session clock
    QUESTION_TIME_LIMIT: int = 10
    TICK_INTERVAL_SECONDS: float = 1.0

    # Rooms and participants
    ROOM_ID_LENGTH: int = 7
    MAX_NAME_LENGTH: int = 40
    QUESTION_BANK_PATH: Optional[str] = None

    # Shared store retries
    STORE_RETRY_ATTEMPTS: int = 5
    STORE_RETRY_BASE_DELAY: float = 0.05
    STORE_RETRY_MAX_DELAY: float = 1.0

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    COUNTDOWN_SECONDS: int = 7
    TICK_INTERVAL: float = 1.0
    MAX_NAME_LENGTH: int = 30

    RELAY_URL: str = "ws://localhost:8000"
    RELAY_HOST: str = "0.0.0.0"
    RELAY_PORT: int = 8000
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    RESULTS_DIR: str = "results"
    AZURE_STORAGE_CONNECTION_STRING: Optional[str] = None
    AZURE_STORAGE_CONTAINER: str = "session-results"
    RESULTS_LINK_TTL_HOURS: int = 72

    LOG_LEVEL: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Persistence
    DATA_DIR: str = "./data"
    PERSIST_ENABLED: bool = True

    # AniList
    ANILIST_API_URL: str = "https://graphql.anilist.co"
    ANILIST_TOKEN: Optional[str] = None
    REQUEST_TIMEOUT_SECONDS: int = 30
    DRY_RUN: bool = False

    # Sync Logic
    SYNC_INTERVAL_SECONDS: int = 60
    SYNC_ITEM_DELAY_SECONDS: float = 0.5

    # Connectivity
    CONNECTIVITY_CHECK_URL: str = "https://graphql.anilist.co"
    CONNECTIVITY_CHECK_INTERVAL_SECONDS: int = 15

    # System
    NOTIFICATIONS_ENABLED: bool = True
    LOG_LEVEL: str = "INFO"
    HTTP_SERVER_ENABLED: bool = False
    HTTP_SERVER_PORT: int = 8080
    HTTP_SERVER_TOKEN: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

settings = Settings()

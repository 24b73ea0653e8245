from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./agrivision.db"
    DB_POOL_SIZE: int = 10

    # "public" searches every user's farms, "owner" only the caller's
    LOCATION_SEARCH_SCOPE: Literal["public", "owner"] = "public"
    # 403 instead of 404 when a farm exists but belongs to someone else
    REVEAL_FORBIDDEN: bool = False

    HISTORY_DEFAULT_LIMIT: int = 10
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"


def get_settings() -> Settings:
    return Settings()

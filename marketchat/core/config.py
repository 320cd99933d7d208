from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration, read from the environment and `.env`."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    PROJECT_NAME: str = "Marketplace Chat"

    # MongoDB
    MONGODB_URL: str = "mongodb://localhost:27017"
    MONGODB_DB: str = "marketchat"
    # Multi-document transactions need a replica set; standalone dev servers set this to false.
    MONGO_TRANSACTIONS: bool = True
    CONVERSATION_UNIQUE_KEY: bool = True

    # Redis (realtime bus + profile cache). Unset -> in-process bus, no profile cache.
    REDIS_URL: Optional[str] = None

    # JWT issued by the identity provider
    JWT_SECRET: str = "dev-secret-change-me"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    PROFILE_CACHE_TTL_SECONDS: int = Field(300, ge=1)

    MESSAGE_PAGE_SIZE: int = Field(20, ge=1)
    MESSAGE_PAGE_SIZE_MAX: int = Field(100, ge=1)
    MESSAGE_STREAM_LIMIT: int = Field(30, ge=1)

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of: {', '.join(sorted(allowed))}")
        return v.upper()

    @field_validator("REDIS_URL")
    @classmethod
    def empty_redis_url_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

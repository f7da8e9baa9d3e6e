from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    DB_URL: str
    REDIS_URL: str = "redis://localhost:6379/0"

    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_COOKIE_NAME: str = "access_token"

    # Shared secret for calls made by the application-approval and admin processes
    INTERNAL_API_TOKEN: str | None = Field(
        default=None,
        validation_alias=AliasChoices("INTERNAL_API_TOKEN", "KINSHIP_INTERNAL_TOKEN"),
    )

    COOLING_OFF_HOURS: int = 24
    CONFLICT_RETRY_COUNT: int = 5
    CONFLICT_RETRY_DELAY: float = 0.05

    METRICS_BASE_URL: str = "http://localhost:8081"
    METRICS_TIMEOUT_SECONDS: float = 5.0

    COOLING_OFF_SWEEP_ENABLED: bool = False
    COOLING_OFF_SWEEP_INTERVAL_MINUTES: int = 15

    CHANGE_FEED_PREFIX: str = "relationship"

    model_config = SettingsConfigDict(
        env_file=Path(__file__).resolve().parents[1].parent / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

settings = Settings()

"""Configuration management for the Voting API service."""
import time
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Service configuration
    SERVICE_NAME: str = "voting-api"
    DEBUG: bool = False

    # Server configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Document store (Data API) configuration
    MONGO_BASE_URL: str = "http://localhost:8080"
    MONGO_API_KEY: str = ""
    MONGO_DATA_SOURCE: str = "Bentotec"
    MONGO_DATABASE: str = "bentotec"
    MONGO_COLLECTION: str = "projects"

    # Captcha configuration
    RECAPTCHA_SECRET: str = ""
    RECAPTCHA_VERIFY_URL: str = "https://www.google.com/recaptcha/api/siteverify"

    # Voting window, seconds since epoch
    VOTING_END_TIMESTAMP: float = 0
    VOTE_CAP_PER_IP: int = 10

    # Header set by the edge proxy with the caller's address
    CLIENT_IP_HEADER: str = "CF-Connecting-IP"

    # Optional per-IP limit for the vote route, e.g. "30/minute". Unset means no limit
    VOTE_RATE_LIMIT: Optional[str] = None

    # Outbound HTTP
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # Caching hint for the project listing
    PROJECTS_CACHE_CONTROL: str = "public, max-age=14400, s-maxage=43200"

    @property
    def data_api_target(self) -> dict:
        """Data source / database / collection triple sent with every action."""
        return {
            "dataSource": self.MONGO_DATA_SOURCE,
            "database": self.MONGO_DATABASE,
            "collection": self.MONGO_COLLECTION,
        }

    def remaining_voting_time(self, now: Optional[float] = None) -> int:
        """
        Milliseconds left until the voting window closes.

        Args:
            now: Current time in seconds since epoch (defaults to time.time())

        Returns:
            Remaining time in milliseconds; zero or negative once voting is over
        """
        if now is None:
            now = time.time()
        return int(self.VOTING_END_TIMESTAMP * 1000 - now * 1000)


@lru_cache
def get_settings() -> Settings:
    return Settings()

"""Application settings, read from the environment or a ``.env`` file."""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    APP_NAME: str = "Meta Ad Library Browser API"

    # Ad Library
    META_ADLIB_TOKEN: str = ""
    META_API_VERSION: str = "v23.0"
    REQUEST_TIMEOUT: float = 30.0  # seconds per attempt
    MAX_RETRIES: int = 3
    MIN_REQUEST_INTERVAL: float = 1.0  # seconds between upstream calls
    DEFAULT_PAGE_SIZE: int = 24

    # Categorization (disabled without a key)
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-2.0-flash"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "text"
    API_LOG_FILE: Optional[str] = "logs/facebook-api.log"

    # Shared result cache; the in-process cache is used when unset
    REDIS_URL: str = ""

    def facebook_api_config(self) -> dict:
        return {
            "access_token": self.META_ADLIB_TOKEN,
            "api_version": self.META_API_VERSION,
            "request_timeout": self.REQUEST_TIMEOUT,
            "min_request_interval": self.MIN_REQUEST_INTERVAL,
            "max_retries": self.MAX_RETRIES,
            "default_page_size": self.DEFAULT_PAGE_SIZE,
        }

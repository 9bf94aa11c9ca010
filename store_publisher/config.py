"""Application configuration using pydantic-settings."""

from functools import lru_cache
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from store_publisher.models.deployment import RetryPolicy

# Load .env file without clobbering values injected by the CI runner
load_dotenv(override=False)


class Settings(BaseSettings):
    """Publisher settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["console", "json"] = "console"

    # HTTP execution
    http_timeout_seconds: float = Field(default=30.0, gt=0)
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_initial_delay_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=10.0, ge=0)
    retry_backoff_factor: float = Field(default=2.0, ge=1)

    # Google Play Developer API
    google_play_api_url: str = "https://androidpublisher.googleapis.com"
    google_oauth_token_url: str = "https://oauth2.googleapis.com/token"

    # App Store Connect
    app_store_connect_api_url: str = "https://api.appstoreconnect.apple.com"
    upload_tool: str = "xcrun altool"
    upload_tool_timeout_seconds: float = Field(default=30 * 60, gt=0)
    ios_processing_poll_interval_seconds: float = Field(default=30.0, gt=0)
    ios_processing_max_wait_seconds: float = Field(default=30 * 60, gt=0)

    # GitHub Actions output file
    github_output_path: str | None = Field(default=None, validation_alias="GITHUB_OUTPUT")

    @property
    def upload_tool_command(self) -> list[str]:
        """Upload tool invocation split into argv form."""
        return self.upload_tool.split()

    def retry_policy(self) -> RetryPolicy:
        """Build the shared retry policy for outbound HTTP calls."""
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            initial_delay=self.retry_initial_delay_seconds,
            max_delay=self.retry_max_delay_seconds,
            backoff_factor=self.retry_backoff_factor,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

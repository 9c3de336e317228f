"""Configuration management for calsync."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Sync layer settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CALSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Remote API Configuration
    api_base_url: str = Field(default="http://127.0.0.1:3001/api", description="Backend API base URL")
    api_token: str | None = Field(default=None, description="Bearer token sent with every request (optional)")
    request_timeout_seconds: float = Field(default=10.0, description="Per-request transport timeout")

    # Pydantic Logfire Configuration (optional)
    logfire_token: str | None = Field(default=None, description="Pydantic Logfire token for observability")
    environment: str = Field(default="development", description="Deployment environment name")

    # Progressive Loading Configuration
    range_margin_days: int = Field(
        default=7, description="Days of padding added around a requested window, also the edge-approach margin"
    )
    prefetch_block_days: int = Field(default=30, description="Size of the block fetched beyond a covered boundary")
    initial_window_days: int = Field(default=30, description="Days loaded on each side of today on start")

    # Polling Configuration
    active_poll_seconds: int = Field(default=120, description="Refresh interval while the client is visible")
    inactive_poll_seconds: int = Field(default=600, description="Refresh interval while the client is hidden")
    reactivation_threshold_seconds: int = Field(
        default=120, description="Hidden duration after which regaining focus triggers an immediate refresh"
    )
    conflict_poll_seconds: int = Field(default=60, description="Interval between open-conflict polls")

    # Mutation Configuration
    refresh_after_mutation: bool = Field(
        default=True, description="Refresh all covered ranges after a confirmed write"
    )

    def require_credential(self, field_name: str, service_name: str) -> str:
        """Validate that a required credential is set, raising a clear error if missing.

        Args:
            field_name: Name of the field to check
            service_name: Human-readable service name for error message

        Returns:
            The credential value

        Raises:
            ValueError: If the credential is None or empty
        """
        value = getattr(self, field_name)
        if not value:
            raise ValueError(
                f"{service_name} credential not configured. "
                f"Set CALSYNC_{field_name.upper()} environment variable or add to .env file."
            )
        return value


# Application Constants
class Constants:
    """Application-wide constants."""

    # Wire formats
    DATE_FORMAT: str = "%Y-%m-%d"  # Calendar-day strings sent to the range endpoint

    # Range Ledger
    RANGE_TOUCH_DAYS: int = 1  # Ranges closer than this are merged into one

    # Task validation (mirrors the edit form limits)
    TASK_TITLE_MAX_LENGTH: int = 200
    TASK_NOTES_MAX_LENGTH: int = 500

    # Optimistic creates
    TEMP_ID_PREFIX: str = "temp-"

    # HTTP Status Codes
    HTTP_FORBIDDEN: int = 403
    HTTP_NOT_FOUND: int = 404
    HTTP_CONFLICT: int = 409

    # Mutation history kept per task for inspection
    MUTATION_HISTORY_MAXLEN: int = 50


def get_settings() -> Settings:
    """Get sync layer settings."""
    return Settings()


# Global settings instance
settings = get_settings()
constants = Constants()

"""Configuration loading for careflow.

Settings come from environment variables and an optional .env file and
are validated by pydantic before any adapter is built.
"""

from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment.

    Uses pydantic-settings for environment variable handling with
    .env file support via python-dotenv.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Store configuration
    store_sqlite_path: str = Field(
        default="./data/careflow.db",
        description="SQLite database file path",
    )
    store_pool_size: int = Field(
        default=5,
        description="Maximum pooled SQLite connections",
    )

    # Notification configuration
    notification_backend: Literal["stdout", "slack"] = Field(
        default="stdout",
        description="Notification backend type",
    )
    slack_webhook_url: str = Field(
        default="",
        description="Slack incoming-webhook URL",
    )
    notification_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for outgoing notification requests",
    )

    # Automation configuration
    automation_interval_seconds: float = Field(
        default=30.0,
        description="Pause between automation cycles in seconds",
    )
    automation_batch_size: int = Field(
        default=100,
        description="Maximum events processed per automation cycle",
    )
    purge_every_cycles: int = Field(
        default=120,
        description="Purge old dedupe marks every this many cycles",
    )
    processed_retention_days: int = Field(
        default=30,
        description="Days to keep automation dedupe marks",
    )

    # Transitions
    transition_max_attempts: int = Field(
        default=3,
        description="Compare-and-set attempts before a transition gives up",
    )

    # Logging configuration
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Log level",
    )
    log_format: Literal["json", "text"] = Field(
        default="text",
        description="Log format",
    )

    # Run mode
    run_mode: Literal["daemon", "cli", "api"] = Field(
        default="daemon",
        description="Run mode",
    )

    # API configuration
    api_host: str = Field(
        default="0.0.0.0",
        description="Host to listen on for the API server",
    )
    api_port: int = Field(
        default=8080,
        description="Port to listen on for the API server",
    )
    api_key: str = Field(
        default="",
        description="API key for API authentication (required for production)",
    )
    api_require_auth: bool = Field(
        default=False,
        description="Require API key authentication for /api endpoints",
    )

    # CLI identity
    cli_user_id: str = Field(
        default="cli",
        description="User id recorded on events issued from the CLI",
    )
    cli_roles: str = Field(
        default="admin",
        description="Comma separated roles of the CLI user",
    )

    # Development
    debug: bool = Field(
        default=False,
        description="Enable debug mode with verbose logging",
    )

    @field_validator(
        "automation_interval_seconds",
        "notification_timeout_seconds",
    )
    @classmethod
    def validate_positive_seconds(cls, v: float) -> float:
        """Ensure intervals and timeouts are positive."""
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("automation_batch_size", "purge_every_cycles", "store_pool_size")
    @classmethod
    def validate_positive_count(cls, v: int) -> int:
        """Ensure batch sizes and counters are positive."""
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("processed_retention_days")
    @classmethod
    def validate_retention_days(cls, v: int) -> int:
        if v < 1:
            raise ValueError("processed_retention_days must be at least 1")
        return v

    @field_validator("transition_max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("transition_max_attempts must be at least 1")
        return v

    @field_validator("api_port")
    @classmethod
    def validate_api_port(cls, v: int) -> int:
        """Ensure API port is in valid range."""
        if v <= 0 or v > 65535:
            raise ValueError("api_port must be between 1 and 65535")
        return v

    @model_validator(mode="after")
    def validate_slack_backend(self) -> "Settings":
        """Slack notifications need a webhook URL."""
        if self.notification_backend == "slack" and not self.slack_webhook_url:
            raise ValueError("slack_webhook_url is required when notification_backend is slack")
        return self

    @property
    def cli_role_set(self) -> frozenset[str]:
        return frozenset(r.strip() for r in self.cli_roles.split(",") if r.strip())


def load_settings(env_file: str | None = None) -> Settings:
    """Load application settings from environment.

    Args:
        env_file: Optional path to .env file. If not provided,
                 uses the default .env in the current directory.

    Returns:
        Validated Settings instance.

    Raises:
        ValidationError: If settings validation fails.
    """
    if env_file:
        return Settings(_env_file=env_file)  # type: ignore[call-arg]
    return Settings()


__all__ = ["Settings", "load_settings"]

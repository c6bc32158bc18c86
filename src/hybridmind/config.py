"""Configuration settings for the application."""

from pydantic_settings import (
    BaseSettings,
    SettingsConfigDict,
)


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    # Define the settings with default values and types
    # These will be loaded from environment variables or a .env file if not provided
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    API_PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical

    # Provider configuration
    OPENROUTER_API_KEY: str | None = None
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
    PROVIDER_OVERRIDE: str | None = None  # e.g. "echo" to run fully offline

    # Dispatch
    DISPATCH_TIMEOUT_SECONDS: float = 30.0
    MAX_PAYLOAD_CHARS: int = 50_000
    DEFAULT_MAX_TOKENS: int = 4096
    DEFAULT_TEMPERATURE: float = 0.7
    REQUEST_TIMEOUT_SECONDS: float = 120.0  # whole request, across every dispatch

    # Retry policy
    RETRY_BASE_DELAY_SECONDS: float = 0.5
    RETRY_MAX_DELAY_SECONDS: float = 8.0
    PROVIDER_RATE_LIMIT_ATTEMPTS: int = 3

    # Tier limits
    FREE_REQUESTS_PER_MINUTE: int = 10
    FREE_REQUESTS_PER_HOUR: int = 100
    FREE_DAILY_BUDGET_USD: float = 2.00
    FREE_MAX_MODELS: int = 2
    PRO_REQUESTS_PER_MINUTE: int = 60
    PRO_REQUESTS_PER_HOUR: int = 1000
    PRO_DAILY_BUDGET_USD: float = 25.00
    PRO_MAX_MODELS: int = 4

    # Agent
    AGENT_MAX_STEPS: int = 10
    AGENT_MAX_REPLANS: int = 2
    AGENT_SESSION_LIMIT: int = 100  # agent sessions kept in memory for /agent/next
    WORKSPACE_ROOT: str | None = None  # tool-call paths must resolve inside this directory


settings = Settings()

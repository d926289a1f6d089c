"""Configuration settings for the application."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    # Define the settings with default values and types
    # These will be loaded from environment variables or a .env file if not provided
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical

    # Model client configuration
    MODEL_CLIENT: str = "openrouter"  # Options: openrouter, openai, anthropic
    TEMPERATURE: float = 0.2
    MAX_TOKENS: int = 2048
    MODEL_TIMEOUT: float = 60.0  # seconds; applies to every model call

    OPENROUTER_API_KEY: str | None = None
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
    OPENROUTER_MODEL: str = "openai/gpt-4o-mini"

    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4o-mini"

    ANTHROPIC_API_KEY: str | None = None
    ANTHROPIC_MODEL: str = "claude-3-5-haiku-latest"

    # Loop configuration
    MAX_ITERATIONS: int = 10
    PARALLEL_TOOLS: bool = False
    CORRECTION_ATTEMPTS: int = 0  # extra model calls allowed to fix an unreadable reply
    INFER_MISSING_STEP: bool = False

    class Config:
        """Configuration for Pydantic settings."""

        # Load environment variables from a .env file
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()

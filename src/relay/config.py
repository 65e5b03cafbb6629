"""Configuration settings for the application."""

from typing import Dict

from pydantic_settings import (
    BaseSettings,
    SettingsConfigDict,
)


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    # Define the settings with default values and types
    # These will be loaded from environment variables (RELAY_ prefix) or a .env file
    DEBUG: bool = False
    DATA_DIR: str = "~/.local/share/relay"
    DEFAULT_MODEL: str = ""
    DEFAULT_AGENT: str = "@relay"
    LOG_LEVEL: str = "warning"  # Options: debug, info, warning, error, critical

    # Agent and plugin discovery
    AGENTS_DIR: str | None = None
    PLUGINS_DIR: str | None = None

    # LLM Configuration
    PROVIDER: str = "openai"  # Options: openai, anthropic, ollama
    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str | None = None
    ANTHROPIC_API_KEY: str | None = None
    OLLAMA_HOST: str = "http://localhost:11434"
    MAX_TOKENS: int = 8192

    # Tool execution
    DEFAULT_TOOL_TIMEOUT: float = 30.0  # seconds
    OUTPUT_LIMIT_BYTES: int = 64 * 1024
    MAX_TOOL_ITERATIONS: int = 100  # then one last step without tools
    DEFAULT_TOOLS: Dict[str, str] = {}  # category/alias -> concrete tool name

    # Structured output
    OUTPUT_CAST_RETRIES: int = 3

    # Delegation (agent_call)
    AGENT_CALL_TIMEOUT: float = 120.0
    AGENT_CALL_MAX_TIMEOUT: float = 300.0
    AGENT_CALL_MAX_OUTPUT: int = 128 * 1024

    # Background work
    TITLE_TIMEOUT: float = 30.0
    BACKGROUND_DRAIN_TIMEOUT: float = 5.0

    # Load environment variables from a .env file
    model_config = SettingsConfigDict(
        env_prefix="RELAY_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


settings = Settings()

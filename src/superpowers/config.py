"""Configuration settings for the application."""

from typing import Any

from pydantic_settings import BaseSettings

from superpowers.core.schema import LLMOptions

# Providers that talk to a hosted API and therefore need a key.
_KEY_FIELDS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


class ConfigError(ValueError):
    """Raised when the LLM settings are incomplete."""


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    # Define the settings with default values and types
    # These will be loaded from environment variables or a .env file if not provided
    API_PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical

    # LLM Configuration
    PROVIDER: str = "ollama"  # Options: ollama, openai, anthropic
    MODEL: str | None = None
    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str | None = None
    ANTHROPIC_API_KEY: str | None = None
    OLLAMA_URL: str = "http://localhost:11434"
    TEMPERATURE: float | None = None
    MAX_TOKENS: int = 4096
    HTTP_TIMEOUT: float = 60.0

    # Agent Configuration
    MAX_ITERATIONS: int = 100
    BROWSER_BRIDGE_URL: str = "http://localhost:8765"
    FETCH_SITE_CONTEXT: bool = True

    class Config:
        """Configuration for Pydantic settings."""

        # Load environment variables from a .env file
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()


def resolve_llm_options(config: Settings, **overrides: Any) -> LLMOptions:
    """
    Build the options for one agent run from *config*.

    Parameters
    ----------
    config : Settings
        Source of provider, model and credentials.
    **overrides
        Per-request values (``provider``, ``model``, ``temperature`` ...); ``None`` values are
        ignored.

    Returns
    -------
    LLMOptions
        Ready to hand to :meth:`Agent.run`.

    Raises
    ------
    ConfigError
        If no provider or model is configured, or the provider needs an API key that is missing.
    """
    values = {
        "provider": config.PROVIDER,
        "model": config.MODEL,
        "temperature": config.TEMPERATURE,
        "max_tokens": config.MAX_TOKENS,
    }
    values.update({k: v for k, v in overrides.items() if v is not None})

    provider = (values.get("provider") or "").lower()
    if not provider:
        raise ConfigError("No LLM provider configured")
    if not values.get("model"):
        raise ConfigError(f"No model configured for provider '{provider}'")

    key_field = _KEY_FIELDS.get(provider)
    if key_field and not values.get("api_key"):
        values["api_key"] = getattr(config, key_field)
        if not values["api_key"]:
            raise ConfigError(f"{key_field} is required for provider '{provider}'")

    values["provider"] = provider
    return LLMOptions(**values)

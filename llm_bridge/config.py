"""
Configuration Management Module

Configures adapter, middleware and router defaults via environment variables or .env file.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Library Configuration Class

    All configuration items can be overridden by environment variables, with names matching fields (uppercase).
    Explicit constructor arguments on adapters and middleware always win over these values.
    """

    # Logging Config
    DEBUG: bool = False
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # HTTP Client Config
    # Read timeout (seconds)
    HTTP_TIMEOUT: float = 600
    # Connect timeout (seconds)
    HTTP_CONNECT_TIMEOUT: float = 10

    # Retry Middleware Config
    RETRY_MAX_ATTEMPTS: int = 3
    # Initial backoff (ms)
    RETRY_DELAY_MS: int = 1000
    # Backoff ceiling (ms)
    RETRY_MAX_DELAY_MS: int = 30000
    RETRY_BACKOFF_MULTIPLIER: float = 2.0

    # Caching Middleware Config
    CACHE_TTL_SECONDS: int = 3600
    CACHE_MAX_SIZE: int = 1000

    # Router Config
    CIRCUIT_BREAKER_THRESHOLD: int = 5
    CIRCUIT_BREAKER_TIMEOUT_SECONDS: float = 60

    # Provider Config
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    OPENAI_API_KEY: Optional[str] = None
    ANTHROPIC_BASE_URL: str = "https://api.anthropic.com/v1"
    ANTHROPIC_API_KEY: Optional[str] = None
    ANTHROPIC_VERSION: str = "2023-06-01"
    ANTHROPIC_DEFAULT_MAX_TOKENS: int = 4096
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    GEMINI_API_KEY: Optional[str] = None
    OLLAMA_BASE_URL: str = "http://localhost:11434"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get configuration singleton

    Uses lru_cache to ensure configuration is loaded only once.

    Returns:
        Settings: Configuration object
    """
    return Settings()

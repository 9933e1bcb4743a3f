"""
LLM Bridge

Translate chat requests between provider formats through a shared
intermediate representation, and route them across backends.
"""

from llm_bridge.common.errors import (
    AdapterError,
    AuthenticationError,
    MiddlewareError,
    NetworkError,
    ProviderError,
    RateLimitError,
    RouterError,
    StreamError,
    ValidationError,
)
from llm_bridge.frontends import get_frontend
from llm_bridge.logging_config import setup_logging
from llm_bridge.providers import create_backend
from llm_bridge.services import Bridge, Router

__version__ = "0.1.0"

__all__ = [
    "AdapterError",
    "AuthenticationError",
    "MiddlewareError",
    "NetworkError",
    "ProviderError",
    "RateLimitError",
    "RouterError",
    "StreamError",
    "ValidationError",
    "Bridge",
    "Router",
    "create_backend",
    "get_frontend",
    "setup_logging",
]

"""
Backend Factory Module

Creates backend adapters by provider name. Instances are not cached:
callers own their adapters and pass them to a Bridge or Router.
"""

from typing import Any

from llm_bridge.providers.anthropic_client import AnthropicClient
from llm_bridge.providers.base import BackendAdapter
from llm_bridge.providers.gemini_client import GeminiClient
from llm_bridge.providers.mock_client import MockBackend
from llm_bridge.providers.ollama_client import OllamaClient
from llm_bridge.providers.openai_client import OpenAIClient

BACKENDS: dict[str, type[BackendAdapter]] = {
    "openai": OpenAIClient,
    "anthropic": AnthropicClient,
    "gemini": GeminiClient,
    "ollama": OllamaClient,
    "mock": MockBackend,
}


def create_backend(provider: str, **kwargs: Any) -> BackendAdapter:
    """
    Create a backend adapter for the specified provider

    Args:
        provider: Provider name, e.g. "openai", "anthropic", "gemini", "ollama", "mock"
        **kwargs: Constructor arguments (api_key, base_url, timeout, transport ...)

    Returns:
        BackendAdapter: New adapter instance

    Raises:
        ValueError: Unsupported provider
    """
    provider = provider.lower()
    if provider not in BACKENDS:
        raise ValueError(f"Unsupported provider: {provider}")
    return BACKENDS[provider](**kwargs)

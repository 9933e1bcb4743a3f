"""
Backend adapter module initialization
"""

from llm_bridge.providers.base import BackendAdapter, HTTPBackendAdapter
from llm_bridge.providers.openai_client import OpenAIClient
from llm_bridge.providers.anthropic_client import AnthropicClient
from llm_bridge.providers.gemini_client import GeminiClient
from llm_bridge.providers.ollama_client import OllamaClient
from llm_bridge.providers.mock_client import MockBackend
from llm_bridge.providers.factory import create_backend

__all__ = [
    "BackendAdapter",
    "HTTPBackendAdapter",
    "OpenAIClient",
    "AnthropicClient",
    "GeminiClient",
    "OllamaClient",
    "MockBackend",
    "create_backend",
]

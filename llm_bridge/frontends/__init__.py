"""
Frontend adapter module initialization
"""

from llm_bridge.frontends.base import FrontendAdapter
from llm_bridge.frontends.openai_chat import OpenAIChatFrontend
from llm_bridge.frontends.anthropic_messages import AnthropicMessagesFrontend
from llm_bridge.frontends.gemini import GeminiFrontend
from llm_bridge.frontends.generic import GenericFrontend
from llm_bridge.frontends.factory import get_frontend

__all__ = [
    "FrontendAdapter",
    "OpenAIChatFrontend",
    "AnthropicMessagesFrontend",
    "GeminiFrontend",
    "GenericFrontend",
    "get_frontend",
]

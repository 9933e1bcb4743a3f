"""
Frontend Factory Module
"""

from llm_bridge.frontends.anthropic_messages import AnthropicMessagesFrontend
from llm_bridge.frontends.base import FrontendAdapter
from llm_bridge.frontends.gemini import GeminiFrontend
from llm_bridge.frontends.generic import GenericFrontend
from llm_bridge.frontends.openai_chat import OpenAIChatFrontend

FRONTENDS: dict[str, type[FrontendAdapter]] = {
    "openai": OpenAIChatFrontend,
    "anthropic": AnthropicMessagesFrontend,
    "gemini": GeminiFrontend,
    "generic": GenericFrontend,
}


def get_frontend(name: str) -> FrontendAdapter:
    """
    Create the frontend for an input format

    Args:
        name: "openai", "anthropic", "gemini" or "generic"

    Raises:
        ValueError: Unsupported format
    """
    name = name.lower()
    if name not in FRONTENDS:
        raise ValueError(f"Unsupported frontend: {name}")
    return FRONTENDS[name]()

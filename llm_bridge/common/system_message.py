"""
System message normalization

Providers disagree on where the system prompt lives. Each backend declares
a strategy and runs its messages through ``normalize_system_messages`` on
every call, so the same IR request always yields the same system field.
"""

import logging
from enum import Enum
from typing import Iterable, Optional

from llm_bridge.ir.types import IRMessage, Role, TextPart

logger = logging.getLogger(__name__)

SYSTEM_JOINER = "\n\n"


class SystemMessageStrategy(str, Enum):
    # Dedicated request field (Anthropic "system", Gemini "systemInstruction")
    SEPARATE_PARAMETER = "separate-parameter"
    # Kept in the messages array (OpenAI, Ollama)
    IN_MESSAGES = "in-messages"
    # Merged into the first user turn
    PREPEND_USER = "prepend-user"
    NOT_SUPPORTED = "not-supported"


def extract_system_text(messages: Iterable[IRMessage]) -> Optional[str]:
    """Join the text of all system messages, in order; None if there are none."""
    texts = [m.get_text_content() for m in messages if m.role == Role.SYSTEM]
    texts = [t for t in texts if t]
    if not texts:
        return None
    return SYSTEM_JOINER.join(texts)


def normalize_system_messages(
    messages: Iterable[IRMessage],
    strategy: SystemMessageStrategy,
) -> tuple[Optional[str], list[IRMessage]]:
    """
    Apply a system message strategy

    Args:
        messages: Conversation in IR order
        strategy: Where the target protocol expects the system prompt

    Returns:
        tuple: (system text for a separate field or None, remaining messages)
    """
    messages = list(messages)
    if strategy == SystemMessageStrategy.IN_MESSAGES:
        return None, messages

    system_text = extract_system_text(messages)
    rest = [m for m in messages if m.role != Role.SYSTEM]

    if strategy == SystemMessageStrategy.SEPARATE_PARAMETER:
        return system_text, rest

    if strategy == SystemMessageStrategy.NOT_SUPPORTED:
        if system_text:
            logger.warning("System messages are not supported by this backend and were dropped")
        return None, rest

    # PREPEND_USER
    if not system_text:
        return None, rest
    for index, message in enumerate(rest):
        if message.role == Role.USER:
            merged = (TextPart(text=system_text + SYSTEM_JOINER),) + message.parts
            rest[index] = IRMessage(role=Role.USER, content=merged, name=message.name)
            return None, rest
    rest.insert(0, IRMessage(role=Role.USER, content=system_text))
    return None, rest

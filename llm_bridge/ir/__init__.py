"""
Intermediate Representation (IR) Module

Provides a unified, protocol-agnostic representation for chat requests,
responses and stream chunks. Frontends convert source → IR, backends IR → wire.
"""

from .types import (
    DEFAULT_IMAGE_MIME_TYPE,
    ChunkType,
    ContentChunk,
    ContentPart,
    DoneChunk,
    ErrorChunk,
    FinishReason,
    ImagePart,
    ImageSourceType,
    IRChatRequest,
    IRChatResponse,
    IRMessage,
    IRParameters,
    IRProvenance,
    IRRequestMetadata,
    IRResponseMetadata,
    IRStreamChunk,
    IRTool,
    IRUsage,
    MetadataChunk,
    PartType,
    Role,
    StartChunk,
    TextPart,
    ToolResultPart,
    ToolUseChunk,
    ToolUsePart,
    is_terminal,
)

__all__ = [
    "DEFAULT_IMAGE_MIME_TYPE",
    "ChunkType",
    "ContentChunk",
    "ContentPart",
    "DoneChunk",
    "ErrorChunk",
    "FinishReason",
    "ImagePart",
    "ImageSourceType",
    "IRChatRequest",
    "IRChatResponse",
    "IRMessage",
    "IRParameters",
    "IRProvenance",
    "IRRequestMetadata",
    "IRResponseMetadata",
    "IRStreamChunk",
    "IRTool",
    "IRUsage",
    "MetadataChunk",
    "PartType",
    "Role",
    "StartChunk",
    "TextPart",
    "ToolResultPart",
    "ToolUseChunk",
    "ToolUsePart",
    "is_terminal",
]

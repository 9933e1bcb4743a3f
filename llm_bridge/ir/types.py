"""
Intermediate Representation Type Definitions

Provider-agnostic request, response and stream chunk types. Every frontend
translates into these types and every backend translates out of them.
Requests and messages are frozen: modification always goes through
``copy_with`` (copy-on-transform).
"""

import dataclasses
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple, Union

from llm_bridge.common.ids import new_request_id

if TYPE_CHECKING:
    from llm_bridge.common.errors import AdapterError


class Role(str, Enum):
    """Unified role representation across all protocols."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class PartType(str, Enum):
    """Types of content parts in messages."""
    TEXT = "text"
    IMAGE = "image"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"


class ImageSourceType(str, Enum):
    URL = "url"
    BASE64 = "base64"


class FinishReason(str, Enum):
    """Unified finish reason across protocols."""
    STOP = "stop"
    LENGTH = "length"
    TOOL_USE = "tool_use"
    CONTENT_FILTER = "content_filter"


class ChunkType(str, Enum):
    """Tags of the stream chunk variants."""
    START = "start"
    CONTENT = "content"
    TOOL_USE = "tool_use"
    METADATA = "metadata"
    ERROR = "error"
    DONE = "done"


DEFAULT_IMAGE_MIME_TYPE = "image/jpeg"


@dataclass(frozen=True)
class TextPart:
    """Text content part."""
    type: PartType = field(default=PartType.TEXT, init=False)
    text: str = ""


@dataclass(frozen=True)
class ImagePart:
    """
    Image content part

    ``data`` is base64 text (with or without a data-URI prefix) or a
    binary-like object (bytes, or anything with ``read()``) that backends
    base64-encode when serializing.
    """
    type: PartType = field(default=PartType.IMAGE, init=False)
    source_type: ImageSourceType = ImageSourceType.URL
    url: Optional[str] = None
    data: Any = None
    mime_type: str = DEFAULT_IMAGE_MIME_TYPE


@dataclass(frozen=True)
class ToolUsePart:
    """Tool/function call made by the assistant."""
    type: PartType = field(default=PartType.TOOL_USE, init=False)
    id: str = ""
    name: str = ""
    input: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResultPart:
    """Result of a tool call, sent back by the caller."""
    type: PartType = field(default=PartType.TOOL_RESULT, init=False)
    tool_use_id: str = ""
    content: str = ""
    is_error: bool = False


ContentPart = Union[TextPart, ImagePart, ToolUsePart, ToolResultPart]


@dataclass(frozen=True)
class IRMessage:
    """
    Unified message representation

    ``content`` is either a plain string or a tuple of parts. Lists passed
    in are frozen into tuples so the part order cannot change afterwards.
    """
    role: Role
    content: Union[str, Tuple[ContentPart, ...]] = ""
    name: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.role, Role):
            object.__setattr__(self, "role", Role(self.role))
        if not isinstance(self.content, str):
            object.__setattr__(self, "content", tuple(self.content))

    @property
    def parts(self) -> Tuple[ContentPart, ...]:
        """Content as parts; a string becomes a single text part."""
        if isinstance(self.content, str):
            return (TextPart(text=self.content),) if self.content else ()
        return self.content

    def get_text_content(self) -> str:
        """Extract text content from all text parts."""
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content if isinstance(p, TextPart))

    def get_tool_calls(self) -> Tuple[ToolUsePart, ...]:
        return tuple(p for p in self.parts if isinstance(p, ToolUsePart))


@dataclass(frozen=True)
class IRTool:
    """Tool/function declaration (JSON Schema parameters)."""
    name: str
    description: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IRParameters:
    """Sampling parameters. ``None`` means "provider default"."""
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    stop: Optional[Tuple[str, ...]] = None

    def __post_init__(self):
        if isinstance(self.stop, str):
            object.__setattr__(self, "stop", (self.stop,))
        elif self.stop is not None:
            object.__setattr__(self, "stop", tuple(self.stop))

    def to_dict(self) -> Dict[str, Any]:
        """Non-empty parameters as a plain dict."""
        return {
            k: (list(v) if isinstance(v, tuple) else v)
            for k, v in dataclasses.asdict(self).items()
            if v is not None
        }


@dataclass(frozen=True)
class IRProvenance:
    """Which frontend produced the request and which backend served it."""
    frontend: Optional[str] = None
    backend: Optional[str] = None


@dataclass(frozen=True)
class IRRequestMetadata:
    request_id: str = field(default_factory=new_request_id)
    timestamp: float = field(default_factory=time.time)
    provenance: IRProvenance = field(default_factory=IRProvenance)
    custom: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IRChatRequest:
    """
    Unified chat request

    Messages are kept in conversation order. The request is immutable once
    built; middleware that needs a different request calls ``copy_with``.
    """
    messages: Tuple[IRMessage, ...]
    parameters: IRParameters = field(default_factory=IRParameters)
    stream: bool = False
    tools: Optional[Tuple[IRTool, ...]] = None
    metadata: IRRequestMetadata = field(default_factory=IRRequestMetadata)

    def __post_init__(self):
        object.__setattr__(self, "messages", tuple(self.messages))
        if self.tools is not None:
            object.__setattr__(self, "tools", tuple(self.tools))

    @property
    def model(self) -> Optional[str]:
        return self.parameters.model

    def copy_with(self, **changes: Any) -> "IRChatRequest":
        """Return a modified copy; the original request is left untouched."""
        return dataclasses.replace(self, **changes)

    def with_parameters(self, **changes: Any) -> "IRChatRequest":
        return self.copy_with(parameters=dataclasses.replace(self.parameters, **changes))

    def with_provenance(
        self, frontend: Optional[str] = None, backend: Optional[str] = None
    ) -> "IRChatRequest":
        provenance = self.metadata.provenance
        provenance = IRProvenance(
            frontend=frontend if frontend is not None else provenance.frontend,
            backend=backend if backend is not None else provenance.backend,
        )
        return self.copy_with(metadata=dataclasses.replace(self.metadata, provenance=provenance))


@dataclass
class IRUsage:
    """Token usage. ``total_tokens`` is always prompt + completion."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: Optional[int] = None

    def __post_init__(self):
        self.prompt_tokens = int(self.prompt_tokens or 0)
        self.completion_tokens = int(self.completion_tokens or 0)
        self.total_tokens = self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class IRResponseMetadata:
    request_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
    provenance: IRProvenance = field(default_factory=IRProvenance)
    provider_response_id: Optional[str] = None
    model: Optional[str] = None
    latency_ms: Optional[float] = None
    custom: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_request(
        cls, request: IRChatRequest, backend: Optional[str] = None, **kwargs: Any
    ) -> "IRResponseMetadata":
        """Mirror the request's id and provenance, filling in the serving backend."""
        kwargs.setdefault("model", request.parameters.model)
        provenance = request.metadata.provenance
        if backend is not None and provenance.backend is None:
            provenance = IRProvenance(frontend=provenance.frontend, backend=backend)
        return cls(
            request_id=request.metadata.request_id,
            provenance=provenance,
            **kwargs,
        )


@dataclass(frozen=True)
class IRChatResponse:
    """Unified chat response (one assistant message)."""
    message: IRMessage
    finish_reason: FinishReason = FinishReason.STOP
    usage: Optional[IRUsage] = None
    metadata: IRResponseMetadata = field(default_factory=IRResponseMetadata)

    @property
    def text(self) -> str:
        return self.message.get_text_content()


@dataclass(frozen=True)
class StartChunk:
    """First chunk of every stream."""
    type: ChunkType = field(default=ChunkType.START, init=False)
    sequence: int = 0
    metadata: IRResponseMetadata = field(default_factory=IRResponseMetadata)


@dataclass(frozen=True)
class ContentChunk:
    type: ChunkType = field(default=ChunkType.CONTENT, init=False)
    sequence: int = 0
    delta: str = ""


@dataclass(frozen=True)
class ToolUseChunk:
    """
    Tool call fragment

    ``input_delta`` carries partial JSON arguments; ``input`` is set once
    the provider has delivered the complete arguments.
    """
    type: ChunkType = field(default=ChunkType.TOOL_USE, init=False)
    sequence: int = 0
    index: int = 0
    id: Optional[str] = None
    name: Optional[str] = None
    input_delta: str = ""
    input: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class MetadataChunk:
    """Out-of-band information (usage updates, provider ids)."""
    type: ChunkType = field(default=ChunkType.METADATA, init=False)
    sequence: int = 0
    usage: Optional[IRUsage] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ErrorChunk:
    """Terminal chunk for a stream that failed after it started."""
    type: ChunkType = field(default=ChunkType.ERROR, init=False)
    sequence: int = 0
    error: Optional["AdapterError"] = None


@dataclass(frozen=True)
class DoneChunk:
    """Terminal chunk for a successful stream."""
    type: ChunkType = field(default=ChunkType.DONE, init=False)
    sequence: int = 0
    finish_reason: FinishReason = FinishReason.STOP
    usage: Optional[IRUsage] = None
    message: Optional[IRMessage] = None


IRStreamChunk = Union[StartChunk, ContentChunk, ToolUseChunk, MetadataChunk, ErrorChunk, DoneChunk]

TERMINAL_CHUNK_TYPES = frozenset({ChunkType.DONE, ChunkType.ERROR})


def is_terminal(chunk: IRStreamChunk) -> bool:
    return chunk.type in TERMINAL_CHUNK_TYPES

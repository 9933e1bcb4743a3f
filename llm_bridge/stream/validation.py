"""
Chunk sequence checks and stream collection helpers.
"""

from typing import AsyncIterable, Iterable, List

from llm_bridge.common.errors import AdapterError, StreamError
from llm_bridge.ir.types import (
    ChunkType,
    DoneChunk,
    ErrorChunk,
    IRChatRequest,
    IRChatResponse,
    IRResponseMetadata,
    IRStreamChunk,
    StartChunk,
)

_BODY_TYPES = frozenset({ChunkType.CONTENT, ChunkType.TOOL_USE, ChunkType.METADATA})


def validate_chunk_sequence(chunks: Iterable[IRStreamChunk]) -> None:
    """
    Check that chunks form ``start (content|tool_use|metadata)* (done|error)``

    Raises:
        StreamError: On the first chunk that breaks the shape
    """
    chunks = list(chunks)
    if not chunks:
        raise StreamError("Empty chunk sequence")
    if chunks[0].type != ChunkType.START:
        raise StreamError(f"First chunk must be start, got {chunks[0].type.value}")
    if chunks[-1].type not in (ChunkType.DONE, ChunkType.ERROR):
        raise StreamError(f"Last chunk must be done or error, got {chunks[-1].type.value}")
    for position, chunk in enumerate(chunks[1:-1], start=1):
        if chunk.type not in _BODY_TYPES:
            raise StreamError(f"Unexpected {chunk.type.value} chunk at position {position}")


async def collect_stream(
    chunks: AsyncIterable[IRStreamChunk],
    request: IRChatRequest,
) -> IRChatResponse:
    """
    Drain a chunk stream into the equivalent buffered response

    Raises:
        AdapterError: The error carried by a terminal error chunk
        StreamError: If the stream ends without a terminal chunk
    """
    seen: List[IRStreamChunk] = []
    start = None
    async for chunk in chunks:
        seen.append(chunk)
        if isinstance(chunk, StartChunk):
            start = chunk
        elif isinstance(chunk, ErrorChunk):
            raise chunk.error or AdapterError("Stream failed")
        elif isinstance(chunk, DoneChunk):
            validate_chunk_sequence(seen)
            metadata = start.metadata if start else IRResponseMetadata.for_request(request)
            return IRChatResponse(
                message=chunk.message,
                finish_reason=chunk.finish_reason,
                usage=chunk.usage,
                metadata=metadata,
            )
    raise StreamError("Stream ended without a terminal chunk")

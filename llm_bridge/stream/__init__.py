"""
Stream Normalization Module

Line decoders for the two framings providers use (Server-Sent Events and
newline-delimited JSON) and the ``ChunkEmitter`` that turns provider events
into a well-formed IR chunk sequence.

Network reads never line up with protocol frames, so both decoders keep a
carry-over buffer: the trailing fragment after the last newline waits for
the next read instead of being parsed.
"""

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from llm_bridge.common.errors import AdapterError, StreamError
from llm_bridge.ir.types import (
    ContentChunk,
    DoneChunk,
    ErrorChunk,
    FinishReason,
    IRChatRequest,
    IRMessage,
    IRResponseMetadata,
    IRUsage,
    MetadataChunk,
    Role,
    StartChunk,
    TextPart,
    ToolUseChunk,
    ToolUsePart,
)

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


@dataclass
class SSEEvent:
    """One decoded ``data:`` line, tagged with the current ``event:`` name."""
    event: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    done: bool = False


class _LineBuffer:
    """Incremental UTF-8 decoding plus carry-over of the incomplete last line."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: Union[bytes, str]) -> List[str]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> List[str]:
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return [tail.rstrip("\r")] if tail.strip() else []


class SSEParser:
    """
    Line oriented Server-Sent Events parser

    - ``event: <name>`` sets the current event type until the next blank line
    - ``data: [DONE]`` yields a terminal event
    - ``data: <json>`` yields the parsed object; unparsable JSON is skipped
    - comments (``:``), ``id:`` and ``retry:`` lines are ignored
    - any other non-empty line raises StreamError
    """

    def __init__(self):
        self._lines = _LineBuffer()
        self._event_type: Optional[str] = None

    def feed(self, chunk: Union[bytes, str]) -> List[SSEEvent]:
        events = []
        for line in self._lines.feed(chunk):
            event = self._parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> List[SSEEvent]:
        """Parse whatever is left in the buffer once the body has ended."""
        events = []
        for line in self._lines.flush():
            event = self._parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def _parse_line(self, line: str) -> Optional[SSEEvent]:
        if not line.strip():
            self._event_type = None
            return None
        if line.startswith(":"):
            return None
        if line.startswith("event:"):
            self._event_type = line[6:].strip() or None
            return None
        if line.startswith("data:"):
            payload = line[5:].strip()
            if payload == DONE_SENTINEL:
                return SSEEvent(event=self._event_type, done=True)
            if not payload:
                return None
            try:
                data = json.loads(payload)
            except json.JSONDecodeError:
                logger.debug("Skipping unparsable SSE data line: %s", payload[:200])
                return None
            if not isinstance(data, dict):
                return None
            return SSEEvent(event=self._event_type, data=data)
        if line.startswith(("id:", "retry:")):
            return None
        raise StreamError(
            "Malformed SSE line",
            details={"line": line[:200]},
        )


class NDJSONParser:
    """
    Newline-delimited JSON parser (Ollama style framing)

    Every non-empty line is a data line, so unparsable lines are skipped
    rather than failing the stream.
    """

    def __init__(self):
        self._lines = _LineBuffer()

    def feed(self, chunk: Union[bytes, str]) -> List[SSEEvent]:
        return [e for e in (self._parse_line(line) for line in self._lines.feed(chunk)) if e]

    def flush(self) -> List[SSEEvent]:
        return [e for e in (self._parse_line(line) for line in self._lines.flush()) if e]

    @staticmethod
    def _parse_line(line: str) -> Optional[SSEEvent]:
        line = line.strip()
        if not line:
            return None
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping unparsable NDJSON line: %s", line[:200])
            return None
        if not isinstance(data, dict):
            return None
        return SSEEvent(data=data)


class ChunkEmitter:
    """
    Builds one IR chunk sequence

    Assigns sequence numbers, accumulates text and tool calls for the final
    ``done`` chunk, and refuses to emit anything after a terminal chunk so
    the sequence is always ``start (content|tool_use|metadata)* (done|error)``.
    """

    def __init__(self, request: IRChatRequest, backend: Optional[str] = None):
        self.request = request
        self.backend = backend
        self.started = False
        self.finished = False
        self.finish_reason: Optional[FinishReason] = None
        self.usage: Optional[IRUsage] = None
        self.provider_response_id: Optional[str] = None
        self._sequence = 0
        self._text: List[str] = []
        self._tool_calls: Dict[int, Dict[str, Any]] = {}

    @property
    def text(self) -> str:
        return "".join(self._text)

    @property
    def tool_call_count(self) -> int:
        return len(self._tool_calls)

    def _next_sequence(self) -> int:
        if self.finished:
            raise StreamError("Chunk emitted after the stream finished")
        sequence = self._sequence
        self._sequence += 1
        return sequence

    def start(self, **metadata: Any) -> StartChunk:
        if self.started:
            raise StreamError("Stream already started")
        self.started = True
        return StartChunk(
            sequence=self._next_sequence(),
            metadata=IRResponseMetadata.for_request(self.request, backend=self.backend, **metadata),
        )

    def content(self, delta: Optional[str]) -> Optional[ContentChunk]:
        if not delta:
            return None
        self._text.append(delta)
        return ContentChunk(sequence=self._next_sequence(), delta=delta)

    def tool_use(
        self,
        index: int = 0,
        id: Optional[str] = None,
        name: Optional[str] = None,
        input_delta: str = "",
        input: Optional[Dict[str, Any]] = None,
    ) -> ToolUseChunk:
        call = self._tool_calls.setdefault(index, {"id": None, "name": None, "arguments": "", "input": None})
        if id:
            call["id"] = id
        if name:
            call["name"] = name
        call["arguments"] += input_delta or ""
        if input is not None:
            call["input"] = input
        return ToolUseChunk(
            sequence=self._next_sequence(),
            index=index,
            id=id,
            name=name,
            input_delta=input_delta or "",
            input=input,
        )

    def metadata(self, usage: Optional[IRUsage] = None, **data: Any) -> MetadataChunk:
        if usage is not None:
            self.usage = usage
        return MetadataChunk(sequence=self._next_sequence(), usage=usage, data=data)

    def done(
        self,
        finish_reason: Optional[FinishReason] = None,
        usage: Optional[IRUsage] = None,
    ) -> DoneChunk:
        if usage is not None:
            self.usage = usage
        reason = finish_reason or self.finish_reason
        if reason is None:
            reason = FinishReason.TOOL_USE if self._tool_calls else FinishReason.STOP
        sequence = self._next_sequence()
        self.finished = True
        return DoneChunk(
            sequence=sequence,
            finish_reason=reason,
            usage=self.usage,
            message=self.build_message(),
        )

    def error(self, error: AdapterError) -> ErrorChunk:
        sequence = self._next_sequence()
        self.finished = True
        return ErrorChunk(sequence=sequence, error=error)

    def build_message(self) -> IRMessage:
        """Assistant message assembled from everything emitted so far."""
        tool_parts = []
        for _, call in sorted(self._tool_calls.items()):
            arguments = call["input"]
            if arguments is None:
                try:
                    arguments = json.loads(call["arguments"]) if call["arguments"] else {}
                except json.JSONDecodeError:
                    arguments = {"_raw": call["arguments"]}
            tool_parts.append(ToolUsePart(id=call["id"] or "", name=call["name"] or "", input=arguments))
        if not tool_parts:
            return IRMessage(role=Role.ASSISTANT, content=self.text)
        parts = [TextPart(text=self.text)] if self.text else []
        return IRMessage(role=Role.ASSISTANT, content=parts + tool_parts)


__all__ = [
    "ChunkEmitter",
    "DONE_SENTINEL",
    "NDJSONParser",
    "SSEEvent",
    "SSEParser",
]

"""
Anthropic Messages Frontend

Accepts ``/v1/messages`` request bodies and renders Messages API
responses and stream events.
"""

import json
from typing import Any, AsyncIterator, Optional

from llm_bridge.common.errors import ValidationError
from llm_bridge.frontends.base import FrontendAdapter
from llm_bridge.ir.types import (
    ContentChunk,
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
    IRStreamChunk,
    IRTool,
    MetadataChunk,
    Role,
    StartChunk,
    TextPart,
    ToolResultPart,
    ToolUseChunk,
    ToolUsePart,
)

STOP_REASONS = {
    FinishReason.STOP: "end_turn",
    FinishReason.LENGTH: "max_tokens",
    FinishReason.TOOL_USE: "tool_use",
    FinishReason.CONTENT_FILTER: "refusal",
}


def _blocks_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    return "".join(
        block.get("text", "") for block in content or [] if isinstance(block, dict) and block.get("type") == "text"
    )


class AnthropicMessagesFrontend(FrontendAdapter):
    """
    Anthropic Messages Frontend

    The top-level ``system`` field becomes a leading IR system message, the
    same shape the OpenAI frontend produces for a ``system`` role message.
    """

    name = "anthropic"
    id_prefix = "msg_"

    def to_ir(self, request: Any) -> IRChatRequest:
        payload = self._require_mapping(request)
        self._validate(payload.get("model"), payload.get("messages"))

        messages: list[IRMessage] = []
        system = payload.get("system")
        if system:
            messages.append(IRMessage(role=Role.SYSTEM, content=_blocks_text(system)))
        messages.extend(self._decode_message(m) for m in payload["messages"])

        tools = None
        if payload.get("tools"):
            tools = [
                IRTool(name=t.get("name", ""), description=t.get("description"), parameters=t.get("input_schema") or {})
                for t in payload["tools"]
            ]
        custom = {}
        if isinstance(payload.get("metadata"), dict):
            custom = dict(payload["metadata"])
        return IRChatRequest(
            messages=messages,
            parameters=IRParameters(
                model=payload["model"],
                temperature=payload.get("temperature"),
                max_tokens=payload.get("max_tokens"),
                top_p=payload.get("top_p"),
                top_k=payload.get("top_k"),
                stop=payload.get("stop_sequences"),
            ),
            stream=bool(payload.get("stream", False)),
            tools=tools,
            metadata=IRRequestMetadata(provenance=IRProvenance(frontend=self.name), custom=custom),
        )

    def _decode_message(self, message: Any) -> IRMessage:
        if not isinstance(message, dict):
            raise ValidationError("Each message must be an object", provenance=self.provenance)
        role = message.get("role")
        if role not in ("user", "assistant"):
            raise ValidationError(f"Unsupported message role: {role}", provenance=self.provenance)
        content = message.get("content", "")
        if isinstance(content, str):
            return IRMessage(role=Role(role), content=content)
        return IRMessage(role=Role(role), content=[self._decode_block(b) for b in content])

    def _decode_block(self, block: dict[str, Any]) -> Any:
        block_type = block.get("type")
        if block_type == "text":
            return TextPart(text=block.get("text", ""))
        if block_type == "image":
            source = block.get("source") or {}
            if source.get("type") == "url":
                return ImagePart(source_type=ImageSourceType.URL, url=source.get("url"))
            return ImagePart(
                source_type=ImageSourceType.BASE64,
                data=source.get("data"),
                mime_type=source.get("media_type") or "image/jpeg",
            )
        if block_type == "tool_use":
            return ToolUsePart(id=block.get("id", ""), name=block.get("name", ""), input=block.get("input") or {})
        if block_type == "tool_result":
            return ToolResultPart(
                tool_use_id=block.get("tool_use_id", ""),
                content=_blocks_text(block.get("content", "")),
                is_error=bool(block.get("is_error", False)),
            )
        raise ValidationError(f"Unsupported content block type: {block_type}", provenance=self.provenance)

    def from_ir(self, response: IRChatResponse) -> dict[str, Any]:
        content: list[dict[str, Any]] = []
        for part in response.message.parts:
            if isinstance(part, TextPart):
                content.append({"type": "text", "text": part.text})
            elif isinstance(part, ToolUsePart):
                content.append({"type": "tool_use", "id": part.id, "name": part.name, "input": part.input})
        usage = response.usage
        return {
            "id": self.ids.next_id(),
            "type": "message",
            "role": "assistant",
            "model": response.metadata.model,
            "content": content,
            "stop_reason": STOP_REASONS[response.finish_reason],
            "stop_sequence": None,
            "usage": {
                "input_tokens": usage.prompt_tokens if usage else 0,
                "output_tokens": usage.completion_tokens if usage else 0,
            },
        }

    async def from_ir_stream(self, chunks: AsyncIterator[IRStreamChunk]) -> AsyncIterator[dict[str, Any]]:
        """
        Render IR chunks as Messages API stream events

        Yields event payloads; each carries its event name in ``type``.
        Text and tool calls are framed by content_block_start/stop, the
        stream ends with message_delta and message_stop.
        """
        block_index = -1
        open_block: Optional[str] = None
        # IR tool call index -> content block index
        tool_blocks: dict[int, int] = {}
        usage = None

        def close_block() -> Optional[dict[str, Any]]:
            nonlocal open_block
            if open_block is None:
                return None
            open_block = None
            return {"type": "content_block_stop", "index": block_index}

        async for chunk in chunks:
            if isinstance(chunk, StartChunk):
                yield {
                    "type": "message_start",
                    "message": {
                        "id": self.ids.next_id(),
                        "type": "message",
                        "role": "assistant",
                        "model": chunk.metadata.model,
                        "content": [],
                        "stop_reason": None,
                        "stop_sequence": None,
                        "usage": {"input_tokens": 0, "output_tokens": 0},
                    },
                }
            elif isinstance(chunk, ContentChunk):
                if open_block != "text":
                    stop = close_block()
                    if stop:
                        yield stop
                    block_index += 1
                    open_block = "text"
                    yield {
                        "type": "content_block_start",
                        "index": block_index,
                        "content_block": {"type": "text", "text": ""},
                    }
                yield {
                    "type": "content_block_delta",
                    "index": block_index,
                    "delta": {"type": "text_delta", "text": chunk.delta},
                }
            elif isinstance(chunk, ToolUseChunk):
                if chunk.index not in tool_blocks:
                    stop = close_block()
                    if stop:
                        yield stop
                    block_index += 1
                    open_block = "tool_use"
                    tool_blocks[chunk.index] = block_index
                    yield {
                        "type": "content_block_start",
                        "index": block_index,
                        "content_block": {"type": "tool_use", "id": chunk.id or "", "name": chunk.name or "", "input": {}},
                    }
                partial = chunk.input_delta
                if not partial and chunk.input is not None:
                    partial = json.dumps(chunk.input, ensure_ascii=False)
                if partial:
                    yield {
                        "type": "content_block_delta",
                        "index": tool_blocks[chunk.index],
                        "delta": {"type": "input_json_delta", "partial_json": partial},
                    }
            elif isinstance(chunk, MetadataChunk):
                if chunk.usage is not None:
                    usage = chunk.usage
            elif isinstance(chunk, DoneChunk):
                stop = close_block()
                if stop:
                    yield stop
                final_usage = chunk.usage or usage
                yield {
                    "type": "message_delta",
                    "delta": {"stop_reason": STOP_REASONS[chunk.finish_reason], "stop_sequence": None},
                    "usage": {"output_tokens": final_usage.completion_tokens if final_usage else 0},
                }
                yield {"type": "message_stop"}
                return
            elif isinstance(chunk, ErrorChunk):
                raise self._stream_failure(chunk)

"""
OpenAI Chat Completions Frontend

Accepts ``/v1/chat/completions`` request bodies and renders
``chat.completion`` / ``chat.completion.chunk`` objects.
"""

import json
import time
from typing import Any, AsyncIterator, Optional

from llm_bridge.common.errors import ValidationError
from llm_bridge.common.media import parse_data_uri
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
    IRUsage,
    MetadataChunk,
    Role,
    StartChunk,
    TextPart,
    ToolResultPart,
    ToolUseChunk,
    ToolUsePart,
)
from llm_bridge.providers.openai_client import parse_tool_arguments

FINISH_REASONS = {
    FinishReason.STOP: "stop",
    FinishReason.LENGTH: "length",
    FinishReason.TOOL_USE: "tool_calls",
    FinishReason.CONTENT_FILTER: "content_filter",
}


def _text_of(content: Any) -> str:
    """Text of a string or a list of text blocks."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return "".join(
        block.get("text", "") if isinstance(block, dict) else str(block)
        for block in content
        if not isinstance(block, dict) or block.get("type", "text") == "text"
    )


def usage_to_dict(usage: Optional[IRUsage]) -> Optional[dict[str, int]]:
    if usage is None:
        return None
    return {
        "prompt_tokens": usage.prompt_tokens,
        "completion_tokens": usage.completion_tokens,
        "total_tokens": usage.total_tokens,
    }


class OpenAIChatFrontend(FrontendAdapter):
    """OpenAI Chat Completions Frontend"""

    name = "openai"
    id_prefix = "chatcmpl-"

    def to_ir(self, request: Any) -> IRChatRequest:
        payload = self._require_mapping(request)
        self._validate(payload.get("model"), payload.get("messages"))

        messages = [self._decode_message(m) for m in payload["messages"]]
        max_tokens = payload.get("max_completion_tokens", payload.get("max_tokens"))
        parameters = IRParameters(
            model=payload["model"],
            temperature=payload.get("temperature"),
            max_tokens=max_tokens,
            top_p=payload.get("top_p"),
            stop=payload.get("stop"),
        )
        tools = None
        if payload.get("tools"):
            tools = [
                IRTool(
                    name=(t.get("function") or {}).get("name", ""),
                    description=(t.get("function") or {}).get("description"),
                    parameters=(t.get("function") or {}).get("parameters") or {},
                )
                for t in payload["tools"]
            ]
        custom = {"user": payload["user"]} if payload.get("user") else {}
        return IRChatRequest(
            messages=messages,
            parameters=parameters,
            stream=bool(payload.get("stream", False)),
            tools=tools,
            metadata=IRRequestMetadata(provenance=IRProvenance(frontend=self.name), custom=custom),
        )

    def _decode_message(self, message: Any) -> IRMessage:
        if not isinstance(message, dict):
            raise ValidationError("Each message must be an object", provenance=self.provenance)
        role = message.get("role", "user")
        content = message.get("content")

        if role in ("system", "developer"):
            return IRMessage(role=Role.SYSTEM, content=_text_of(content))

        if role == "tool":
            return IRMessage(
                role=Role.TOOL,
                content=[ToolResultPart(tool_use_id=message.get("tool_call_id", ""), content=_text_of(content))],
            )

        if role not in ("user", "assistant"):
            raise ValidationError(f"Unsupported message role: {role}", provenance=self.provenance)

        tool_calls = [
            ToolUsePart(
                id=call.get("id", ""),
                name=(call.get("function") or {}).get("name", ""),
                input=parse_tool_arguments((call.get("function") or {}).get("arguments")),
            )
            for call in message.get("tool_calls") or []
        ]
        if isinstance(content, str) and not tool_calls:
            return IRMessage(role=Role(role), content=content, name=message.get("name"))

        parts: list[Any] = []
        if isinstance(content, str):
            if content:
                parts.append(TextPart(text=content))
        else:
            for block in content or []:
                parts.append(self._decode_part(block))
        return IRMessage(role=Role(role), content=parts + tool_calls, name=message.get("name"))

    def _decode_part(self, block: Any) -> Any:
        if isinstance(block, str):
            return TextPart(text=block)
        block_type = block.get("type")
        if block_type == "text":
            return TextPart(text=block.get("text", ""))
        if block_type == "image_url":
            image = block.get("image_url") or {}
            url = image if isinstance(image, str) else image.get("url", "")
            parsed = parse_data_uri(url)
            if parsed is not None:
                mime_type, data = parsed
                return ImagePart(source_type=ImageSourceType.BASE64, data=data, mime_type=mime_type)
            return ImagePart(source_type=ImageSourceType.URL, url=url)
        raise ValidationError(f"Unsupported content part type: {block_type}", provenance=self.provenance)

    def from_ir(self, response: IRChatResponse) -> dict[str, Any]:
        message: dict[str, Any] = {"role": "assistant", "content": response.text}
        tool_calls = response.message.get_tool_calls()
        if tool_calls:
            message["content"] = response.text or None
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.input, ensure_ascii=False)},
                }
                for call in tool_calls
            ]
        result: dict[str, Any] = {
            "id": self.ids.next_id(),
            "object": "chat.completion",
            "created": int(response.metadata.timestamp),
            "model": response.metadata.model,
            "choices": [
                {
                    "index": 0,
                    "message": message,
                    "finish_reason": FINISH_REASONS[response.finish_reason],
                }
            ],
        }
        usage = usage_to_dict(response.usage)
        if usage is not None:
            result["usage"] = usage
        return result

    async def from_ir_stream(self, chunks: AsyncIterator[IRStreamChunk]) -> AsyncIterator[dict[str, Any]]:
        response_id = self.ids.next_id()
        created = int(time.time())
        model = None
        usage = None

        def envelope(delta: dict[str, Any], finish_reason: Optional[str] = None) -> dict[str, Any]:
            return {
                "id": response_id,
                "object": "chat.completion.chunk",
                "created": created,
                "model": model,
                "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
            }

        async for chunk in chunks:
            if isinstance(chunk, StartChunk):
                model = chunk.metadata.model
                yield envelope({"role": "assistant", "content": ""})
            elif isinstance(chunk, ContentChunk):
                yield envelope({"content": chunk.delta})
            elif isinstance(chunk, ToolUseChunk):
                call: dict[str, Any] = {"index": chunk.index}
                if chunk.id:
                    call["id"] = chunk.id
                    call["type"] = "function"
                function: dict[str, Any] = {}
                if chunk.name:
                    function["name"] = chunk.name
                if chunk.input_delta:
                    function["arguments"] = chunk.input_delta
                elif chunk.input is not None:
                    function["arguments"] = json.dumps(chunk.input, ensure_ascii=False)
                call["function"] = function
                yield envelope({"tool_calls": [call]})
            elif isinstance(chunk, MetadataChunk):
                if chunk.usage is not None:
                    usage = chunk.usage
            elif isinstance(chunk, DoneChunk):
                final = envelope({}, FINISH_REASONS[chunk.finish_reason])
                final_usage = usage_to_dict(chunk.usage or usage)
                if final_usage is not None:
                    final["usage"] = final_usage
                yield final
                return
            elif isinstance(chunk, ErrorChunk):
                raise self._stream_failure(chunk)

"""
Anthropic Protocol Backend

Executes IR requests against the Anthropic Messages API.
"""

import logging
from typing import Any, Iterable, Optional

import httpx

from llm_bridge.common.media import resolve_image_data
from llm_bridge.common.system_message import SystemMessageStrategy, normalize_system_messages
from llm_bridge.config import get_settings
from llm_bridge.ir.types import (
    FinishReason,
    ImagePart,
    ImageSourceType,
    IRChatRequest,
    IRChatResponse,
    IRMessage,
    IRResponseMetadata,
    IRStreamChunk,
    IRUsage,
    Role,
    TextPart,
    ToolResultPart,
    ToolUsePart,
)
from llm_bridge.providers.base import HTTPBackendAdapter
from llm_bridge.stream import ChunkEmitter, SSEEvent

logger = logging.getLogger(__name__)

# Anthropic rejects more than 4 stop sequences
MAX_STOP_SEQUENCES = 4

STOP_REASON_MAP = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "tool_use": FinishReason.TOOL_USE,
    "refusal": FinishReason.CONTENT_FILTER,
}


def map_stop_reason(value: Optional[str]) -> FinishReason:
    return STOP_REASON_MAP.get(value or "end_turn", FinishReason.STOP)


class AnthropicClient(HTTPBackendAdapter):
    """
    Anthropic Protocol Backend

    - system messages are joined into the top-level ``system`` field
    - ``max_tokens`` is mandatory on the wire; defaults from settings
    - tool results travel as ``tool_result`` blocks inside a user turn
    """

    name = "anthropic"
    system_message_strategy = SystemMessageStrategy.SEPARATE_PARAMETER

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        headers: Optional[dict[str, str]] = None,
        version: Optional[str] = None,
        default_max_tokens: Optional[int] = None,
    ):
        settings = get_settings()
        super().__init__(
            api_key=api_key or settings.ANTHROPIC_API_KEY,
            base_url=base_url or settings.ANTHROPIC_BASE_URL,
            timeout=timeout,
            transport=transport,
            headers=headers,
        )
        self.version = version or settings.ANTHROPIC_VERSION
        self.default_max_tokens = default_max_tokens or settings.ANTHROPIC_DEFAULT_MAX_TOKENS

    def build_url(self, request: IRChatRequest, stream: bool) -> str:
        return f"{self.base_url}/messages"

    def build_headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key or "",
            "anthropic-version": self.version,
        }

    def health_check_url(self) -> Optional[str]:
        return f"{self.base_url}/models"

    def build_request_body(self, request: IRChatRequest, stream: bool) -> dict[str, Any]:
        params = request.parameters
        system, messages = normalize_system_messages(request.messages, self.system_message_strategy)

        body: dict[str, Any] = {
            "model": params.model,
            "messages": self._encode_messages(messages),
            "max_tokens": params.max_tokens if params.max_tokens is not None else self.default_max_tokens,
            "stream": stream,
        }
        if system:
            body["system"] = system
        if params.temperature is not None:
            body["temperature"] = params.temperature
        if params.top_p is not None:
            body["top_p"] = params.top_p
        if params.top_k is not None:
            body["top_k"] = params.top_k
        if params.stop:
            if len(params.stop) > MAX_STOP_SEQUENCES:
                logger.debug("Truncating %d stop sequences to %d", len(params.stop), MAX_STOP_SEQUENCES)
            body["stop_sequences"] = list(params.stop)[:MAX_STOP_SEQUENCES]
        if request.tools:
            body["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description or "",
                    "input_schema": tool.parameters or {"type": "object", "properties": {}},
                }
                for tool in request.tools
            ]
        return body

    def _encode_messages(self, messages: Iterable[IRMessage]) -> list[dict[str, Any]]:
        encoded: list[dict[str, Any]] = []
        for message in messages:
            # Tool results are user turns on the Anthropic wire
            role = "assistant" if message.role == Role.ASSISTANT else "user"
            if isinstance(message.content, str):
                if message.role == Role.TOOL:
                    content: Any = [
                        {"type": "tool_result", "tool_use_id": message.name or "", "content": message.content}
                    ]
                else:
                    content = message.content
            else:
                content = [self._encode_part(p) for p in message.content]
            encoded.append({"role": role, "content": content})
        return encoded

    @staticmethod
    def _encode_part(part: Any) -> dict[str, Any]:
        if isinstance(part, TextPart):
            return {"type": "text", "text": part.text}
        if isinstance(part, ImagePart):
            if part.source_type == ImageSourceType.URL and part.url:
                return {"type": "image", "source": {"type": "url", "url": part.url}}
            media_type, data = resolve_image_data(part)
            return {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}}
        if isinstance(part, ToolUsePart):
            return {"type": "tool_use", "id": part.id, "name": part.name, "input": part.input}
        if isinstance(part, ToolResultPart):
            block: dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": part.tool_use_id,
                "content": part.content,
            }
            if part.is_error:
                block["is_error"] = True
            return block
        raise TypeError(f"Unsupported content part: {type(part).__name__}")

    def parse_response(
        self, payload: dict[str, Any], request: IRChatRequest, latency_ms: Optional[float] = None
    ) -> IRChatResponse:
        parts: list[Any] = []
        for block in payload.get("content") or []:
            block_type = block.get("type")
            if block_type == "text":
                parts.append(TextPart(text=block.get("text", "")))
            elif block_type == "tool_use":
                parts.append(
                    ToolUsePart(id=block.get("id", ""), name=block.get("name", ""), input=block.get("input") or {})
                )

        if all(isinstance(p, TextPart) for p in parts):
            message = IRMessage(role=Role.ASSISTANT, content="".join(p.text for p in parts))
        else:
            message = IRMessage(role=Role.ASSISTANT, content=parts)

        usage = payload.get("usage") or {}
        return IRChatResponse(
            message=message,
            finish_reason=map_stop_reason(payload.get("stop_reason")),
            usage=IRUsage(
                prompt_tokens=usage.get("input_tokens") or 0,
                completion_tokens=usage.get("output_tokens") or 0,
            ),
            metadata=IRResponseMetadata.for_request(
                request,
                backend=self.name,
                provider_response_id=payload.get("id"),
                model=payload.get("model") or request.parameters.model,
                latency_ms=latency_ms,
            ),
        )

    def map_stream_event(self, event: SSEEvent, emitter: ChunkEmitter) -> Iterable[IRStreamChunk]:
        data = event.data or {}
        event_type = event.event or data.get("type")

        if event_type == "error":
            raise self._stream_error(event)

        if event_type == "message_start":
            message = data.get("message") or {}
            emitter.provider_response_id = message.get("id")
            usage = message.get("usage") or {}
            emitter.usage = IRUsage(
                prompt_tokens=usage.get("input_tokens") or 0,
                completion_tokens=usage.get("output_tokens") or 0,
            )
            return []

        if event_type == "content_block_start":
            block = data.get("content_block") or {}
            if block.get("type") == "tool_use":
                return [emitter.tool_use(index=data.get("index", 0), id=block.get("id"), name=block.get("name"))]
            chunk = emitter.content(block.get("text")) if block.get("type") == "text" else None
            return [chunk] if chunk else []

        if event_type == "content_block_delta":
            delta = data.get("delta") or {}
            if delta.get("type") == "text_delta":
                chunk = emitter.content(delta.get("text"))
                return [chunk] if chunk else []
            if delta.get("type") == "input_json_delta":
                return [emitter.tool_use(index=data.get("index", 0), input_delta=delta.get("partial_json") or "")]
            return []

        if event_type == "message_delta":
            delta = data.get("delta") or {}
            if delta.get("stop_reason"):
                emitter.finish_reason = map_stop_reason(delta["stop_reason"])
            usage = data.get("usage")
            if usage:
                prompt_tokens = emitter.usage.prompt_tokens if emitter.usage else 0
                return [
                    emitter.metadata(
                        usage=IRUsage(
                            prompt_tokens=usage.get("input_tokens") or prompt_tokens,
                            completion_tokens=usage.get("output_tokens") or 0,
                        )
                    )
                ]
            return []

        if event_type == "message_stop":
            return [emitter.done()]

        # ping, content_block_stop
        return []

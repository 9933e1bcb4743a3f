"""
OpenAI Protocol Backend

Executes IR requests against OpenAI compatible ``/chat/completions``
endpoints (OpenAI, Groq, DeepSeek, vLLM, LM Studio ...).
"""

import json
import logging
from typing import Any, Iterable, Optional

import httpx

from llm_bridge.common.media import to_data_uri
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

FINISH_REASON_MAP = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_USE,
    "function_call": FinishReason.TOOL_USE,
    "content_filter": FinishReason.CONTENT_FILTER,
}


def map_finish_reason(value: Optional[str]) -> FinishReason:
    return FINISH_REASON_MAP.get(value or "stop", FinishReason.STOP)


def parse_usage(usage: Optional[dict[str, Any]]) -> Optional[IRUsage]:
    if not usage:
        return None
    return IRUsage(
        prompt_tokens=usage.get("prompt_tokens") or 0,
        completion_tokens=usage.get("completion_tokens") or 0,
    )


def parse_tool_arguments(arguments: Any) -> dict[str, Any]:
    if isinstance(arguments, dict):
        return arguments
    if not arguments:
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError:
        logger.warning("Tool call arguments are not valid JSON, keeping raw string")
        return {"_raw": arguments}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


class OpenAIClient(HTTPBackendAdapter):
    """
    OpenAI Protocol Backend

    System messages stay in the ``messages`` array. ``top_k`` has no OpenAI
    equivalent and is dropped.
    """

    name = "openai"
    system_message_strategy = SystemMessageStrategy.IN_MESSAGES

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        headers: Optional[dict[str, str]] = None,
        organization: Optional[str] = None,
    ):
        settings = get_settings()
        super().__init__(
            api_key=api_key or settings.OPENAI_API_KEY,
            base_url=base_url or settings.OPENAI_BASE_URL,
            timeout=timeout,
            transport=transport,
            headers=headers,
        )
        self.organization = organization

    def build_url(self, request: IRChatRequest, stream: bool) -> str:
        return f"{self.base_url}/chat/completions"

    def build_headers(self) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if self.organization:
            headers["OpenAI-Organization"] = self.organization
        return headers

    def health_check_url(self) -> Optional[str]:
        return f"{self.base_url}/models"

    def build_request_body(self, request: IRChatRequest, stream: bool) -> dict[str, Any]:
        params = request.parameters
        _, messages = normalize_system_messages(request.messages, self.system_message_strategy)

        body: dict[str, Any] = {
            "model": params.model,
            "messages": self._encode_messages(messages),
            "stream": stream,
        }
        if params.temperature is not None:
            body["temperature"] = params.temperature
        if params.max_tokens is not None:
            body["max_tokens"] = params.max_tokens
        if params.top_p is not None:
            body["top_p"] = params.top_p
        if params.stop:
            body["stop"] = list(params.stop)
        if request.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description or "",
                        "parameters": tool.parameters or {"type": "object", "properties": {}},
                    },
                }
                for tool in request.tools
            ]
        if stream:
            body["stream_options"] = {"include_usage": True}
        return body

    def _encode_messages(self, messages: Iterable[IRMessage]) -> list[dict[str, Any]]:
        encoded: list[dict[str, Any]] = []
        for message in messages:
            if isinstance(message.content, str):
                item: dict[str, Any] = {"role": message.role.value, "content": message.content}
                if message.role == Role.TOOL:
                    item["tool_call_id"] = message.name or ""
                elif message.name:
                    item["name"] = message.name
                encoded.append(item)
                continue

            # Tool results become standalone "tool" messages
            for part in message.content:
                if isinstance(part, ToolResultPart):
                    encoded.append(
                        {"role": "tool", "tool_call_id": part.tool_use_id, "content": part.content}
                    )

            content = [
                self._encode_part(p) for p in message.content if isinstance(p, (TextPart, ImagePart))
            ]
            tool_calls = [
                {
                    "id": p.id,
                    "type": "function",
                    "function": {"name": p.name, "arguments": json.dumps(p.input, ensure_ascii=False)},
                }
                for p in message.content
                if isinstance(p, ToolUsePart)
            ]
            if not content and not tool_calls:
                continue

            role = Role.USER if message.role == Role.TOOL else message.role
            item = {"role": role.value}
            if role in (Role.ASSISTANT, Role.SYSTEM) and all(c["type"] == "text" for c in content):
                item["content"] = "".join(c["text"] for c in content) or None
            else:
                item["content"] = content
            if tool_calls:
                item["tool_calls"] = tool_calls
            encoded.append(item)
        return encoded

    @staticmethod
    def _encode_part(part: Any) -> dict[str, Any]:
        if isinstance(part, TextPart):
            return {"type": "text", "text": part.text}
        if part.source_type == ImageSourceType.URL and part.url:
            url = part.url
        else:
            url = to_data_uri(part)
        return {"type": "image_url", "image_url": {"url": url}}

    def parse_response(
        self, payload: dict[str, Any], request: IRChatRequest, latency_ms: Optional[float] = None
    ) -> IRChatResponse:
        choices = payload.get("choices") or []
        choice = choices[0] if choices else {}
        message = choice.get("message") or {}
        text = message.get("content") or ""

        tool_parts = [
            ToolUsePart(
                id=call.get("id", ""),
                name=(call.get("function") or {}).get("name", ""),
                input=parse_tool_arguments((call.get("function") or {}).get("arguments")),
            )
            for call in message.get("tool_calls") or []
        ]
        if tool_parts:
            parts = ([TextPart(text=text)] if text else []) + tool_parts
            ir_message = IRMessage(role=Role.ASSISTANT, content=parts)
        else:
            ir_message = IRMessage(role=Role.ASSISTANT, content=text)

        return IRChatResponse(
            message=ir_message,
            finish_reason=map_finish_reason(choice.get("finish_reason")),
            usage=parse_usage(payload.get("usage")) or IRUsage(),
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
        if "error" in data:
            raise self._stream_error(event)
        if emitter.provider_response_id is None and data.get("id"):
            emitter.provider_response_id = data["id"]

        chunks: list[IRStreamChunk] = []
        for choice in data.get("choices") or []:
            delta = choice.get("delta") or {}
            content = emitter.content(delta.get("content"))
            if content is not None:
                chunks.append(content)
            for call in delta.get("tool_calls") or []:
                function = call.get("function") or {}
                chunks.append(
                    emitter.tool_use(
                        index=call.get("index", 0),
                        id=call.get("id"),
                        name=function.get("name"),
                        input_delta=function.get("arguments") or "",
                    )
                )
            if choice.get("finish_reason"):
                emitter.finish_reason = map_finish_reason(choice["finish_reason"])

        usage = parse_usage(data.get("usage"))
        if usage is not None:
            chunks.append(emitter.metadata(usage=usage))
        return chunks

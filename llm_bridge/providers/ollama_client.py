"""
Ollama Backend

Executes IR requests against a local Ollama server (``/api/chat``).
Streams are newline-delimited JSON instead of SSE; no credentials needed.
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
from llm_bridge.providers.openai_client import parse_tool_arguments
from llm_bridge.stream import ChunkEmitter, SSEEvent

logger = logging.getLogger(__name__)


def map_done_reason(value: Optional[str]) -> FinishReason:
    if value == "length":
        return FinishReason.LENGTH
    return FinishReason.STOP


def parse_counts(payload: dict[str, Any]) -> IRUsage:
    return IRUsage(
        prompt_tokens=payload.get("prompt_eval_count") or 0,
        completion_tokens=payload.get("eval_count") or 0,
    )


class OllamaClient(HTTPBackendAdapter):
    """Ollama Backend"""

    name = "ollama"
    requires_api_key = False
    stream_framing = "ndjson"
    system_message_strategy = SystemMessageStrategy.IN_MESSAGES

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        headers: Optional[dict[str, str]] = None,
        api_key: Optional[str] = None,
    ):
        super().__init__(
            api_key=api_key,
            base_url=base_url or get_settings().OLLAMA_BASE_URL,
            timeout=timeout,
            transport=transport,
            headers=headers,
        )

    def build_url(self, request: IRChatRequest, stream: bool) -> str:
        return f"{self.base_url}/api/chat"

    def build_headers(self) -> dict[str, str]:
        # Ollama behind an authenticating proxy
        if self.api_key:
            return {"Authorization": f"Bearer {self.api_key}"}
        return {}

    def health_check_url(self) -> Optional[str]:
        return f"{self.base_url}/api/tags"

    def build_request_body(self, request: IRChatRequest, stream: bool) -> dict[str, Any]:
        params = request.parameters
        _, messages = normalize_system_messages(request.messages, self.system_message_strategy)

        options: dict[str, Any] = {}
        if params.temperature is not None:
            options["temperature"] = params.temperature
        if params.max_tokens is not None:
            options["num_predict"] = params.max_tokens
        if params.top_p is not None:
            options["top_p"] = params.top_p
        if params.top_k is not None:
            options["top_k"] = params.top_k
        if params.stop:
            options["stop"] = list(params.stop)

        body: dict[str, Any] = {
            "model": params.model,
            "messages": [self._encode_message(m) for m in messages],
            "stream": stream,
        }
        if options:
            body["options"] = options
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
        return body

    @staticmethod
    def _encode_message(message: IRMessage) -> dict[str, Any]:
        texts, images, tool_calls = [], [], []
        for part in message.parts:
            if isinstance(part, TextPart):
                texts.append(part.text)
            elif isinstance(part, ImagePart):
                if part.data is None:
                    logger.warning("Ollama only accepts inline images; dropping image URL")
                    continue
                images.append(resolve_image_data(part)[1])
            elif isinstance(part, ToolUsePart):
                tool_calls.append({"function": {"name": part.name, "arguments": part.input}})
            elif isinstance(part, ToolResultPart):
                texts.append(part.content)
        role = "tool" if any(isinstance(p, ToolResultPart) for p in message.parts) else message.role.value
        item: dict[str, Any] = {"role": role, "content": "".join(texts)}
        if images:
            item["images"] = images
        if tool_calls:
            item["tool_calls"] = tool_calls
        return item

    @staticmethod
    def _tool_parts(message: dict[str, Any]) -> list[ToolUsePart]:
        parts = []
        for index, call in enumerate(message.get("tool_calls") or []):
            function = call.get("function") or {}
            parts.append(
                ToolUsePart(
                    id=f"call_{index}",
                    name=function.get("name", ""),
                    input=parse_tool_arguments(function.get("arguments")),
                )
            )
        return parts

    def parse_response(
        self, payload: dict[str, Any], request: IRChatRequest, latency_ms: Optional[float] = None
    ) -> IRChatResponse:
        message = payload.get("message") or {}
        text = message.get("content") or ""
        tool_parts = self._tool_parts(message)
        if tool_parts:
            ir_message = IRMessage(role=Role.ASSISTANT, content=([TextPart(text=text)] if text else []) + tool_parts)
            finish_reason = FinishReason.TOOL_USE
        else:
            ir_message = IRMessage(role=Role.ASSISTANT, content=text)
            finish_reason = map_done_reason(payload.get("done_reason"))

        return IRChatResponse(
            message=ir_message,
            finish_reason=finish_reason,
            usage=parse_counts(payload),
            metadata=IRResponseMetadata.for_request(
                request,
                backend=self.name,
                model=payload.get("model") or request.parameters.model,
                latency_ms=latency_ms,
            ),
        )

    def map_stream_event(self, event: SSEEvent, emitter: ChunkEmitter) -> Iterable[IRStreamChunk]:
        data = event.data or {}
        if "error" in data:
            raise self._stream_error(event)

        chunks: list[IRStreamChunk] = []
        message = data.get("message") or {}
        content = emitter.content(message.get("content"))
        if content is not None:
            chunks.append(content)
        for part in self._tool_parts(message):
            index = emitter.tool_call_count
            chunks.append(emitter.tool_use(index=index, id=f"call_{index}", name=part.name, input=part.input))

        if data.get("done"):
            if emitter.tool_call_count:
                reason = FinishReason.TOOL_USE
            else:
                reason = map_done_reason(data.get("done_reason"))
            chunks.append(emitter.done(finish_reason=reason, usage=parse_counts(data)))
        return chunks

"""
Gemini Protocol Backend

Executes IR requests against the Google Gemini ``generateContent`` API.
Authentication uses the ``key`` query parameter.
"""

import logging
from typing import Any, Iterable, Optional
from urllib.parse import quote, urlencode

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

FINISH_REASON_MAP = {
    "STOP": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.LENGTH,
    "SAFETY": FinishReason.CONTENT_FILTER,
    "RECITATION": FinishReason.CONTENT_FILTER,
    "BLOCKLIST": FinishReason.CONTENT_FILTER,
    "PROHIBITED_CONTENT": FinishReason.CONTENT_FILTER,
    "SPII": FinishReason.CONTENT_FILTER,
}


def map_finish_reason(value: Optional[str]) -> FinishReason:
    return FINISH_REASON_MAP.get(value or "STOP", FinishReason.STOP)


def parse_usage_metadata(usage: Optional[dict[str, Any]]) -> Optional[IRUsage]:
    if not usage:
        return None
    return IRUsage(
        prompt_tokens=usage.get("promptTokenCount") or 0,
        completion_tokens=usage.get("candidatesTokenCount") or 0,
    )


class GeminiClient(HTTPBackendAdapter):
    """Gemini Protocol Backend"""

    name = "gemini"
    system_message_strategy = SystemMessageStrategy.SEPARATE_PARAMETER

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        settings = get_settings()
        super().__init__(
            api_key=api_key or settings.GEMINI_API_KEY,
            base_url=base_url or settings.GEMINI_BASE_URL,
            timeout=timeout,
            transport=transport,
            headers=headers,
        )

    @staticmethod
    def _model_path(model: Optional[str]) -> str:
        model = model or ""
        if model.startswith("models/"):
            model = model[len("models/"):]
        return quote(model, safe="-._")

    def build_url(self, request: IRChatRequest, stream: bool) -> str:
        model = self._model_path(request.parameters.model)
        if stream:
            query = urlencode({"alt": "sse", "key": self.api_key})
            return f"{self.base_url}/models/{model}:streamGenerateContent?{query}"
        return f"{self.base_url}/models/{model}:generateContent?{urlencode({'key': self.api_key})}"

    def build_headers(self) -> dict[str, str]:
        return {}

    def health_check_url(self) -> Optional[str]:
        return f"{self.base_url}/models?{urlencode({'key': self.api_key})}"

    def build_request_body(self, request: IRChatRequest, stream: bool) -> dict[str, Any]:
        params = request.parameters
        system, messages = normalize_system_messages(request.messages, self.system_message_strategy)

        body: dict[str, Any] = {"contents": self._encode_messages(messages)}
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}

        generation_config: dict[str, Any] = {}
        if params.temperature is not None:
            generation_config["temperature"] = params.temperature
        if params.max_tokens is not None:
            generation_config["maxOutputTokens"] = params.max_tokens
        if params.top_p is not None:
            generation_config["topP"] = params.top_p
        if params.top_k is not None:
            generation_config["topK"] = params.top_k
        if params.stop:
            generation_config["stopSequences"] = list(params.stop)
        if generation_config:
            body["generationConfig"] = generation_config

        if request.tools:
            body["tools"] = [
                {
                    "functionDeclarations": [
                        {
                            "name": tool.name,
                            "description": tool.description or "",
                            "parameters": tool.parameters or {"type": "object", "properties": {}},
                        }
                        for tool in request.tools
                    ]
                }
            ]
        return body

    def _encode_messages(self, messages: Iterable[IRMessage]) -> list[dict[str, Any]]:
        messages = list(messages)
        # functionResponse needs the function name; tool results only carry the call id
        tool_names = {
            part.id: part.name for message in messages for part in message.get_tool_calls()
        }
        contents = []
        for message in messages:
            role = "model" if message.role == Role.ASSISTANT else "user"
            if isinstance(message.content, str) and message.role == Role.TOOL:
                parts = [self._function_response(message.name or "", message.content, tool_names)]
            else:
                parts = [self._encode_part(p, tool_names) for p in message.parts]
            if parts:
                contents.append({"role": role, "parts": parts})
        return contents

    @staticmethod
    def _function_response(tool_use_id: str, content: str, tool_names: dict[str, str]) -> dict[str, Any]:
        return {
            "functionResponse": {
                "name": tool_names.get(tool_use_id, tool_use_id),
                "response": {"content": content},
            }
        }

    def _encode_part(self, part: Any, tool_names: dict[str, str]) -> dict[str, Any]:
        if isinstance(part, TextPart):
            return {"text": part.text}
        if isinstance(part, ImagePart):
            if part.source_type == ImageSourceType.URL and part.url:
                return {"fileData": {"mimeType": part.mime_type, "fileUri": part.url}}
            mime_type, data = resolve_image_data(part)
            return {"inlineData": {"mimeType": mime_type, "data": data}}
        if isinstance(part, ToolUsePart):
            return {"functionCall": {"name": part.name, "args": part.input}}
        if isinstance(part, ToolResultPart):
            return self._function_response(part.tool_use_id, part.content, tool_names)
        raise TypeError(f"Unsupported content part: {type(part).__name__}")

    def parse_response(
        self, payload: dict[str, Any], request: IRChatRequest, latency_ms: Optional[float] = None
    ) -> IRChatResponse:
        candidates = payload.get("candidates") or []
        candidate = candidates[0] if candidates else {}
        text = ""
        tool_parts = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            if "text" in part:
                text += part["text"]
            elif "functionCall" in part:
                call = part["functionCall"]
                tool_parts.append(
                    ToolUsePart(id=f"call_{len(tool_parts)}", name=call.get("name", ""), input=call.get("args") or {})
                )

        if tool_parts:
            message = IRMessage(role=Role.ASSISTANT, content=([TextPart(text=text)] if text else []) + tool_parts)
            finish_reason = FinishReason.TOOL_USE
        else:
            message = IRMessage(role=Role.ASSISTANT, content=text)
            finish_reason = map_finish_reason(candidate.get("finishReason"))

        return IRChatResponse(
            message=message,
            finish_reason=finish_reason,
            usage=parse_usage_metadata(payload.get("usageMetadata")) or IRUsage(),
            metadata=IRResponseMetadata.for_request(
                request,
                backend=self.name,
                provider_response_id=payload.get("responseId"),
                model=payload.get("modelVersion") or request.parameters.model,
                latency_ms=latency_ms,
            ),
        )

    def map_stream_event(self, event: SSEEvent, emitter: ChunkEmitter) -> Iterable[IRStreamChunk]:
        data = event.data or {}
        if "error" in data:
            raise self._stream_error(event)

        chunks: list[IRStreamChunk] = []
        for candidate in data.get("candidates") or []:
            for part in (candidate.get("content") or {}).get("parts") or []:
                if "text" in part:
                    chunk = emitter.content(part["text"])
                    if chunk is not None:
                        chunks.append(chunk)
                elif "functionCall" in part:
                    call = part["functionCall"]
                    index = emitter.tool_call_count
                    chunks.append(
                        emitter.tool_use(
                            index=index,
                            id=f"call_{index}",
                            name=call.get("name"),
                            input=call.get("args") or {},
                        )
                    )
            if candidate.get("finishReason"):
                emitter.finish_reason = map_finish_reason(candidate["finishReason"])
        if emitter.tool_call_count:
            emitter.finish_reason = FinishReason.TOOL_USE

        # Gemini repeats usage on every event; keep the latest for the done chunk
        usage = parse_usage_metadata(data.get("usageMetadata"))
        if usage is not None:
            emitter.usage = usage
        return chunks

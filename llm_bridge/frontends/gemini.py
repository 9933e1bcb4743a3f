"""
Gemini Frontend

Accepts ``generateContent`` request bodies. Gemini carries the model in
the URL path, so callers put it in the body as ``model``.
"""

import json
from typing import Any, AsyncIterator

from llm_bridge.common.errors import ValidationError
from llm_bridge.frontends.base import FrontendAdapter
from llm_bridge.providers.openai_client import parse_tool_arguments
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
    TextPart,
    ToolResultPart,
    ToolUseChunk,
    ToolUsePart,
)

FINISH_REASONS = {
    FinishReason.STOP: "STOP",
    FinishReason.LENGTH: "MAX_TOKENS",
    FinishReason.TOOL_USE: "STOP",
    FinishReason.CONTENT_FILTER: "SAFETY",
}


def usage_metadata(usage: IRUsage) -> dict[str, int]:
    return {
        "promptTokenCount": usage.prompt_tokens,
        "candidatesTokenCount": usage.completion_tokens,
        "totalTokenCount": usage.total_tokens,
    }


class GeminiFrontend(FrontendAdapter):
    """Gemini Frontend"""

    name = "gemini"
    id_prefix = "gemini-"

    def to_ir(self, request: Any) -> IRChatRequest:
        payload = self._require_mapping(request)
        model = payload.get("model") or ""
        if model.startswith("models/"):
            model = model[len("models/"):]
        self._validate(model, payload.get("contents"))

        messages: list[IRMessage] = []
        system = payload.get("systemInstruction") or payload.get("system_instruction")
        if system:
            if isinstance(system, str):
                text = system
            else:
                text = "".join(p.get("text", "") for p in system.get("parts") or [])
            messages.append(IRMessage(role=Role.SYSTEM, content=text))

        # function name -> id of the call, so functionResponse can point back at it
        call_ids: dict[str, str] = {}
        for content in payload["contents"]:
            messages.append(self._decode_content(content, call_ids))

        config = payload.get("generationConfig") or {}
        tools = []
        for tool in payload.get("tools") or []:
            for declaration in tool.get("functionDeclarations") or []:
                tools.append(
                    IRTool(
                        name=declaration.get("name", ""),
                        description=declaration.get("description"),
                        parameters=declaration.get("parameters") or {},
                    )
                )
        return IRChatRequest(
            messages=messages,
            parameters=IRParameters(
                model=model,
                temperature=config.get("temperature"),
                max_tokens=config.get("maxOutputTokens"),
                top_p=config.get("topP"),
                top_k=config.get("topK"),
                stop=config.get("stopSequences"),
            ),
            stream=bool(payload.get("stream", False)),
            tools=tools or None,
            metadata=IRRequestMetadata(provenance=IRProvenance(frontend=self.name)),
        )

    def _decode_content(self, content: Any, call_ids: dict[str, str]) -> IRMessage:
        if not isinstance(content, dict):
            raise ValidationError("Each content entry must be an object", provenance=self.provenance)
        role = Role.ASSISTANT if content.get("role") == "model" else Role.USER
        parts: list[Any] = []
        for part in content.get("parts") or []:
            if "text" in part:
                parts.append(TextPart(text=part["text"]))
            elif "inlineData" in part:
                inline = part["inlineData"]
                parts.append(
                    ImagePart(
                        source_type=ImageSourceType.BASE64,
                        data=inline.get("data"),
                        mime_type=inline.get("mimeType") or "image/jpeg",
                    )
                )
            elif "fileData" in part:
                file_data = part["fileData"]
                parts.append(
                    ImagePart(
                        source_type=ImageSourceType.URL,
                        url=file_data.get("fileUri"),
                        mime_type=file_data.get("mimeType") or "image/jpeg",
                    )
                )
            elif "functionCall" in part:
                call = part["functionCall"]
                call_id = f"call_{len(call_ids)}"
                call_ids[call.get("name", "")] = call_id
                parts.append(ToolUsePart(id=call_id, name=call.get("name", ""), input=call.get("args") or {}))
            elif "functionResponse" in part:
                response = part["functionResponse"]
                name = response.get("name", "")
                parts.append(
                    ToolResultPart(
                        tool_use_id=call_ids.get(name, name),
                        content=json.dumps(response.get("response") or {}, ensure_ascii=False),
                    )
                )
            else:
                raise ValidationError(f"Unsupported part: {sorted(part)}", provenance=self.provenance)
        if all(isinstance(p, TextPart) for p in parts):
            return IRMessage(role=role, content="".join(p.text for p in parts))
        return IRMessage(role=role, content=parts)

    @staticmethod
    def _encode_parts(message: IRMessage) -> list[dict[str, Any]]:
        parts: list[dict[str, Any]] = []
        for part in message.parts:
            if isinstance(part, TextPart):
                parts.append({"text": part.text})
            elif isinstance(part, ToolUsePart):
                parts.append({"functionCall": {"name": part.name, "args": part.input}})
        return parts

    def from_ir(self, response: IRChatResponse) -> dict[str, Any]:
        result: dict[str, Any] = {
            "candidates": [
                {
                    "content": {"role": "model", "parts": self._encode_parts(response.message)},
                    "finishReason": FINISH_REASONS[response.finish_reason],
                    "index": 0,
                }
            ],
            "modelVersion": response.metadata.model,
            "responseId": self.ids.next_id(),
        }
        if response.usage is not None:
            result["usageMetadata"] = usage_metadata(response.usage)
        return result

    async def from_ir_stream(self, chunks: AsyncIterator[IRStreamChunk]) -> AsyncIterator[dict[str, Any]]:
        response_id = self.ids.next_id()
        usage = None
        # Gemini only sends complete function calls; partial arguments are buffered
        pending_calls: dict[int, dict[str, Any]] = {}

        async for chunk in chunks:
            if isinstance(chunk, ContentChunk):
                yield {
                    "candidates": [{"content": {"role": "model", "parts": [{"text": chunk.delta}]}, "index": 0}],
                    "responseId": response_id,
                }
            elif isinstance(chunk, ToolUseChunk):
                call = pending_calls.setdefault(chunk.index, {"name": "", "arguments": "", "input": None})
                if chunk.name:
                    call["name"] = chunk.name
                call["arguments"] += chunk.input_delta
                if chunk.input is not None:
                    call["input"] = chunk.input
            elif isinstance(chunk, MetadataChunk):
                if chunk.usage is not None:
                    usage = chunk.usage
            elif isinstance(chunk, DoneChunk):
                parts = []
                for _, call in sorted(pending_calls.items()):
                    args = call["input"]
                    if args is None:
                        args = parse_tool_arguments(call["arguments"])
                    parts.append({"functionCall": {"name": call["name"], "args": args}})
                final: dict[str, Any] = {
                    "candidates": [
                        {
                            "content": {"role": "model", "parts": parts},
                            "finishReason": FINISH_REASONS[chunk.finish_reason],
                            "index": 0,
                        }
                    ],
                    "responseId": response_id,
                }
                final_usage = chunk.usage or usage
                if final_usage is not None:
                    final["usageMetadata"] = usage_metadata(final_usage)
                yield final
                return
            elif isinstance(chunk, ErrorChunk):
                raise self._stream_failure(chunk)

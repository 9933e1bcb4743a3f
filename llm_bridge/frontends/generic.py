"""
Generic Frontend

IR in, IR out. Accepts IRChatRequest instances or plain dicts shaped like
them, for callers that already speak the intermediate representation.
"""

from typing import Any, AsyncIterator

from llm_bridge.common.errors import ValidationError
from llm_bridge.frontends.base import FrontendAdapter
from llm_bridge.ir.types import (
    ContentPart,
    ErrorChunk,
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
    PartType,
    TextPart,
    ToolResultPart,
    ToolUsePart,
)

_PARAMETER_FIELDS = ("model", "temperature", "max_tokens", "top_p", "top_k", "stop")


class GenericFrontend(FrontendAdapter):
    """Generic Frontend"""

    name = "generic"
    id_prefix = "ir-"

    def to_ir(self, request: Any) -> IRChatRequest:
        if isinstance(request, IRChatRequest):
            self._validate(request.parameters.model, request.messages)
            if request.metadata.provenance.frontend is None:
                return request.with_provenance(frontend=self.name)
            return request

        payload = self._require_mapping(request)
        parameters = payload.get("parameters") or {}
        if not isinstance(parameters, dict):
            raise ValidationError("parameters must be an object", provenance=self.provenance)
        self._validate(parameters.get("model"), payload.get("messages"))

        messages = [self._decode_message(m) for m in payload["messages"]]

        tools = None
        if payload.get("tools"):
            tools = [t if isinstance(t, IRTool) else IRTool(**t) for t in payload["tools"]]
        return IRChatRequest(
            messages=messages,
            parameters=IRParameters(**{k: parameters.get(k) for k in _PARAMETER_FIELDS}),
            stream=bool(payload.get("stream", False)),
            tools=tools,
            metadata=IRRequestMetadata(
                provenance=IRProvenance(frontend=self.name),
                custom=dict(payload.get("metadata") or {}),
            ),
        )

    def _decode_message(self, message: Any) -> IRMessage:
        if isinstance(message, IRMessage):
            return message
        try:
            content = message.get("content", "")
            if not isinstance(content, str):
                content = [self._decode_part(block) for block in content]
            return IRMessage(role=message["role"], content=content, name=message.get("name"))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ValidationError(f"Invalid message: {str(e)}", provenance=self.provenance) from e

    def _decode_part(self, block: Any) -> ContentPart:
        """Build a typed part from its dict form; part instances pass through."""
        if isinstance(block, (TextPart, ImagePart, ToolUsePart, ToolResultPart)):
            return block
        if not isinstance(block, dict):
            raise ValidationError(f"Unsupported content part: {type(block).__name__}", provenance=self.provenance)
        fields = {k: v for k, v in block.items() if k != "type"}
        part_type = block.get("type")
        try:
            if part_type == PartType.TEXT.value:
                return TextPart(**fields)
            if part_type == PartType.IMAGE.value:
                if "source_type" in fields:
                    fields["source_type"] = ImageSourceType(fields["source_type"])
                return ImagePart(**fields)
            if part_type == PartType.TOOL_USE.value:
                return ToolUsePart(**fields)
            if part_type == PartType.TOOL_RESULT.value:
                return ToolResultPart(**fields)
        except TypeError as e:
            raise ValidationError(f"Invalid {part_type} part: {str(e)}", provenance=self.provenance) from e
        raise ValidationError(f"Unsupported content part type: {part_type}", provenance=self.provenance)

    def from_ir(self, response: IRChatResponse) -> IRChatResponse:
        return response

    async def from_ir_stream(self, chunks: AsyncIterator[IRStreamChunk]) -> AsyncIterator[IRStreamChunk]:
        async for chunk in chunks:
            if isinstance(chunk, ErrorChunk):
                raise self._stream_failure(chunk)
            yield chunk

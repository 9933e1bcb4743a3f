"""
OpenAI Frontend Unit Tests
"""

import pytest

from llm_bridge.common.errors import NetworkError, ValidationError
from llm_bridge.frontends import OpenAIChatFrontend, get_frontend
from llm_bridge.ir.types import (
    FinishReason,
    ImagePart,
    ImageSourceType,
    IRChatResponse,
    IRMessage,
    IRResponseMetadata,
    IRUsage,
    Role,
    ToolResultPart,
    ToolUsePart,
)
from llm_bridge.stream import ChunkEmitter


async def _agen(items):
    for item in items:
        yield item


class TestOpenAIToIR:
    """Request parsing"""

    def setup_method(self):
        self.frontend = OpenAIChatFrontend()

    def test_basic_request(self):
        request = self.frontend.to_ir(
            {
                "model": "gpt-4o",
                "messages": [
                    {"role": "system", "content": "Be brief."},
                    {"role": "user", "content": "Say OK"},
                ],
                "max_completion_tokens": 20,
                "temperature": 0.1,
                "stop": "END",
                "user": "u-1",
            }
        )
        assert request.model == "gpt-4o"
        assert [m.role for m in request.messages] == [Role.SYSTEM, Role.USER]
        assert request.parameters.max_tokens == 20
        assert request.parameters.stop == ("END",)
        assert request.metadata.custom == {"user": "u-1"}
        assert request.metadata.provenance.frontend == "openai"
        assert request.stream is False

    def test_tool_conversation(self):
        request = self.frontend.to_ir(
            {
                "model": "gpt-4o",
                "messages": [
                    {"role": "user", "content": "Weather?"},
                    {
                        "role": "assistant",
                        "content": None,
                        "tool_calls": [
                            {"id": "call_1", "type": "function", "function": {"name": "weather", "arguments": '{"city":"Oslo"}'}}
                        ],
                    },
                    {"role": "tool", "tool_call_id": "call_1", "content": "sunny"},
                ],
                "tools": [{"type": "function", "function": {"name": "weather", "parameters": {"type": "object"}}}],
            }
        )
        assistant = request.messages[1]
        assert assistant.get_tool_calls() == (ToolUsePart(id="call_1", name="weather", input={"city": "Oslo"}),)
        assert request.messages[2].content == (ToolResultPart(tool_use_id="call_1", content="sunny"),)
        assert request.tools[0].name == "weather"

    def test_image_data_uri(self):
        request = self.frontend.to_ir(
            {
                "model": "gpt-4o",
                "messages": [
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": "What is it?"},
                            {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
                        ],
                    }
                ],
            }
        )
        image = request.messages[0].content[1]
        assert image == ImagePart(source_type=ImageSourceType.BASE64, data="AAAA", mime_type="image/png")

    @pytest.mark.parametrize(
        "payload",
        [
            {"messages": [{"role": "user", "content": "hi"}]},
            {"model": "gpt-4o", "messages": []},
            {"model": "gpt-4o", "messages": [{"role": "wizard", "content": "hi"}]},
            ["not", "an", "object"],
        ],
    )
    def test_invalid_requests(self, payload):
        with pytest.raises(ValidationError):
            self.frontend.to_ir(payload)


class TestOpenAIFromIR:
    """Response rendering"""

    def setup_method(self):
        self.frontend = get_frontend("openai")

    def test_response_envelope_and_ids(self):
        response = IRChatResponse(
            message=IRMessage(role=Role.ASSISTANT, content="OK"),
            usage=IRUsage(prompt_tokens=3, completion_tokens=1),
            metadata=IRResponseMetadata(model="gpt-4o"),
        )
        first = self.frontend.from_ir(response)
        second = self.frontend.from_ir(response)

        assert first["id"] == "chatcmpl-000001"
        assert second["id"] == "chatcmpl-000002"
        assert first["object"] == "chat.completion"
        assert first["choices"][0]["message"] == {"role": "assistant", "content": "OK"}
        assert first["choices"][0]["finish_reason"] == "stop"
        assert first["usage"] == {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4}

    def test_tool_calls_rendered(self):
        response = IRChatResponse(
            message=IRMessage(role=Role.ASSISTANT, content=[ToolUsePart(id="call_1", name="f", input={"a": 1})]),
            finish_reason=FinishReason.TOOL_USE,
        )
        result = self.frontend.from_ir(response)
        message = result["choices"][0]["message"]
        assert message["content"] is None
        assert message["tool_calls"][0]["function"] == {"name": "f", "arguments": '{"a": 1}'}
        assert result["choices"][0]["finish_reason"] == "tool_calls"

    @pytest.mark.asyncio
    async def test_stream_rendering(self, chat_request):
        emitter = ChunkEmitter(chat_request)
        chunks = [
            emitter.start(),
            emitter.content("O"),
            emitter.content("K"),
            emitter.metadata(usage=IRUsage(3, 1)),
            emitter.done(),
        ]
        events = [e async for e in self.frontend.from_ir_stream(_agen(chunks))]

        assert events[0]["choices"][0]["delta"] == {"role": "assistant", "content": ""}
        assert [e["choices"][0]["delta"].get("content") for e in events[1:3]] == ["O", "K"]
        assert events[-1]["choices"][0]["finish_reason"] == "stop"
        assert events[-1]["usage"]["total_tokens"] == 4
        assert len({e["id"] for e in events}) == 1

    @pytest.mark.asyncio
    async def test_stream_error_raises_after_partial_output(self, chat_request):
        emitter = ChunkEmitter(chat_request)
        chunks = [emitter.start(), emitter.content("par"), emitter.error(NetworkError("dropped"))]
        received = []
        with pytest.raises(NetworkError):
            async for event in self.frontend.from_ir_stream(_agen(chunks)):
                received.append(event)
        assert len(received) == 2

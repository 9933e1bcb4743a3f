"""
Generic Frontend and Frontend Factory Unit Tests
"""

import pytest

from llm_bridge.common.errors import ValidationError
from llm_bridge.frontends import (
    AnthropicMessagesFrontend,
    GeminiFrontend,
    GenericFrontend,
    OpenAIChatFrontend,
    get_frontend,
)
from llm_bridge.ir.types import (
    ImagePart,
    ImageSourceType,
    IRChatRequest,
    IRMessage,
    IRParameters,
    Role,
    ToolResultPart,
    ToolUsePart,
)
from llm_bridge.providers.anthropic_client import AnthropicClient
from llm_bridge.services.bridge import Bridge


class TestGenericFrontend:
    def setup_method(self):
        self.frontend = GenericFrontend()

    def test_dict_request(self):
        request = self.frontend.to_ir(
            {
                "messages": [{"role": "user", "content": "Say OK"}],
                "parameters": {"model": "x", "max_tokens": 5},
                "metadata": {"trace": "abc"},
            }
        )
        assert request.messages == (IRMessage(role=Role.USER, content="Say OK"),)
        assert request.parameters.max_tokens == 5
        assert request.metadata.custom == {"trace": "abc"}
        assert request.metadata.provenance.frontend == "generic"

    def test_ir_request_passthrough(self):
        request = IRChatRequest(messages=[IRMessage(role=Role.USER, content="hi")], parameters=IRParameters(model="x"))
        converted = self.frontend.to_ir(request)
        assert converted.messages is request.messages
        assert converted.metadata.request_id == request.metadata.request_id

    def test_invalid_role(self):
        with pytest.raises(ValidationError):
            self.frontend.to_ir({"messages": [{"role": "wizard"}], "parameters": {"model": "x"}})

    def test_dict_content_parts(self):
        request = self.frontend.to_ir(
            {
                "messages": [
                    {
                        "role": "user",
                        "content": [{"type": "text", "text": "hi"}, {"type": "image", "url": "https://x/y.png"}],
                    },
                    {
                        "role": "assistant",
                        "content": [{"type": "tool_use", "id": "t1", "name": "lookup", "input": {"q": "hi"}}],
                    },
                    {"role": "tool", "content": [{"type": "tool_result", "tool_use_id": "t1", "content": "found"}]},
                ],
                "parameters": {"model": "x"},
            }
        )
        user, assistant, tool = request.messages
        assert user.get_text_content() == "hi"
        assert isinstance(user.parts[1], ImagePart)
        assert user.parts[1].source_type == ImageSourceType.URL
        assert assistant.get_tool_calls() == (ToolUsePart(id="t1", name="lookup", input={"q": "hi"}),)
        assert tool.parts == (ToolResultPart(tool_use_id="t1", content="found"),)

    def test_base64_image_part(self):
        request = self.frontend.to_ir(
            {
                "messages": [
                    {
                        "role": "user",
                        "content": [{"type": "image", "source_type": "base64", "data": "aGk=", "mime_type": "image/png"}],
                    }
                ],
                "parameters": {"model": "x"},
            }
        )
        part = request.messages[0].parts[0]
        assert part.source_type == ImageSourceType.BASE64
        assert part.mime_type == "image/png"

    @pytest.mark.parametrize(
        "part",
        [
            {"type": "audio", "data": "..."},
            {"type": "text", "body": "hi"},
            {"type": "image", "source_type": "ftp"},
            "hi",
        ],
    )
    def test_invalid_parts_rejected(self, part):
        with pytest.raises(ValidationError):
            self.frontend.to_ir({"messages": [{"role": "user", "content": [part]}], "parameters": {"model": "x"}})

    @pytest.mark.asyncio
    async def test_dict_parts_reach_backend_wire(self, recorder):
        recorder.reply_json(
            {
                "id": "msg_01",
                "type": "message",
                "role": "assistant",
                "content": [{"type": "text", "text": "OK"}],
                "stop_reason": "end_turn",
                "usage": {"input_tokens": 3, "output_tokens": 1},
            }
        )
        backend = AnthropicClient(
            api_key="sk-ant-test-123456", base_url="https://anthropic.test/v1", transport=recorder.transport
        )
        response = await Bridge(self.frontend, backend).chat(
            {"messages": [{"role": "user", "content": [{"type": "text", "text": "hi"}]}], "parameters": {"model": "x"}}
        )
        assert response.text == "OK"
        assert recorder.body()["messages"][0]["content"] == [{"type": "text", "text": "hi"}]


class TestFrontendFactory:
    def test_names(self):
        assert isinstance(get_frontend("openai"), OpenAIChatFrontend)
        assert isinstance(get_frontend("anthropic"), AnthropicMessagesFrontend)
        assert isinstance(get_frontend("gemini"), GeminiFrontend)
        assert isinstance(get_frontend("GENERIC"), GenericFrontend)

    def test_fresh_instances(self):
        assert get_frontend("openai") is not get_frontend("openai")

    def test_unknown(self):
        with pytest.raises(ValueError):
            get_frontend("cohere")

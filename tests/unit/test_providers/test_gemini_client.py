"""
Gemini Backend Unit Tests
"""

import pytest

from llm_bridge.ir.types import (
    ContentChunk,
    FinishReason,
    ImagePart,
    ImageSourceType,
    IRChatRequest,
    IRMessage,
    IRParameters,
    Role,
    TextPart,
    ToolUseChunk,
)
from llm_bridge.providers.gemini_client import GeminiClient
from llm_bridge.stream.validation import validate_chunk_sequence

GENERATE = {
    "candidates": [{"content": {"role": "model", "parts": [{"text": "OK"}]}, "finishReason": "STOP"}],
    "usageMetadata": {"promptTokenCount": 3, "candidatesTokenCount": 1, "totalTokenCount": 4},
    "modelVersion": "gemini-2.0-flash",
    "responseId": "resp-1",
}


def _client(recorder):
    return GeminiClient(api_key="AIza-test-key-123", base_url="https://gemini.test/v1beta", transport=recorder.transport)


async def _drain(stream):
    return [chunk async for chunk in stream]


class TestGeminiClient:
    """Gemini wire format"""

    @pytest.mark.asyncio
    async def test_execute(self, recorder, chat_request):
        recorder.reply_json(GENERATE)
        response = await _client(recorder).execute(chat_request)

        assert response.text == "OK"
        assert response.usage.total_tokens == 4
        assert response.metadata.model == "gemini-2.0-flash"

        sent = recorder.requests[0]
        assert sent.url.path == "/v1beta/models/test-model:generateContent"
        assert sent.url.params["key"] == "AIza-test-key-123"
        body = recorder.body()
        assert body["systemInstruction"] == {"parts": [{"text": "You are terse."}]}
        assert body["contents"] == [{"role": "user", "parts": [{"text": "Say OK"}]}]
        assert body["generationConfig"] == {"temperature": 0.2, "maxOutputTokens": 16}

    @pytest.mark.asyncio
    async def test_roles_and_images(self, recorder):
        recorder.reply_json(GENERATE)
        request = IRChatRequest(
            messages=[
                IRMessage(
                    role=Role.USER,
                    content=[
                        TextPart(text="What is this?"),
                        ImagePart(source_type=ImageSourceType.BASE64, data="data:image/png;base64,AAAA"),
                    ],
                ),
                IRMessage(role=Role.ASSISTANT, content="A square."),
            ],
            parameters=IRParameters(model="models/gemini-pro", top_k=3),
        )
        await _client(recorder).execute(request)

        assert recorder.requests[0].url.path == "/v1beta/models/gemini-pro:generateContent"
        contents = recorder.body()["contents"]
        assert contents[0]["parts"][1] == {"inlineData": {"mimeType": "image/png", "data": "AAAA"}}
        assert contents[1]["role"] == "model"
        assert recorder.body()["generationConfig"]["topK"] == 3

    @pytest.mark.asyncio
    async def test_function_call_response(self, recorder, chat_request):
        recorder.reply_json(
            {"candidates": [{"content": {"parts": [{"functionCall": {"name": "weather", "args": {"city": "Oslo"}}}]}, "finishReason": "STOP"}]}
        )
        response = await _client(recorder).execute(chat_request)
        assert response.finish_reason == FinishReason.TOOL_USE
        call = response.message.get_tool_calls()[0]
        assert call.id == "call_0"
        assert call.input == {"city": "Oslo"}

    @pytest.mark.asyncio
    async def test_stream(self, recorder, chat_request, sse_body):
        recorder.reply_stream(
            sse_body(
                {"candidates": [{"content": {"parts": [{"text": "O"}]}}], "usageMetadata": {"promptTokenCount": 3}},
                {
                    "candidates": [{"content": {"parts": [{"text": "K"}]}, "finishReason": "STOP"}],
                    "usageMetadata": {"promptTokenCount": 3, "candidatesTokenCount": 1},
                },
            )
        )
        chunks = await _drain(_client(recorder).execute_stream(chat_request))

        validate_chunk_sequence(chunks)
        assert "".join(c.delta for c in chunks if isinstance(c, ContentChunk)) == "OK"
        assert chunks[-1].usage.total_tokens == 4
        sent = recorder.requests[0]
        assert sent.url.path.endswith(":streamGenerateContent")
        assert sent.url.params["alt"] == "sse"

    @pytest.mark.asyncio
    async def test_stream_function_calls_get_distinct_ids(self, recorder, chat_request, sse_body):
        recorder.reply_stream(
            sse_body(
                {"candidates": [{"content": {"parts": [{"functionCall": {"name": "a", "args": {}}}]}}]},
                {"candidates": [{"content": {"parts": [{"functionCall": {"name": "b", "args": {"x": 1}}}]}, "finishReason": "STOP"}]},
            )
        )
        chunks = await _drain(_client(recorder).execute_stream(chat_request))
        tool_chunks = [c for c in chunks if isinstance(c, ToolUseChunk)]
        assert [c.id for c in tool_chunks] == ["call_0", "call_1"]
        assert chunks[-1].finish_reason == FinishReason.TOOL_USE

"""
Ollama Backend Unit Tests
"""

import json

import pytest

from llm_bridge.ir.types import ChunkType, ContentChunk, FinishReason
from llm_bridge.providers.ollama_client import OllamaClient
from llm_bridge.stream.validation import validate_chunk_sequence


def _client(recorder):
    return OllamaClient(base_url="http://ollama.test:11434", transport=recorder.transport)


class TestOllamaClient:
    """Ollama wire format"""

    @pytest.mark.asyncio
    async def test_execute_without_api_key(self, recorder, chat_request):
        recorder.reply_json(
            {
                "model": "llama3",
                "message": {"role": "assistant", "content": "OK"},
                "done": True,
                "done_reason": "stop",
                "prompt_eval_count": 3,
                "eval_count": 1,
            }
        )
        response = await _client(recorder).execute(chat_request)

        assert response.text == "OK"
        assert response.usage.total_tokens == 4
        sent = recorder.requests[0]
        assert str(sent.url) == "http://ollama.test:11434/api/chat"
        assert "authorization" not in sent.headers
        body = recorder.body()
        assert body["messages"][0] == {"role": "system", "content": "You are terse."}
        assert body["options"] == {"temperature": 0.2, "num_predict": 16}

    @pytest.mark.asyncio
    async def test_ndjson_stream(self, recorder, chat_request):
        lines = [
            {"message": {"role": "assistant", "content": "O"}, "done": False},
            {"message": {"role": "assistant", "content": "K"}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": True, "done_reason": "length", "prompt_eval_count": 3, "eval_count": 1},
        ]
        body = "".join(json.dumps(line) + "\n" for line in lines)
        recorder.reply_stream([body[:25], body[25:]])

        chunks = [c async for c in _client(recorder).execute_stream(chat_request)]
        validate_chunk_sequence(chunks)
        assert "".join(c.delta for c in chunks if isinstance(c, ContentChunk)) == "OK"
        assert chunks[-1].type == ChunkType.DONE
        assert chunks[-1].finish_reason == FinishReason.LENGTH
        assert chunks[-1].usage.total_tokens == 4

"""
Mock Backend and Provider Factory Unit Tests
"""

import asyncio

import pytest

from llm_bridge.common.errors import NetworkError
from llm_bridge.config import get_settings
from llm_bridge.ir.types import ChunkType, ContentChunk, IRUsage
from llm_bridge.providers import (
    AnthropicClient,
    GeminiClient,
    MockBackend,
    OllamaClient,
    OpenAIClient,
    create_backend,
)
from llm_bridge.stream.validation import validate_chunk_sequence


class TestMockBackend:
    """Scripted backend"""

    @pytest.mark.asyncio
    async def test_scripted_outcomes(self, chat_request):
        backend = MockBackend(responses=[NetworkError("flaky"), "OK"], usage=IRUsage(3, 1))
        with pytest.raises(NetworkError):
            await backend.execute(chat_request)
        response = await backend.execute(chat_request)
        assert response.text == "OK"
        assert response.usage.total_tokens == 4
        assert len(backend.calls) == 2

    @pytest.mark.asyncio
    async def test_stream_equivalence(self, chat_request):
        backend = MockBackend(responses=["Hello there, world"], chunk_size=3)
        chunks = [c async for c in backend.execute_stream(chat_request)]
        validate_chunk_sequence(chunks)
        buffered = await backend.execute(chat_request)
        assert "".join(c.delta for c in chunks if isinstance(c, ContentChunk)) == buffered.text

    @pytest.mark.asyncio
    async def test_stream_cancellation(self, chat_request):
        backend = MockBackend(responses=["abcdefgh"], chunk_size=2)
        cancel = asyncio.Event()
        received = []
        async for chunk in backend.execute_stream(chat_request, cancel_event=cancel):
            received.append(chunk)
            if chunk.type == ChunkType.CONTENT:
                cancel.set()
        assert [c.type for c in received] == [ChunkType.START, ChunkType.CONTENT]

    @pytest.mark.asyncio
    async def test_cancellation_during_delay(self, chat_request):
        backend = MockBackend(responses=["abcdefgh"], chunk_size=2, delay=30)
        cancel = asyncio.Event()
        stream = backend.execute_stream(chat_request, cancel_event=cancel)
        assert (await stream.__anext__()).type == ChunkType.START

        async def pull():
            return await stream.__anext__()

        pending = asyncio.create_task(pull())
        await asyncio.sleep(0.01)
        cancel.set()
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(pending, 1.0)

    @pytest.mark.asyncio
    async def test_health_and_destroy(self):
        backend = MockBackend(healthy=False)
        assert await backend.health_check() is False
        await backend.destroy()
        assert backend.destroyed is True


class TestProviderFactory:
    def test_create_known_backends(self):
        assert isinstance(create_backend("openai", api_key="k"), OpenAIClient)
        assert isinstance(create_backend("Anthropic", api_key="k"), AnthropicClient)
        assert isinstance(create_backend("gemini", api_key="k"), GeminiClient)
        assert isinstance(create_backend("ollama"), OllamaClient)
        assert isinstance(create_backend("mock", responses=["x"]), MockBackend)

    def test_instances_not_shared(self):
        assert create_backend("openai", api_key="k") is not create_backend("openai", api_key="k")

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            create_backend("unknown")

    def test_settings_supply_defaults(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-from-env")
        monkeypatch.setenv("OPENAI_BASE_URL", "https://proxy.test/v1/")
        get_settings.cache_clear()
        client = OpenAIClient()
        assert client.api_key == "sk-from-env"
        assert client.base_url == "https://proxy.test/v1"

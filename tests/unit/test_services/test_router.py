"""
Router Unit Tests
"""

import asyncio
import logging
from typing import AsyncIterator, Optional

import pytest

from llm_bridge.common.errors import AdapterError, NetworkError, ProviderError, RouterError, ValidationError
from llm_bridge.frontends.generic import GenericFrontend
from llm_bridge.frontends.openai_chat import OpenAIChatFrontend
from llm_bridge.ir.types import ChunkType, ContentChunk, IRChatRequest, IRChatResponse, IRStreamChunk
from llm_bridge.providers.base import BackendAdapter
from llm_bridge.providers.mock_client import MockBackend
from llm_bridge.services.bridge import Bridge
from llm_bridge.services.middleware import LoggingMiddleware
from llm_bridge.services.router import (
    EVENT_BACKEND_ERROR,
    EVENT_BACKEND_SELECTED,
    EVENT_BACKEND_SWITCH,
    CircuitState,
    Router,
)
from llm_bridge.stream import ChunkEmitter


def _text(chunks):
    return "".join(c.delta for c in chunks if isinstance(c, ContentChunk))


class BrokenHealthBackend(MockBackend):
    async def health_check(self) -> bool:
        raise RuntimeError("health check crashed")


class DroppingBackend(BackendAdapter):
    name = "dropping"

    def __init__(self):
        self.calls = []

    async def execute(self, request: IRChatRequest) -> IRChatResponse:
        raise NotImplementedError

    async def execute_stream(
        self, request: IRChatRequest, cancel_event: Optional[asyncio.Event] = None
    ) -> AsyncIterator[IRStreamChunk]:
        self.calls.append(request)
        emitter = ChunkEmitter(request, backend=self.name)
        yield emitter.start()
        yield emitter.content("partial")
        yield emitter.error(NetworkError("connection reset"))


class TestRegistration:
    def setup_method(self):
        self.router = Router()

    def test_register_is_chainable(self):
        self.router.register("a", MockBackend()).register("b", MockBackend())
        assert self.router.backends == ["a", "b"]

    def test_duplicate_name_rejected(self):
        self.router.register("a", MockBackend())
        with pytest.raises(RouterError) as exc_info:
            self.router.register("a", MockBackend())
        assert exc_info.value.code == "DUPLICATE_BACKEND"

    def test_unknown_name_rejected(self):
        with pytest.raises(RouterError) as exc_info:
            self.router.unregister("missing")
        assert exc_info.value.code == "UNKNOWN_BACKEND"
        with pytest.raises(RouterError):
            self.router.get_backend("missing")

    def test_unregister(self):
        backend = MockBackend()
        self.router.register("a", backend)
        assert self.router.get_backend("a") is backend
        self.router.unregister("a")
        assert self.router.backends == []

    @pytest.mark.asyncio
    async def test_no_backends(self, chat_request):
        with pytest.raises(RouterError) as exc_info:
            await self.router.execute(chat_request)
        assert exc_info.value.code == "NO_BACKEND_AVAILABLE"

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            Router(strategy="fastest")


class TestRouting:
    """Selection and fallback"""

    def setup_method(self):
        self.events = []

    def _observe(self, router):
        router.on_event(lambda e: self.events.append((e.type, e.backend)))
        return router

    @pytest.mark.asyncio
    async def test_round_robin_fairness(self, chat_request):
        router = Router(strategy="round-robin")
        backends = {name: MockBackend(responses=[name]) for name in ("a", "b", "c")}
        for name, backend in backends.items():
            router.register(name, backend)

        results = await asyncio.gather(*(router.execute(chat_request) for _ in range(30)))

        assert {name: len(b.calls) for name, b in backends.items()} == {"a": 10, "b": 10, "c": 10}
        assert sorted(r.text for r in results) == ["a"] * 10 + ["b"] * 10 + ["c"] * 10

    @pytest.mark.asyncio
    async def test_round_robin_order(self, chat_request):
        router = Router(strategy="round-robin")
        router.register("a", MockBackend(responses=["a"])).register("b", MockBackend(responses=["b"]))
        texts = [(await router.execute(chat_request)).text for _ in range(4)]
        assert texts == ["a", "b", "a", "b"]

    @pytest.mark.asyncio
    async def test_priority_fallback(self, chat_request):
        primary = MockBackend(responses=[ProviderError("overloaded", status_code=503)])
        secondary = MockBackend(responses=["OK"])
        router = self._observe(Router(strategy="priority", fallback_on_error=True))
        router.register("primary", primary, priority=0).register("secondary", secondary, priority=1)

        for _ in range(3):
            response = await router.execute(chat_request)
            assert response.text == "OK"

        assert len(primary.calls) == 3
        assert len(secondary.calls) == 3
        assert primary.calls[0] is chat_request
        assert secondary.calls[0] is chat_request
        assert self.events[:4] == [
            (EVENT_BACKEND_SELECTED, "primary"),
            (EVENT_BACKEND_ERROR, "primary"),
            (EVENT_BACKEND_SWITCH, "secondary"),
            (EVENT_BACKEND_SELECTED, "secondary"),
        ]
        assert router.get_stats()["total_fallbacks"] == 3

    @pytest.mark.asyncio
    async def test_switch_event_carries_previous_backend(self, chat_request):
        router = Router(strategy="priority", fallback_on_error=True)
        router.register("a", MockBackend(responses=[NetworkError("down")])).register("b", MockBackend())
        switches = []
        router.on_event(lambda e: switches.append(e) if e.type == EVENT_BACKEND_SWITCH else None)
        await router.execute(chat_request)
        assert switches[0].previous_backend == "a"
        assert isinstance(switches[0].error, NetworkError)
        assert switches[0].request_id == chat_request.metadata.request_id

    @pytest.mark.asyncio
    async def test_without_fallback_original_error_propagates(self, chat_request):
        secondary = MockBackend()
        router = Router(strategy="priority")
        router.register("a", MockBackend(responses=[ValidationError("bad model")])).register("b", secondary)
        with pytest.raises(ValidationError):
            await router.execute(chat_request)
        assert secondary.calls == []

    @pytest.mark.asyncio
    async def test_all_backends_failed(self, chat_request):
        router = Router(strategy="priority", fallback_on_error=True)
        router.register("a", MockBackend(responses=[ValidationError("bad")]))
        router.register("b", MockBackend(responses=[NetworkError("down")]))
        with pytest.raises(RouterError) as exc_info:
            await router.execute(chat_request)
        error = exc_info.value
        assert error.code == "ALL_BACKENDS_FAILED"
        assert error.attempted_backends == ["a", "b"]
        assert isinstance(error.cause, NetworkError)
        assert error.is_retryable

    @pytest.mark.asyncio
    async def test_fallback_chain_order(self, chat_request):
        a = MockBackend(responses=[NetworkError("a down")])
        b = MockBackend(responses=["from b"])
        c = MockBackend(responses=[NetworkError("c down")])
        router = self._observe(Router(strategy="priority", fallback_on_error=True, fallback_chain=["c", "b"]))
        router.register("a", a).register("b", b).register("c", c)

        response = await router.execute(chat_request)
        assert response.text == "from b"
        selected = [name for kind, name in self.events if kind == EVENT_BACKEND_SELECTED]
        assert selected == ["a", "c", "b"]

    @pytest.mark.asyncio
    async def test_custom_selector(self, chat_request):
        router = Router(strategy="custom", selector=lambda request, names: names.index("b"))
        router.register("a", MockBackend(responses=["a"])).register("b", MockBackend(responses=["b"]))
        assert (await router.execute(chat_request)).text == "b"

    @pytest.mark.asyncio
    async def test_observer_failure_ignored(self, chat_request):
        router = Router()
        router.register("a", MockBackend(responses=["OK"]))

        def broken(event):
            raise ValueError("observer bug")

        router.on_event(broken)
        assert (await router.execute(chat_request)).text == "OK"
        router.remove_listener(broken)

    @pytest.mark.asyncio
    async def test_unexpected_exception_wrapped(self, chat_request):
        router = Router()
        router.register("a", MockBackend(responses=[KeyError("boom")]))
        with pytest.raises(AdapterError) as exc_info:
            await router.execute(chat_request)
        assert exc_info.value.code == "INTERNAL_ERROR"
        assert exc_info.value.provenance == {"backend": "a"}

    @pytest.mark.asyncio
    async def test_router_behind_bridge(self):
        router = Router(strategy="priority", fallback_on_error=True)
        router.register("a", MockBackend(responses=[NetworkError("down")])).register("b", MockBackend(responses=["OK"]))
        bridge = Bridge(OpenAIChatFrontend(), router)
        result = await bridge.chat({"model": "m", "messages": [{"role": "user", "content": "Say OK"}]})
        assert result["choices"][0]["message"]["content"] == "OK"

    @pytest.mark.asyncio
    async def test_response_names_serving_backend(self, chat_request, caplog):
        router = Router(strategy="priority", fallback_on_error=True)
        router.register("primary", MockBackend(responses=[NetworkError("down")]))
        router.register("secondary", MockBackend(responses=["OK"]))
        bridge = Bridge(GenericFrontend(), router).use(LoggingMiddleware())
        caplog.set_level(logging.INFO, logger="llm_bridge")

        response = await bridge.chat(chat_request)
        assert response.metadata.provenance.backend == "secondary"
        assert response.metadata.provenance.frontend == "generic"
        assert "backend=secondary" in caplog.text

        chunks = [c async for c in bridge.chat_stream(chat_request)]
        assert chunks[0].metadata.provenance.backend == "secondary"


class TestRouterStream:
    @pytest.mark.asyncio
    async def test_failover_before_first_chunk(self, chat_request):
        router = Router(strategy="priority", fallback_on_error=True)
        router.register("a", MockBackend(responses=[NetworkError("refused")]))
        router.register("b", MockBackend(responses=["Hello"]))
        chunks = [c async for c in router.execute_stream(chat_request)]
        assert _text(chunks) == "Hello"
        assert chunks[-1].type == ChunkType.DONE
        assert router.get_backend_stats("a").failed_requests == 1
        assert router.get_backend_stats("b").successful_requests == 1

    @pytest.mark.asyncio
    async def test_no_failover_after_output(self, chat_request):
        secondary = MockBackend()
        router = Router(strategy="priority", fallback_on_error=True)
        router.register("a", DroppingBackend()).register("b", secondary)
        chunks = [c async for c in router.execute_stream(chat_request)]
        assert _text(chunks) == "partial"
        assert chunks[-1].type == ChunkType.ERROR
        assert secondary.calls == []
        assert router.get_backend_stats("a").failed_requests == 1

    @pytest.mark.asyncio
    async def test_stream_exhausted(self, chat_request):
        router = Router(strategy="priority", fallback_on_error=True)
        router.register("a", MockBackend(responses=[NetworkError("a")]))
        router.register("b", MockBackend(responses=[NetworkError("b")]))
        with pytest.raises(RouterError) as exc_info:
            async for _ in router.execute_stream(chat_request):
                pass
        assert exc_info.value.attempted_backends == ["a", "b"]


class TestCircuitBreaker:
    def setup_method(self):
        self.now = 0.0
        self.router = Router(
            strategy="priority",
            enable_circuit_breaker=True,
            circuit_breaker_threshold=2,
            circuit_breaker_timeout=30,
            clock=lambda: self.now,
        )

    async def _fail_twice(self, request):
        for _ in range(2):
            with pytest.raises(NetworkError):
                await self.router.execute(request)

    @pytest.mark.asyncio
    async def test_opens_and_recovers(self, chat_request):
        backend = MockBackend(responses=[NetworkError("1"), NetworkError("2"), "OK"])
        self.router.register("a", backend)
        await self._fail_twice(chat_request)
        assert self.router.get_backend_stats("a").circuit_state == CircuitState.OPEN

        with pytest.raises(RouterError) as exc_info:
            await self.router.execute(chat_request)
        assert exc_info.value.code == "NO_BACKEND_AVAILABLE"
        assert len(backend.calls) == 2

        self.now += 31
        assert (await self.router.execute(chat_request)).text == "OK"
        assert self.router.get_backend_stats("a").circuit_state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, chat_request):
        self.router.register("a", MockBackend(responses=[NetworkError("down")]))
        await self._fail_twice(chat_request)
        self.now += 31
        with pytest.raises(NetworkError):
            await self.router.execute(chat_request)
        stats = self.router.get_backend_stats("a")
        assert stats.circuit_state == CircuitState.OPEN
        assert stats.circuit_opened_at == 31

    @pytest.mark.asyncio
    async def test_open_circuit_skipped(self, chat_request):
        primary = MockBackend(responses=[NetworkError("down")])
        self.router.fallback_on_error = True
        self.router.register("a", primary).register("b", MockBackend(responses=["OK"]))
        await self.router.execute(chat_request)
        await self.router.execute(chat_request)
        await self.router.execute(chat_request)
        assert len(primary.calls) == 2


class TestStatsAndHealth:
    @pytest.mark.asyncio
    async def test_stats_and_reset(self, chat_request):
        router = Router(strategy="priority", fallback_on_error=True)
        router.register("a", MockBackend(responses=[NetworkError("down")])).register("b", MockBackend())
        await router.execute(chat_request)

        stats = router.get_stats()
        assert stats["total_requests"] == 1
        assert stats["total_fallbacks"] == 1
        assert stats["backends"]["a"]["failed_requests"] == 1
        assert stats["backends"]["a"]["consecutive_failures"] == 1
        assert stats["backends"]["b"]["successful_requests"] == 1
        assert stats["backends"]["b"]["average_latency_ms"] >= 0

        router.reset_stats()
        stats = router.get_stats()
        assert stats["total_requests"] == 0
        assert stats["backends"]["a"]["total_requests"] == 0

    @pytest.mark.asyncio
    async def test_unhealthy_backend_excluded(self, chat_request):
        sick = MockBackend(responses=["sick"], healthy=False)
        router = Router(strategy="round-robin")
        router.register("sick", sick).register("crashing", BrokenHealthBackend()).register(
            "well", MockBackend(responses=["well"])
        )
        health = await router.check_health()
        assert health == {"sick": False, "crashing": False, "well": True}
        assert await router.health_check()

        for _ in range(3):
            assert (await router.execute(chat_request)).text == "well"
        assert sick.calls == []

    @pytest.mark.asyncio
    async def test_destroy(self):
        a, b = MockBackend(), MockBackend()
        router = Router().register("a", a).register("b", b)
        await router.destroy()
        assert a.destroyed and b.destroyed


class TestParallelDispatch:
    @pytest.mark.asyncio
    async def test_first_success_wins(self, chat_request):
        slow = MockBackend(responses=["slow"], delay=0.5)
        router = Router()
        router.register("slow", slow).register("fast", MockBackend(responses=["fast"], delay=0.01))
        result = await router.dispatch_parallel(chat_request)
        assert result.backend == "fast"
        assert result.response.text == "fast"
        assert router.get_backend_stats("slow").total_requests == 0
        assert router.get_stats()["parallel_requests"] == 1

    @pytest.mark.asyncio
    async def test_failures_reported_alongside_winner(self, chat_request):
        router = Router()
        router.register("bad", MockBackend(responses=[NetworkError("down")]))
        router.register("good", MockBackend(responses=["OK"], delay=0.05))
        result = await router.dispatch_parallel(chat_request)
        assert result.backend == "good"
        assert list(result.failures) == ["bad"]

    @pytest.mark.asyncio
    async def test_all_fail(self, chat_request):
        router = Router()
        router.register("a", MockBackend(responses=[NetworkError("a")]))
        router.register("b", MockBackend(responses=[NetworkError("b")]))
        with pytest.raises(RouterError) as exc_info:
            await router.dispatch_parallel(chat_request)
        assert exc_info.value.code == "ALL_BACKENDS_FAILED"
        assert exc_info.value.attempted_backends == ["a", "b"]

    @pytest.mark.asyncio
    async def test_timeout(self, chat_request):
        router = Router()
        router.register("a", MockBackend(delay=1.0)).register("b", MockBackend(delay=1.0))
        with pytest.raises(RouterError) as exc_info:
            await router.dispatch_parallel(chat_request, timeout=0.05)
        assert exc_info.value.is_retryable

    @pytest.mark.asyncio
    async def test_subset_and_unknown_names(self, chat_request):
        unused = MockBackend()
        router = Router().register("a", MockBackend(responses=["a"])).register("b", unused)
        result = await router.dispatch_parallel(chat_request, backends=["a"])
        assert result.backend == "a"
        assert unused.calls == []
        with pytest.raises(RouterError) as exc_info:
            await router.dispatch_parallel(chat_request, backends=["a", "zzz"])
        assert exc_info.value.code == "UNKNOWN_BACKEND"

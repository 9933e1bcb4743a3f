"""
Mock Backend

Scripted, network-free backend for tests, demos and router drills.
"""

import asyncio
import logging
from typing import AsyncIterator, Callable, Optional, Sequence, Union

from llm_bridge.ir.types import (
    FinishReason,
    IRChatRequest,
    IRChatResponse,
    IRMessage,
    IRResponseMetadata,
    IRStreamChunk,
    IRUsage,
    Role,
)
from llm_bridge.providers.base import BackendAdapter
from llm_bridge.stream import ChunkEmitter

logger = logging.getLogger(__name__)

Outcome = Union[str, IRChatResponse, BaseException]


class MockBackend(BackendAdapter):
    """
    Mock Backend

    Each call consumes the next scripted outcome (the last one repeats):
    a string becomes the assistant text, an exception is raised, and an
    IRChatResponse is returned as-is. ``handler`` replaces the script with
    a function of the request.

    Streams split the text into ``chunk_size`` character deltas, so the
    concatenated deltas always equal the buffered text.
    """

    name = "mock"

    def __init__(
        self,
        responses: Optional[Sequence[Outcome]] = None,
        handler: Optional[Callable[[IRChatRequest], Outcome]] = None,
        name: Optional[str] = None,
        usage: Optional[IRUsage] = None,
        finish_reason: FinishReason = FinishReason.STOP,
        chunk_size: int = 4,
        delay: float = 0.0,
        healthy: bool = True,
    ):
        if name:
            self.name = name
        self.responses = list(responses) if responses else ["Mock response"]
        self.handler = handler
        self.usage = usage
        self.finish_reason = finish_reason
        self.chunk_size = max(1, chunk_size)
        self.delay = delay
        self.healthy = healthy
        self.calls: list[IRChatRequest] = []
        self.destroyed = False
        self._cursor = 0

    def _next_outcome(self, request: IRChatRequest) -> Outcome:
        if self.handler is not None:
            return self.handler(request)
        outcome = self.responses[min(self._cursor, len(self.responses) - 1)]
        self._cursor += 1
        return outcome

    def _usage_for(self, request: IRChatRequest, text: str) -> IRUsage:
        if self.usage is not None:
            return IRUsage(self.usage.prompt_tokens, self.usage.completion_tokens)
        prompt = sum(len(m.get_text_content().split()) for m in request.messages)
        return IRUsage(prompt_tokens=prompt, completion_tokens=len(text.split()))

    async def execute(self, request: IRChatRequest) -> IRChatResponse:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self._next_outcome(request)
        if isinstance(outcome, BaseException):
            logger.debug("%s raising scripted %s", self.name, type(outcome).__name__)
            raise outcome
        if isinstance(outcome, IRChatResponse):
            return outcome
        return IRChatResponse(
            message=IRMessage(role=Role.ASSISTANT, content=outcome),
            finish_reason=self.finish_reason,
            usage=self._usage_for(request, outcome),
            metadata=IRResponseMetadata.for_request(request, backend=self.name),
        )

    async def execute_stream(
        self,
        request: IRChatRequest,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[IRStreamChunk]:
        self.calls.append(request)
        outcome = self._next_outcome(request)
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, IRChatResponse):
            text, usage, reason = outcome.text, outcome.usage, outcome.finish_reason
        else:
            text, usage, reason = outcome, self._usage_for(request, outcome), self.finish_reason

        emitter = ChunkEmitter(request, backend=self.name)
        yield emitter.start()
        for offset in range(0, len(text), self.chunk_size):
            if self.delay and not await self._pause(cancel_event):
                return
            if cancel_event is not None and cancel_event.is_set():
                return
            yield emitter.content(text[offset:offset + self.chunk_size])
        yield emitter.done(finish_reason=reason, usage=usage)

    async def _pause(self, cancel_event: Optional[asyncio.Event]) -> bool:
        """Sleep between chunks; False when cancel_event is set during the pause."""
        if cancel_event is None:
            await asyncio.sleep(self.delay)
            return True
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=self.delay)
        except asyncio.TimeoutError:
            return True
        return False

    async def health_check(self) -> bool:
        return self.healthy

    async def destroy(self) -> None:
        self.destroyed = True

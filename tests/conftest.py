"""
Test Configuration Module
"""

import asyncio
import json
from typing import Any, AsyncIterator, Optional, Union

import httpx
import pytest

from llm_bridge.config import get_settings
from llm_bridge.ir.types import IRChatRequest, IRMessage, IRParameters, Role


async def _aiter(pieces: list[Any]) -> AsyncIterator[bytes]:
    for piece in pieces:
        if isinstance(piece, asyncio.Event):
            # Stall the body until the test releases it
            await piece.wait()
            continue
        yield piece


class TransportRecorder:
    """
    Scripted httpx transport

    Replies are consumed in order (the last one repeats) and every request
    is recorded, so tests can assert on the exact wire payload.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self._replies: list[Any] = []
        self._cursor = 0

    def reply_json(self, payload: Any, status_code: int = 200, headers: Optional[dict[str, str]] = None):
        self._replies.append(("json", status_code, payload, headers or {}))
        return self

    def reply_stream(self, pieces: Union[str, list[Union[str, bytes, asyncio.Event]]], status_code: int = 200):
        """Stream a body; each list item arrives as a separate read, an Event stalls until set."""
        if isinstance(pieces, str):
            pieces = [pieces]
        raw = [p.encode("utf-8") if isinstance(p, str) else p for p in pieces]
        self._replies.append(("stream", status_code, raw, {"content-type": "text/event-stream"}))
        return self

    def reply_text(self, text: str, status_code: int = 200):
        self._replies.append(("text", status_code, text, {}))
        return self

    def raise_error(self, error: Exception):
        self._replies.append(("raise", 0, error, {}))
        return self

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        kind, status_code, value, headers = self._replies[min(self._cursor, len(self._replies) - 1)]
        self._cursor += 1
        if kind == "raise":
            raise value
        if kind == "json":
            return httpx.Response(status_code, json=value, headers=headers)
        if kind == "text":
            return httpx.Response(status_code, text=value, headers=headers)
        return httpx.Response(status_code, content=_aiter(value), headers=headers)

    def body(self, index: int = -1) -> dict[str, Any]:
        return json.loads(self.requests[index].content)


def sse(*events: Any, done: bool = False) -> str:
    """Encode events as an SSE body; (name, payload) tuples get an event line."""
    lines = []
    for event in events:
        if isinstance(event, tuple):
            name, payload = event
            lines.append(f"event: {name}\ndata: {json.dumps(payload)}\n\n")
        else:
            lines.append(f"data: {json.dumps(event)}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines)


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    """Keep provider keys from the environment out of the tests"""
    for name in ("OPENAI_API_KEY", "ANTHROPIC_API_KEY", "GEMINI_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def recorder() -> TransportRecorder:
    return TransportRecorder()


@pytest.fixture
def sse_body():
    return sse


@pytest.fixture
def chat_request() -> IRChatRequest:
    return IRChatRequest(
        messages=[
            IRMessage(role=Role.SYSTEM, content="You are terse."),
            IRMessage(role=Role.USER, content="Say OK"),
        ],
        parameters=IRParameters(model="test-model", max_tokens=16, temperature=0.2),
    )

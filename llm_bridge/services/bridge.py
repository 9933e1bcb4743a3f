"""
Bridge Service Module

Pairs one frontend with one backend (a single provider or a Router) and
runs the middleware chain around every call:

    native request -> frontend.to_ir -> middleware -> backend -> middleware -> frontend.from_ir
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Sequence

from llm_bridge.common.errors import AdapterError, NetworkError, ValidationError
from llm_bridge.frontends.base import FrontendAdapter
from llm_bridge.ir.types import IRChatRequest, IRChatResponse, IRStreamChunk
from llm_bridge.providers.base import BackendAdapter
from llm_bridge.services.middleware import Middleware, compose, compose_stream

logger = logging.getLogger(__name__)


class Bridge:
    """
    Bridge

    Usage:
        bridge = Bridge(OpenAIChatFrontend(), AnthropicClient(api_key=...))
        bridge.use(LoggingMiddleware()).use(RetryMiddleware())
        response = await bridge.chat({"model": "...", "messages": [...]})
    """

    def __init__(
        self,
        frontend: FrontendAdapter,
        backend: BackendAdapter,
        middleware: Optional[Sequence[Middleware]] = None,
        timeout: Optional[float] = None,
    ):
        """
        Initialize bridge

        Args:
            frontend: Input/output format
            backend: Provider adapter or Router
            middleware: Initial middleware, outermost first
            timeout: Overall deadline for a buffered chat call, in seconds
        """
        self.frontend = frontend
        self.backend = backend
        self.middleware: list[Middleware] = list(middleware or [])
        self.timeout = timeout

    def use(self, middleware: Middleware) -> "Bridge":
        """Append a middleware; it wraps the backend inside all earlier ones."""
        self.middleware.append(middleware)
        return self

    def to_ir(self, request: Any) -> IRChatRequest:
        """
        Convert the caller's request into IR with provenance filled in

        Raises:
            ValidationError: Request has no model or no messages
        """
        if isinstance(request, IRChatRequest):
            if not request.parameters.model:
                raise ValidationError("Request is missing a model identifier", provenance=self.frontend.provenance)
            if not request.messages:
                raise ValidationError(
                    "Request must contain at least one message", provenance=self.frontend.provenance
                )
            ir_request = request
        else:
            ir_request = self.frontend.to_ir(request)
        provenance = ir_request.metadata.provenance
        return ir_request.with_provenance(
            frontend=provenance.frontend or self.frontend.name,
            backend=provenance.backend or self.backend.name,
        )

    async def _execute(self, request: IRChatRequest) -> IRChatResponse:
        try:
            return await self.backend.execute(request)
        except AdapterError:
            raise
        except Exception as e:
            raise AdapterError(
                f"Backend '{self.backend.name}' failed unexpectedly: {str(e)}",
                provenance=self.backend.provenance,
                cause=e,
            ) from e

    async def _execute_stream(
        self, request: IRChatRequest, cancel_event: Optional[asyncio.Event]
    ) -> AsyncIterator[IRStreamChunk]:
        try:
            async for chunk in self.backend.execute_stream(request, cancel_event):
                yield chunk
        except AdapterError:
            raise
        except Exception as e:
            raise AdapterError(
                f"Backend '{self.backend.name}' stream failed unexpectedly: {str(e)}",
                provenance=self.backend.provenance,
                cause=e,
            ) from e

    async def chat_ir(self, request: Any) -> IRChatResponse:
        """Run a buffered call and return the IR response without rendering it."""
        ir_request = self.to_ir(request)
        if ir_request.stream:
            ir_request = ir_request.copy_with(stream=False)
        handler = compose(self.middleware, self._execute)
        logger.debug(
            "Bridge chat: request=%s frontend=%s backend=%s model=%s",
            ir_request.metadata.request_id,
            self.frontend.name,
            self.backend.name,
            ir_request.model,
        )
        if self.timeout is None:
            return await handler(ir_request)
        try:
            return await asyncio.wait_for(handler(ir_request), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise NetworkError(
                f"Request timeout: no response within {self.timeout}s",
                provenance=self.backend.provenance,
                cause=e,
            )

    async def chat(self, request: Any) -> Any:
        """
        Buffered chat call

        Args:
            request: Frontend-native request body, or an IRChatRequest

        Returns:
            The frontend-native response

        Raises:
            AdapterError: Any failure not recovered by middleware
        """
        response = await self.chat_ir(request)
        return self.frontend.from_ir(response)

    def chat_stream_ir(
        self, request: Any, cancel_event: Optional[asyncio.Event] = None
    ) -> AsyncIterator[IRStreamChunk]:
        """Run a streaming call and return the raw IR chunk stream."""
        ir_request = self.to_ir(request)
        if not ir_request.stream:
            ir_request = ir_request.copy_with(stream=True)
        handler = compose_stream(self.middleware, lambda r: self._execute_stream(r, cancel_event))
        logger.debug(
            "Bridge stream: request=%s frontend=%s backend=%s model=%s",
            ir_request.metadata.request_id,
            self.frontend.name,
            self.backend.name,
            ir_request.model,
        )
        return handler(ir_request)

    async def chat_stream(
        self, request: Any, cancel_event: Optional[asyncio.Event] = None
    ) -> AsyncIterator[Any]:
        """
        Streaming chat call

        Yields frontend-native chunks. A stream that fails after it started
        yields what was produced and then raises the failure.
        """
        chunks = self.chat_stream_ir(request, cancel_event)
        try:
            async for item in self.frontend.from_ir_stream(chunks):
                yield item
        finally:
            await chunks.aclose()

    async def destroy(self) -> None:
        await self.backend.destroy()

    async def __aenter__(self) -> "Bridge":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.destroy()

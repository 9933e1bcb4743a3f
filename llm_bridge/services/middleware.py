"""
Middleware Module

Chain-of-responsibility interceptors around the backend call. Middleware
registered first sees the request first and the response last (onion
model). Errors propagate outward unless a middleware recovers from them.
"""

import asyncio
import dataclasses
import hashlib
import json
import logging
import random
import time
from collections import OrderedDict
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Sequence

from llm_bridge.common.errors import AdapterError, MiddlewareError, RateLimitError
from llm_bridge.common.sanitizer import sanitize_payload
from llm_bridge.config import get_settings
from llm_bridge.ir.types import (
    ChunkType,
    ErrorChunk,
    IRChatRequest,
    IRChatResponse,
    IRStreamChunk,
    is_terminal,
)

logger = logging.getLogger(__name__)

NextFn = Callable[[IRChatRequest], Awaitable[IRChatResponse]]
StreamNextFn = Callable[[IRChatRequest], AsyncIterator[IRStreamChunk]]


class Middleware:
    """
    Middleware Base Class

    The default implementation passes everything through. Override
    ``__call__`` for buffered requests and ``stream`` for streaming ones.
    """

    name: str = "middleware"

    async def __call__(self, request: IRChatRequest, next_fn: NextFn) -> IRChatResponse:
        return await next_fn(request)

    def stream(self, request: IRChatRequest, next_fn: StreamNextFn) -> AsyncIterator[IRStreamChunk]:
        return next_fn(request)


def _wrap(middleware: Middleware, next_fn: NextFn) -> NextFn:
    async def call(request: IRChatRequest) -> IRChatResponse:
        try:
            return await middleware(request, next_fn)
        except AdapterError:
            raise
        except Exception as e:
            raise MiddlewareError(
                f"Middleware '{middleware.name}' failed: {str(e)}", middleware=middleware.name, cause=e
            ) from e

    return call


def _wrap_stream(middleware: Middleware, next_fn: StreamNextFn) -> StreamNextFn:
    async def call(request: IRChatRequest) -> AsyncIterator[IRStreamChunk]:
        try:
            async for chunk in middleware.stream(request, next_fn):
                yield chunk
        except AdapterError:
            raise
        except Exception as e:
            raise MiddlewareError(
                f"Middleware '{middleware.name}' failed: {str(e)}", middleware=middleware.name, cause=e
            ) from e

    return call


def compose(middlewares: Sequence[Middleware], handler: NextFn) -> NextFn:
    """Wrap ``handler`` so middlewares[0] is the outermost layer."""
    fn = handler
    for middleware in reversed(middlewares):
        fn = _wrap(middleware, fn)
    return fn


def compose_stream(middlewares: Sequence[Middleware], handler: StreamNextFn) -> StreamNextFn:
    fn = handler
    for middleware in reversed(middlewares):
        fn = _wrap_stream(middleware, fn)
    return fn


class LoggingMiddleware(Middleware):
    """
    Logging Middleware

    Logs request summaries, response summaries and failures. Custom
    metadata is sanitized before logging.
    """

    name = "logging"

    def __init__(
        self,
        log: Optional[logging.Logger] = None,
        level: int = logging.INFO,
        include_content: bool = False,
    ):
        self.log = log or logger
        self.level = level
        self.include_content = include_content

    def _log_request(self, request: IRChatRequest, streaming: bool) -> None:
        extra = ""
        if self.include_content:
            extra = " messages=%s" % json.dumps(
                [{"role": m.role.value, "content": m.get_text_content()} for m in request.messages],
                ensure_ascii=False,
            )
        self.log.log(
            self.level,
            "Request %s: stream=%s params=%s metadata=%s message_count=%d%s",
            request.metadata.request_id,
            streaming,
            request.parameters.to_dict(),
            sanitize_payload(request.metadata.custom),
            len(request.messages),
            extra,
        )

    async def __call__(self, request: IRChatRequest, next_fn: NextFn) -> IRChatResponse:
        self._log_request(request, streaming=False)
        started = time.perf_counter()
        try:
            response = await next_fn(request)
        except AdapterError as e:
            self.log.warning(
                "Request %s failed after %dms: code=%s retryable=%s message=%s",
                request.metadata.request_id,
                (time.perf_counter() - started) * 1000,
                e.code,
                e.is_retryable,
                e.message,
            )
            raise
        usage = response.usage
        self.log.log(
            self.level,
            "Response %s: backend=%s finish_reason=%s prompt_tokens=%s completion_tokens=%s duration_ms=%d",
            request.metadata.request_id,
            response.metadata.provenance.backend,
            response.finish_reason.value,
            usage.prompt_tokens if usage else None,
            usage.completion_tokens if usage else None,
            (time.perf_counter() - started) * 1000,
        )
        return response

    async def stream(self, request: IRChatRequest, next_fn: StreamNextFn) -> AsyncIterator[IRStreamChunk]:
        self._log_request(request, streaming=True)
        started = time.perf_counter()
        count = 0
        try:
            async for chunk in next_fn(request):
                count += 1
                if isinstance(chunk, ErrorChunk):
                    self.log.warning(
                        "Stream %s failed after %d chunks: %s",
                        request.metadata.request_id,
                        count,
                        chunk.error.message if chunk.error else "unknown error",
                    )
                elif chunk.type == ChunkType.DONE:
                    self.log.log(
                        self.level,
                        "Stream %s done: chunks=%d finish_reason=%s duration_ms=%d",
                        request.metadata.request_id,
                        count,
                        chunk.finish_reason.value,
                        (time.perf_counter() - started) * 1000,
                    )
                yield chunk
        except AdapterError as e:
            self.log.warning("Stream %s failed: code=%s message=%s", request.metadata.request_id, e.code, e.message)
            raise


class RetryMiddleware(Middleware):
    """
    Retry Middleware

    Retries retryable errors with exponential backoff:
    delay = min(initial * multiplier ** (attempt - 1), max_delay), then
    jittered into [delay / 2, delay]. A rate limit ``retry_after`` raises
    the delay to at least that value. Streams are only retried until the
    first chunk has been delivered.
    """

    name = "retry"

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        initial_delay_ms: Optional[int] = None,
        backoff_multiplier: Optional[float] = None,
        max_delay_ms: Optional[int] = None,
        jitter: bool = True,
        should_retry: Optional[Callable[[AdapterError, int], bool]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        settings = get_settings()
        self.max_attempts = max_attempts if max_attempts is not None else settings.RETRY_MAX_ATTEMPTS
        self.initial_delay_ms = initial_delay_ms if initial_delay_ms is not None else settings.RETRY_DELAY_MS
        self.backoff_multiplier = (
            backoff_multiplier if backoff_multiplier is not None else settings.RETRY_BACKOFF_MULTIPLIER
        )
        self.max_delay_ms = max_delay_ms if max_delay_ms is not None else settings.RETRY_MAX_DELAY_MS
        self.jitter = jitter
        self.should_retry = should_retry
        self._sleep = sleep
        self._rng = rng or random.Random()

    def compute_delay_ms(self, attempt: int, error: Optional[AdapterError] = None) -> float:
        """
        Backoff before the next attempt

        Args:
            attempt: 1-based number of the attempt that just failed
            error: The failure, consulted for retry-after hints
        """
        delay = min(self.initial_delay_ms * self.backoff_multiplier ** (attempt - 1), self.max_delay_ms)
        if self.jitter:
            delay = self._rng.uniform(delay / 2, delay)
        if isinstance(error, RateLimitError) and error.retry_after:
            delay = min(max(delay, error.retry_after * 1000), self.max_delay_ms)
        return delay

    def _retryable(self, error: AdapterError, attempt: int) -> bool:
        if attempt >= self.max_attempts:
            return False
        if self.should_retry is not None:
            return self.should_retry(error, attempt)
        return error.is_retryable

    async def _backoff(self, request: IRChatRequest, error: AdapterError, attempt: int) -> None:
        delay_ms = self.compute_delay_ms(attempt, error)
        logger.warning(
            "Retrying request %s (attempt %d/%d) in %dms: code=%s message=%s",
            request.metadata.request_id,
            attempt + 1,
            self.max_attempts,
            delay_ms,
            error.code,
            error.message,
        )
        await self._sleep(delay_ms / 1000)

    async def __call__(self, request: IRChatRequest, next_fn: NextFn) -> IRChatResponse:
        attempt = 1
        while True:
            try:
                return await next_fn(request)
            except AdapterError as e:
                if not self._retryable(e, attempt):
                    raise
                await self._backoff(request, e, attempt)
                attempt += 1

    async def stream(self, request: IRChatRequest, next_fn: StreamNextFn) -> AsyncIterator[IRStreamChunk]:
        attempt = 1
        while True:
            chunks = next_fn(request)
            try:
                first = await chunks.__anext__()
            except StopAsyncIteration:
                return
            except AdapterError as e:
                await chunks.aclose()
                if not self._retryable(e, attempt):
                    raise
                await self._backoff(request, e, attempt)
                attempt += 1
                continue

            try:
                yield first
                async for chunk in chunks:
                    yield chunk
            finally:
                await chunks.aclose()
            return


class CachingMiddleware(Middleware):
    """
    Caching Middleware

    In-memory LRU cache of buffered responses keyed by a sha256 of model,
    messages, parameters and tools. Streaming requests bypass the cache.
    """

    name = "caching"

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        max_size: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.CACHE_TTL_SECONDS
        self.max_size = max_size if max_size is not None else settings.CACHE_MAX_SIZE
        self._clock = clock
        self._entries: "OrderedDict[str, tuple[float, IRChatResponse]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def cache_key(request: IRChatRequest) -> str:
        payload = {
            "model": request.parameters.model,
            "messages": [dataclasses.asdict(m) for m in request.messages],
            "parameters": request.parameters.to_dict(),
            "tools": [dataclasses.asdict(t) for t in request.tools or ()],
        }
        canonical = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    async def __call__(self, request: IRChatRequest, next_fn: NextFn) -> IRChatResponse:
        if request.stream:
            return await next_fn(request)

        key = self.cache_key(request)
        entry = self._entries.get(key)
        now = self._clock()
        if entry is not None:
            expires_at, response = entry
            if expires_at > now:
                self._entries.move_to_end(key)
                self.hits += 1
                logger.debug("Cache hit: request=%s key=%s", request.metadata.request_id, key[:12])
                return self._tagged(response, request, key, hit=True)
            del self._entries[key]

        self.misses += 1
        response = await next_fn(request)
        self._entries[key] = (self._clock() + self.ttl_seconds, response)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)
        return self._tagged(response, request, key, hit=False)

    @staticmethod
    def _tagged(response: IRChatResponse, request: IRChatRequest, key: str, hit: bool) -> IRChatResponse:
        """Copy of the response attributed to this request, with cache_hit and cache_key in custom metadata."""
        metadata = dataclasses.replace(
            response.metadata,
            request_id=request.metadata.request_id,
            custom={**response.metadata.custom, "cache_hit": hit, "cache_key": key},
        )
        return dataclasses.replace(response, metadata=metadata)


class TransformMiddleware(Middleware):
    """
    Transform Middleware

    ``transform_request`` must return an IRChatRequest (use
    ``request.copy_with``). ``transform_chunk`` may return None to drop a
    content, tool_use or metadata chunk; start and terminal chunks are
    always delivered.
    """

    name = "transform"

    def __init__(
        self,
        transform_request: Optional[Callable[[IRChatRequest], IRChatRequest]] = None,
        transform_response: Optional[Callable[[IRChatResponse], IRChatResponse]] = None,
        transform_chunk: Optional[Callable[[IRStreamChunk], Optional[IRStreamChunk]]] = None,
    ):
        self.transform_request = transform_request
        self.transform_response = transform_response
        self.transform_chunk = transform_chunk

    def _apply_request(self, request: IRChatRequest) -> IRChatRequest:
        if self.transform_request is None:
            return request
        transformed = self.transform_request(request)
        if not isinstance(transformed, IRChatRequest):
            raise MiddlewareError("transform_request must return an IRChatRequest", middleware=self.name)
        return transformed

    async def __call__(self, request: IRChatRequest, next_fn: NextFn) -> IRChatResponse:
        response = await next_fn(self._apply_request(request))
        if self.transform_response is not None:
            response = self.transform_response(response)
        return response

    async def stream(self, request: IRChatRequest, next_fn: StreamNextFn) -> AsyncIterator[IRStreamChunk]:
        async for chunk in next_fn(self._apply_request(request)):
            if self.transform_chunk is None:
                yield chunk
                continue
            transformed = self.transform_chunk(chunk)
            if transformed is None:
                if chunk.type == ChunkType.START or is_terminal(chunk):
                    yield chunk
                continue
            yield transformed

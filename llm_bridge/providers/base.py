"""
Backend Adapter Base Classes

Defines the abstract interface every backend implements, and the shared
HTTP machinery (request building, error classification, stream
normalization) used by the provider-specific clients.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Iterable, Optional, Union

import httpx

from llm_bridge.common.errors import (
    AdapterError,
    NetworkError,
    ProviderError,
    StreamError,
    ValidationError,
    error_from_status,
)
from llm_bridge.common.sanitizer import sanitize_headers, sanitize_url
from llm_bridge.common.system_message import SystemMessageStrategy
from llm_bridge.common.timer import Timer
from llm_bridge.config import get_settings
from llm_bridge.ir.types import IRChatRequest, IRChatResponse, IRStreamChunk
from llm_bridge.stream import ChunkEmitter, NDJSONParser, SSEEvent, SSEParser

logger = logging.getLogger(__name__)


class BackendAdapter(ABC):
    """
    Backend Adapter Abstract Base Class

    Executes IR requests against one provider. Implementations hold no
    per-request state: every call builds and sends a fresh request.
    """

    # Short identifier used in provenance and logs
    name: str = "backend"
    system_message_strategy: SystemMessageStrategy = SystemMessageStrategy.IN_MESSAGES

    @property
    def provenance(self) -> dict[str, str]:
        return {"backend": self.name}

    @abstractmethod
    async def execute(self, request: IRChatRequest) -> IRChatResponse:
        """
        Execute a buffered request

        Raises:
            ValidationError: Missing credentials or invalid request
            AuthenticationError: Credentials rejected
            RateLimitError: Provider backpressure
            NetworkError: Transport failure or timeout
            ProviderError: Other non-2xx responses
        """

    @abstractmethod
    def execute_stream(
        self,
        request: IRChatRequest,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[IRStreamChunk]:
        """
        Execute a streaming request

        Returns a lazy, non-restartable async iterator of IR chunks. Setting
        ``cancel_event`` stops the stream at the next read; no further
        chunks are produced and the connection is released.
        """

    async def health_check(self) -> bool:
        return True

    async def destroy(self) -> None:
        """Release held resources. Stateless HTTP backends have none."""


class HTTPBackendAdapter(BackendAdapter):
    """
    HTTP Backend Adapter

    Subclasses describe the wire format (URL, headers, body, response and
    stream event mapping); this class performs the call. The HTTP transport
    is injectable so tests can replay recorded provider traffic.
    """

    requires_api_key: bool = True
    # "sse" or "ndjson"
    stream_framing: str = "sse"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        """
        Initialize adapter

        Args:
            api_key: Provider API key
            base_url: Provider base URL (defaults from settings)
            timeout: Request timeout in seconds (defaults from settings)
            transport: httpx transport, e.g. httpx.MockTransport in tests
            headers: Extra headers sent with every request
        """
        settings = get_settings()
        self.api_key = api_key
        self.base_url = (base_url or "").rstrip("/")
        self.timeout = timeout if timeout is not None else settings.HTTP_TIMEOUT
        self.connect_timeout = min(settings.HTTP_CONNECT_TIMEOUT, self.timeout)
        self.transport = transport
        self.extra_headers = dict(headers or {})

    # ------------------------------------------------------------------
    # Wire format hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def build_url(self, request: IRChatRequest, stream: bool) -> str:
        """Full endpoint URL for a chat call."""

    @abstractmethod
    def build_headers(self) -> dict[str, str]:
        """Provider authentication and version headers."""

    @abstractmethod
    def build_request_body(self, request: IRChatRequest, stream: bool) -> dict[str, Any]:
        """Serialize an IR request into the provider's JSON body."""

    @abstractmethod
    def parse_response(
        self, payload: dict[str, Any], request: IRChatRequest, latency_ms: Optional[float] = None
    ) -> IRChatResponse:
        """Parse a buffered provider response into IR."""

    @abstractmethod
    def map_stream_event(self, event: SSEEvent, emitter: ChunkEmitter) -> Iterable[IRStreamChunk]:
        """Map one decoded stream event onto zero or more IR chunks."""

    def health_check_url(self) -> Optional[str]:
        return None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _create_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout),
            transport=self.transport,
        )

    def _check_credentials(self) -> None:
        if self.requires_api_key and not self.api_key:
            raise ValidationError(
                f"{self.name} backend requires an API key",
                provenance=self.provenance,
            )

    def _prepare(self, request: IRChatRequest, stream: bool) -> tuple[str, dict[str, str], dict[str, Any]]:
        self._check_credentials()
        url = self.build_url(request, stream)
        headers = {"Content-Type": "application/json", **self.extra_headers, **self.build_headers()}
        body = self.build_request_body(request, stream)
        logger.debug(
            "%s %sRequest: url=%s headers=%s body=%s",
            self.name,
            "Stream " if stream else "",
            sanitize_url(url),
            sanitize_headers(headers),
            json.dumps(body, ensure_ascii=False, default=str),
        )
        return url, headers, body

    @staticmethod
    def _read_error_body(response: httpx.Response) -> Union[dict[str, Any], str]:
        try:
            return response.json()
        except ValueError:
            return response.text

    def _raise_for_status(self, response: httpx.Response) -> None:
        if 200 <= response.status_code < 300:
            return
        error = error_from_status(
            response.status_code,
            self._read_error_body(response),
            provenance=self.provenance,
            headers=dict(response.headers),
        )
        logger.warning(
            "%s returned HTTP %s: %s", self.name, response.status_code, error.message
        )
        raise error

    async def execute(self, request: IRChatRequest) -> IRChatResponse:
        url, headers, body = self._prepare(request, stream=False)
        timer = Timer().start()

        try:
            async with self._create_client() as client:
                response = await asyncio.wait_for(
                    client.post(url, headers=headers, json=body),
                    timeout=self.timeout,
                )
                timer.mark_first_byte()
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            timer.stop()
            raise NetworkError(
                f"Request timeout: {str(e) or 'no response within ' + str(self.timeout) + 's'}",
                provenance=self.provenance,
                cause=e,
            )
        except httpx.RequestError as e:
            timer.stop()
            raise NetworkError(f"Request error: {str(e)}", provenance=self.provenance, cause=e)

        timer.stop()
        self._raise_for_status(response)

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError(
                "Provider returned a non-JSON body",
                provenance=self.provenance,
                details={"body": response.text[:500]},
                status_code=response.status_code,
                is_retryable=False,
            ) from e

        logger.debug(
            "%s Response: status=%s first_byte_ms=%s total_time_ms=%s",
            self.name,
            response.status_code,
            timer.first_byte_delay_ms,
            timer.total_time_ms,
        )
        return self.parse_response(payload, request, latency_ms=timer.total_time_ms)

    async def execute_stream(
        self,
        request: IRChatRequest,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[IRStreamChunk]:
        url, headers, body = self._prepare(request, stream=True)
        timer = Timer().start()
        client = self._create_client()
        response: Optional[httpx.Response] = None

        try:
            try:
                http_request = client.build_request("POST", url, headers=headers, json=body)
                response = await asyncio.wait_for(
                    client.send(http_request, stream=True),
                    timeout=self.timeout,
                )
            except (httpx.TimeoutException, asyncio.TimeoutError) as e:
                raise NetworkError(
                    f"Request timeout: {str(e) or 'no response within ' + str(self.timeout) + 's'}",
                    provenance=self.provenance,
                    cause=e,
                )
            except httpx.RequestError as e:
                raise NetworkError(f"Request error: {str(e)}", provenance=self.provenance, cause=e)

            if not 200 <= response.status_code < 300:
                await response.aread()
                self._raise_for_status(response)

            emitter = ChunkEmitter(request, backend=self.name)
            parser = NDJSONParser() if self.stream_framing == "ndjson" else SSEParser()
            yield emitter.start()

            async for chunk in self._normalize(response, parser, emitter, timer, cancel_event):
                yield chunk
        finally:
            # Runs on normal exit, error, and when the consumer stops early
            timer.stop()
            if response is not None:
                await response.aclose()
            await client.aclose()
            logger.debug(
                "%s Stream closed: first_byte_ms=%s total_time_ms=%s",
                self.name,
                timer.first_byte_delay_ms,
                timer.total_time_ms,
            )

    async def _normalize(
        self,
        response: httpx.Response,
        parser: Union[SSEParser, NDJSONParser],
        emitter: ChunkEmitter,
        timer: Timer,
        cancel_event: Optional[asyncio.Event],
    ) -> AsyncIterator[IRStreamChunk]:
        reader = response.aiter_bytes()
        try:
            while True:
                try:
                    raw = await self._next_read(reader, cancel_event)
                except StopAsyncIteration:
                    break
                if raw is None:
                    logger.info("%s stream cancelled by caller", self.name)
                    return
                timer.mark_first_byte()
                for event in parser.feed(raw):
                    for chunk in self._map_event(event, emitter):
                        yield chunk
                    if emitter.finished:
                        return

            if cancel_event is not None and cancel_event.is_set():
                return
            for event in parser.flush():
                for chunk in self._map_event(event, emitter):
                    yield chunk
                if emitter.finished:
                    return
        except AdapterError as e:
            logger.warning("%s stream failed: %s", self.name, e.message)
            if not e.provenance:
                e.provenance = self.provenance
            yield emitter.error(e)
            return
        except httpx.HTTPError as e:
            logger.warning("%s stream interrupted: %s", self.name, str(e))
            yield emitter.error(
                NetworkError(f"Stream interrupted: {str(e)}", provenance=self.provenance, cause=e)
            )
            return

        # Closed without a terminator
        yield emitter.done()

    @staticmethod
    async def _next_read(reader: AsyncIterator[bytes], cancel_event: Optional[asyncio.Event]) -> Optional[bytes]:
        """
        Next body read, raced against ``cancel_event``

        Returns None once the event is set, even while a read is stalled.

        Raises:
            StopAsyncIteration: The body is exhausted
        """
        if cancel_event is None:
            return await reader.__anext__()
        if cancel_event.is_set():
            return None

        async def read() -> bytes:
            return await reader.__anext__()

        read_task = asyncio.create_task(read())
        cancel_task = asyncio.create_task(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({read_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (read_task, cancel_task):
                if not task.done():
                    task.cancel()
        if read_task in done:
            return read_task.result()
        await asyncio.gather(read_task, return_exceptions=True)
        return None

    def _map_event(self, event: SSEEvent, emitter: ChunkEmitter) -> Iterable[IRStreamChunk]:
        if event.done:
            return [] if emitter.finished else [emitter.done()]
        return self.map_stream_event(event, emitter)

    async def health_check(self) -> bool:
        url = self.health_check_url()
        if url is None:
            return True
        try:
            async with self._create_client() as client:
                response = await client.get(url, headers={**self.extra_headers, **self.build_headers()})
        except httpx.HTTPError as e:
            logger.warning("%s health check failed: %s", self.name, str(e))
            return False
        healthy = 200 <= response.status_code < 300
        if not healthy:
            logger.warning("%s health check returned HTTP %s", self.name, response.status_code)
        return healthy

    def _stream_error(self, event: SSEEvent) -> StreamError:
        """Error raised for provider ``error`` events inside a stream."""
        message = "Provider reported a stream error"
        error = (event.data or {}).get("error")
        if isinstance(error, dict) and error.get("message"):
            message = error["message"]
        elif isinstance(error, str):
            message = error
        return StreamError(message, provenance=self.provenance, details={"event": event.data})

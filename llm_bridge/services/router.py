"""
Router Service Module

A BackendAdapter that picks one of several registered backends for every
request. Selection order comes from a SelectionStrategy; with
``fallback_on_error`` a failed attempt moves on to the next candidate
with the same IR request until one succeeds or all have failed.
"""

import asyncio
import dataclasses
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional, Sequence, Union

from llm_bridge.common.errors import AdapterError, ProviderError, RouterError, StreamError
from llm_bridge.common.timer import Timer
from llm_bridge.config import get_settings
from llm_bridge.ir.types import (
    ErrorChunk,
    IRChatRequest,
    IRChatResponse,
    IRProvenance,
    IRResponseMetadata,
    IRStreamChunk,
    StartChunk,
)
from llm_bridge.providers.base import BackendAdapter
from llm_bridge.services.strategy import (
    BackendEntry,
    CustomSelector,
    SelectionStrategy,
    create_strategy,
)

logger = logging.getLogger(__name__)

EVENT_BACKEND_SELECTED = "backend:selected"
EVENT_BACKEND_ERROR = "backend:error"
EVENT_BACKEND_SWITCH = "backend:switch"

# Latency samples kept per backend for the running average
LATENCY_WINDOW = 100


class CircuitState:
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class RouterEvent:
    """Observability event emitted while routing a request."""

    type: str
    backend: str
    request_id: Optional[str] = None
    error: Optional[AdapterError] = None
    previous_backend: Optional[str] = None


RouterObserver = Callable[[RouterEvent], Any]


@dataclass
class BackendStats:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    consecutive_failures: int = 0
    latencies_ms: deque = field(default_factory=lambda: deque(maxlen=LATENCY_WINDOW))
    healthy: bool = True
    circuit_state: str = CircuitState.CLOSED
    circuit_opened_at: Optional[float] = None

    @property
    def average_latency_ms(self) -> float:
        if not self.latencies_ms:
            return 0.0
        return sum(self.latencies_ms) / len(self.latencies_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "consecutive_failures": self.consecutive_failures,
            "average_latency_ms": self.average_latency_ms,
            "healthy": self.healthy,
            "circuit_state": self.circuit_state,
        }


@dataclass
class ParallelResult:
    """Outcome of a parallel dispatch: the winner plus the losers' failures."""

    response: IRChatResponse
    backend: str
    failures: dict[str, AdapterError] = field(default_factory=dict)


class Router(BackendAdapter):
    """
    Router

    Usage:
        router = Router(strategy="priority", fallback_on_error=True)
        router.register("primary", OpenAIClient(api_key=...))
        router.register("secondary", AnthropicClient(api_key=...))
        response = await router.execute(request)
    """

    name = "router"

    def __init__(
        self,
        strategy: Union[str, SelectionStrategy] = "round-robin",
        fallback_on_error: bool = False,
        fallback_chain: Optional[Sequence[str]] = None,
        selector: Optional[CustomSelector] = None,
        enable_circuit_breaker: bool = False,
        circuit_breaker_threshold: Optional[int] = None,
        circuit_breaker_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize router

        Args:
            strategy: Strategy name or instance
            fallback_on_error: Try the next candidate when an attempt fails
            fallback_chain: Explicit order of backend names tried after the primary
            selector: Selection function for the "custom" strategy
            enable_circuit_breaker: Stop calling backends after repeated failures
            circuit_breaker_threshold: Consecutive failures that open the circuit
            circuit_breaker_timeout: Seconds before an open circuit admits a trial request
            clock: Monotonic clock, injectable for tests
        """
        settings = get_settings()
        if isinstance(strategy, str):
            strategy = create_strategy(strategy, selector)
        self.strategy = strategy
        self.fallback_on_error = fallback_on_error
        self.fallback_chain = list(fallback_chain) if fallback_chain else None
        self.enable_circuit_breaker = enable_circuit_breaker
        self.circuit_breaker_threshold = (
            circuit_breaker_threshold
            if circuit_breaker_threshold is not None
            else settings.CIRCUIT_BREAKER_THRESHOLD
        )
        self.circuit_breaker_timeout = (
            circuit_breaker_timeout
            if circuit_breaker_timeout is not None
            else settings.CIRCUIT_BREAKER_TIMEOUT_SECONDS
        )
        self._clock = clock
        self._entries: dict[str, BackendEntry] = {}
        self._stats: dict[str, BackendStats] = {}
        self._observers: list[RouterObserver] = []
        self.total_requests = 0
        self.total_fallbacks = 0
        self.parallel_requests = 0

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, name: str, backend: BackendAdapter, weight: int = 1, priority: int = 0) -> "Router":
        if name in self._entries:
            raise RouterError(f"Backend already registered: {name}", code="DUPLICATE_BACKEND")
        self._entries[name] = BackendEntry(name=name, backend=backend, weight=weight, priority=priority)
        self._stats[name] = BackendStats()
        logger.info("Router registered backend: name=%s weight=%s priority=%s", name, weight, priority)
        return self

    def unregister(self, name: str) -> "Router":
        if name not in self._entries:
            raise RouterError(f"Backend not registered: {name}", code="UNKNOWN_BACKEND")
        del self._entries[name]
        del self._stats[name]
        logger.info("Router unregistered backend: name=%s", name)
        return self

    @property
    def backends(self) -> list[str]:
        return list(self._entries)

    def get_backend(self, name: str) -> BackendAdapter:
        if name not in self._entries:
            raise RouterError(f"Backend not registered: {name}", code="UNKNOWN_BACKEND")
        return self._entries[name].backend

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def on_event(self, callback: RouterObserver) -> RouterObserver:
        self._observers.append(callback)
        return callback

    def remove_listener(self, callback: RouterObserver) -> None:
        if callback in self._observers:
            self._observers.remove(callback)

    def _emit(self, event: RouterEvent) -> None:
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                logger.exception("Router observer failed on %s event", event.type)

    # ------------------------------------------------------------------
    # Circuit breaker and stats
    # ------------------------------------------------------------------

    def _is_selectable(self, name: str) -> bool:
        stats = self._stats[name]
        if not stats.healthy:
            return False
        if not self.enable_circuit_breaker or stats.circuit_state != CircuitState.OPEN:
            return True
        # An open circuit whose timeout elapsed stays selectable for a half-open trial request
        return self._clock() - (stats.circuit_opened_at or 0) >= self.circuit_breaker_timeout

    def _check_circuit(self, name: str) -> None:
        if not self.enable_circuit_breaker:
            return
        stats = self._stats[name]
        if stats.circuit_state != CircuitState.OPEN:
            return
        if self._clock() - (stats.circuit_opened_at or 0) >= self.circuit_breaker_timeout:
            stats.circuit_state = CircuitState.HALF_OPEN
            logger.info("Circuit half-open: backend=%s", name)
            return
        raise ProviderError(
            f"Circuit breaker open for backend: {name}",
            provenance={"backend": name},
            is_retryable=True,
        )

    def _record_success(self, name: str, latency_ms: float) -> None:
        stats = self._stats.get(name)
        if stats is None:
            return
        stats.total_requests += 1
        stats.successful_requests += 1
        stats.consecutive_failures = 0
        stats.latencies_ms.append(latency_ms)
        if stats.circuit_state != CircuitState.CLOSED:
            logger.info("Circuit closed: backend=%s", name)
        stats.circuit_state = CircuitState.CLOSED
        stats.circuit_opened_at = None

    def _record_failure(self, name: str) -> None:
        stats = self._stats.get(name)
        if stats is None:
            return
        stats.total_requests += 1
        stats.failed_requests += 1
        stats.consecutive_failures += 1
        if not self.enable_circuit_breaker:
            return
        if (
            stats.circuit_state == CircuitState.HALF_OPEN
            or stats.consecutive_failures >= self.circuit_breaker_threshold
        ):
            if stats.circuit_state != CircuitState.OPEN:
                logger.warning(
                    "Circuit opened: backend=%s consecutive_failures=%d", name, stats.consecutive_failures
                )
            stats.circuit_state = CircuitState.OPEN
            stats.circuit_opened_at = self._clock()

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "total_fallbacks": self.total_fallbacks,
            "parallel_requests": self.parallel_requests,
            "backends": {name: stats.to_dict() for name, stats in self._stats.items()},
        }

    def get_backend_stats(self, name: str) -> BackendStats:
        if name not in self._stats:
            raise RouterError(f"Backend not registered: {name}", code="UNKNOWN_BACKEND")
        return self._stats[name]

    def reset_stats(self) -> None:
        self.total_requests = 0
        self.total_fallbacks = 0
        self.parallel_requests = 0
        for name in self._stats:
            healthy = self._stats[name].healthy
            self._stats[name] = BackendStats(healthy=healthy)
        self.strategy.reset()

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def _candidates(self, request: IRChatRequest) -> list[BackendEntry]:
        available = [e for e in self._entries.values() if self._is_selectable(e.name)]
        if not available:
            raise RouterError(
                "No available backends" if self._entries else "No backends registered",
                code="NO_BACKEND_AVAILABLE",
            )
        ordered = await self.strategy.order(available, request)
        if self.fallback_chain:
            primary = ordered[0]
            chained = [
                self._entries[name]
                for name in self.fallback_chain
                if name in self._entries and name != primary.name and self._is_selectable(name)
            ]
            ordered = [primary] + chained
        if not self.fallback_on_error:
            ordered = ordered[:1]
        return ordered

    async def _execute_on(self, entry: BackendEntry, request: IRChatRequest) -> IRChatResponse:
        self._check_circuit(entry.name)
        timer = Timer().start()
        try:
            response = await entry.backend.execute(request)
        except AdapterError:
            self._record_failure(entry.name)
            raise
        except Exception as e:
            self._record_failure(entry.name)
            raise AdapterError(
                f"Backend '{entry.name}' failed unexpectedly: {str(e)}",
                provenance={"backend": entry.name},
                cause=e,
            ) from e
        timer.stop()
        self._record_success(entry.name, timer.elapsed_ms)
        return dataclasses.replace(response, metadata=self._attribute(response.metadata, entry.name))

    async def _open_stream(
        self, entry: BackendEntry, request: IRChatRequest, cancel_event: Optional[asyncio.Event]
    ) -> tuple[AsyncIterator[IRStreamChunk], IRStreamChunk]:
        """Start a backend stream and pull its first chunk; failures here allow fallback."""
        self._check_circuit(entry.name)
        chunks = entry.backend.execute_stream(request, cancel_event)
        try:
            first = await chunks.__anext__()
        except AdapterError:
            await chunks.aclose()
            self._record_failure(entry.name)
            raise
        except StopAsyncIteration:
            self._record_failure(entry.name)
            raise StreamError("Backend stream ended before producing any chunk", provenance={"backend": entry.name})
        except Exception as e:
            await chunks.aclose()
            self._record_failure(entry.name)
            raise AdapterError(
                f"Backend '{entry.name}' failed unexpectedly: {str(e)}",
                provenance={"backend": entry.name},
                cause=e,
            ) from e
        if isinstance(first, StartChunk):
            first = dataclasses.replace(first, metadata=self._attribute(first.metadata, entry.name))
        return chunks, first

    @staticmethod
    def _attribute(metadata: IRResponseMetadata, name: str) -> IRResponseMetadata:
        """Name the registered backend that served the request in response provenance."""
        provenance = IRProvenance(frontend=metadata.provenance.frontend, backend=name)
        return dataclasses.replace(metadata, provenance=provenance)

    def _exhausted(self, attempted: list[str], last_error: AdapterError) -> RouterError:
        logger.error("All backends failed: attempted=%s last_error=%s", attempted, last_error.message)
        return RouterError(
            f"All backends failed: {last_error.message}",
            code="ALL_BACKENDS_FAILED",
            attempted_backends=attempted,
            is_retryable=last_error.is_retryable,
            cause=last_error,
        )

    # ------------------------------------------------------------------
    # BackendAdapter interface
    # ------------------------------------------------------------------

    async def execute(self, request: IRChatRequest) -> IRChatResponse:
        """
        Route a buffered request

        Raises:
            RouterError: No backend available, or all candidates failed
            AdapterError: The single attempted backend failed (no fallback)
        """
        self.total_requests += 1
        candidates = await self._candidates(request)
        request_id = request.metadata.request_id
        attempted: list[str] = []
        previous: Optional[str] = None
        last_error: Optional[AdapterError] = None

        for entry in candidates:
            if previous is not None:
                self.total_fallbacks += 1
                self._emit(RouterEvent(EVENT_BACKEND_SWITCH, entry.name, request_id, last_error, previous))
            attempted.append(entry.name)
            self._emit(RouterEvent(EVENT_BACKEND_SELECTED, entry.name, request_id))
            try:
                return await self._execute_on(entry, request)
            except AdapterError as e:
                logger.warning(
                    "Backend failed: backend=%s request=%s code=%s message=%s", entry.name, request_id, e.code, e.message
                )
                self._emit(RouterEvent(EVENT_BACKEND_ERROR, entry.name, request_id, e))
                if not self.fallback_on_error:
                    raise
                last_error = e
                previous = entry.name

        raise self._exhausted(attempted, last_error)

    async def execute_stream(
        self,
        request: IRChatRequest,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[IRStreamChunk]:
        """
        Route a streaming request

        Failover only happens before the first chunk; once a backend has
        produced output the stream is committed to it, and later failures
        arrive as its terminal error chunk.
        """
        self.total_requests += 1
        candidates = await self._candidates(request)
        request_id = request.metadata.request_id
        attempted: list[str] = []
        previous: Optional[str] = None
        last_error: Optional[AdapterError] = None

        for entry in candidates:
            if previous is not None:
                self.total_fallbacks += 1
                self._emit(RouterEvent(EVENT_BACKEND_SWITCH, entry.name, request_id, last_error, previous))
            attempted.append(entry.name)
            self._emit(RouterEvent(EVENT_BACKEND_SELECTED, entry.name, request_id))

            timer = Timer().start()
            try:
                chunks, first = await self._open_stream(entry, request, cancel_event)
            except AdapterError as e:
                logger.warning(
                    "Backend stream failed: backend=%s request=%s code=%s message=%s",
                    entry.name,
                    request_id,
                    e.code,
                    e.message,
                )
                self._emit(RouterEvent(EVENT_BACKEND_ERROR, entry.name, request_id, e))
                if not self.fallback_on_error:
                    raise
                last_error = e
                previous = entry.name
                continue

            failed = False
            try:
                yield first
                async for chunk in chunks:
                    if isinstance(chunk, ErrorChunk):
                        failed = True
                        self._emit(RouterEvent(EVENT_BACKEND_ERROR, entry.name, request_id, chunk.error))
                    yield chunk
            finally:
                await chunks.aclose()
                timer.stop()
                if failed:
                    self._record_failure(entry.name)
                else:
                    self._record_success(entry.name, timer.elapsed_ms)
            return

        raise self._exhausted(attempted, last_error)

    async def dispatch_parallel(
        self,
        request: IRChatRequest,
        backends: Optional[Sequence[str]] = None,
        timeout: Optional[float] = None,
    ) -> ParallelResult:
        """
        Race the request across several backends

        The first success wins and the remaining requests are cancelled.

        Args:
            request: IR request sent unchanged to every backend
            backends: Names to race (default: every selectable backend)
            timeout: Overall deadline in seconds

        Raises:
            RouterError: Every backend failed, or the deadline passed
        """
        if backends is None:
            names = [name for name in self._entries if self._is_selectable(name)]
        else:
            unknown = [name for name in backends if name not in self._entries]
            if unknown:
                raise RouterError(f"Backend not registered: {', '.join(unknown)}", code="UNKNOWN_BACKEND")
            names = list(backends)
        if not names:
            raise RouterError("No available backends", code="NO_BACKEND_AVAILABLE")

        self.total_requests += 1
        self.parallel_requests += 1
        request_id = request.metadata.request_id
        tasks: dict[asyncio.Task, str] = {}
        for name in names:
            self._emit(RouterEvent(EVENT_BACKEND_SELECTED, name, request_id))
            tasks[asyncio.create_task(self._execute_on(self._entries[name], request))] = name

        failures: dict[str, AdapterError] = {}
        deadline = None if timeout is None else self._loop_time() + timeout
        pending = set(tasks)
        try:
            while pending:
                remaining = None if deadline is None else max(deadline - self._loop_time(), 0)
                done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
                if not done:
                    raise RouterError(
                        f"Parallel dispatch timed out after {timeout}s",
                        code="ALL_BACKENDS_FAILED",
                        attempted_backends=names,
                        is_retryable=True,
                    )
                for task in done:
                    name = tasks[task]
                    error = task.exception()
                    if error is None:
                        logger.info("Parallel dispatch won by backend=%s request=%s", name, request_id)
                        return ParallelResult(response=task.result(), backend=name, failures=failures)
                    failures[name] = error
                    self._emit(RouterEvent(EVENT_BACKEND_ERROR, name, request_id, error))
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        # failures is in completion order
        raise self._exhausted(names, list(failures.values())[-1])

    @staticmethod
    def _loop_time() -> float:
        return asyncio.get_running_loop().time()

    async def check_health(self) -> dict[str, bool]:
        """Run every backend's health check concurrently and record the results."""
        names = list(self._entries)
        results = await asyncio.gather(
            *(self._entries[name].backend.health_check() for name in names),
            return_exceptions=True,
        )
        health: dict[str, bool] = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.warning("Health check raised for backend=%s: %s", name, str(result))
                result = False
            healthy = bool(result)
            if name in self._stats:
                self._stats[name].healthy = healthy
            health[name] = healthy
        logger.info("Router health check: %s", health)
        return health

    async def health_check(self) -> bool:
        health = await self.check_health()
        return any(health.values())

    async def destroy(self) -> None:
        for entry in list(self._entries.values()):
            await entry.backend.destroy()

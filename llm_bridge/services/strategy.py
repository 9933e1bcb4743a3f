"""
Strategy Service Module

Backend selection strategies for the Router. A strategy turns the list of
registered backends into the order in which they are tried for one
request: the first entry is the primary, the rest are fallbacks.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from llm_bridge.common.errors import RouterError
from llm_bridge.ir.types import IRChatRequest
from llm_bridge.providers.base import BackendAdapter

logger = logging.getLogger(__name__)


@dataclass
class BackendEntry:
    """A backend registered with the router."""

    name: str
    backend: BackendAdapter
    # Relative share for weighted selection
    weight: int = 1
    # Lower value is tried first by the priority strategy
    priority: int = 0


# (request, backend names) -> index of the backend to try first
CustomSelector = Callable[[IRChatRequest, list[str]], int]


def _rotate(entries: Sequence[BackendEntry], start: int) -> list[BackendEntry]:
    return list(entries[start:]) + list(entries[:start])


class SelectionStrategy(ABC):
    """
    Backend Selection Strategy Abstract Base Class
    """

    name: str = "strategy"

    @abstractmethod
    async def order(self, entries: Sequence[BackendEntry], request: IRChatRequest) -> list[BackendEntry]:
        """
        Order candidate backends for a request

        Args:
            entries: Available backends in registration order
            request: The request being routed

        Returns:
            list[BackendEntry]: Primary first, then fallbacks
        """

    def reset(self) -> None:
        """Drop any selection state."""


class RoundRobinStrategy(SelectionStrategy):
    """
    Round Robin Strategy

    One cursor shared by all requests, advanced on every dispatch. The
    cursor is read and incremented under a lock so concurrent dispatches
    never observe the same value.
    """

    name = "round-robin"

    def __init__(self):
        self._counter = 0
        self._lock: Optional[asyncio.Lock] = None

    @property
    def lock(self) -> asyncio.Lock:
        """Get lock (lazy loading, binds to the running loop)"""
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def order(self, entries: Sequence[BackendEntry], request: IRChatRequest) -> list[BackendEntry]:
        if not entries:
            return []
        async with self.lock:
            start = self._counter % len(entries)
            self._counter += 1
        return _rotate(entries, start)

    def reset(self) -> None:
        self._counter = 0


class PriorityStrategy(SelectionStrategy):
    """
    Priority Strategy

    Always tries backends by ascending ``priority``; ties keep
    registration order, so with default priorities index 0 goes first.
    """

    name = "priority"

    async def order(self, entries: Sequence[BackendEntry], request: IRChatRequest) -> list[BackendEntry]:
        return sorted(entries, key=lambda e: e.priority)


class RandomStrategy(SelectionStrategy):
    name = "random"

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    async def order(self, entries: Sequence[BackendEntry], request: IRChatRequest) -> list[BackendEntry]:
        shuffled = list(entries)
        self.rng.shuffle(shuffled)
        return shuffled


class WeightedStrategy(SelectionStrategy):
    """
    Weighted Strategy

    Picks the primary with probability proportional to its weight; the
    remaining backends follow in registration order. Non-positive weights
    fall back to a uniform pick.
    """

    name = "weighted"

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    async def order(self, entries: Sequence[BackendEntry], request: IRChatRequest) -> list[BackendEntry]:
        if not entries:
            return []
        weights = [max(e.weight, 0) for e in entries]
        if sum(weights) <= 0:
            weights = [1] * len(entries)
        primary = self.rng.choices(range(len(entries)), weights=weights, k=1)[0]
        return [entries[primary]] + [e for i, e in enumerate(entries) if i != primary]


class CustomStrategy(SelectionStrategy):
    """Delegates the primary pick to a caller supplied function."""

    name = "custom"

    def __init__(self, selector: CustomSelector):
        self.selector = selector

    async def order(self, entries: Sequence[BackendEntry], request: IRChatRequest) -> list[BackendEntry]:
        if not entries:
            return []
        index = self.selector(request, [e.name for e in entries])
        if not isinstance(index, int) or not 0 <= index < len(entries):
            raise RouterError(f"Custom selector returned invalid index: {index!r}")
        return [entries[index]] + [e for i, e in enumerate(entries) if i != index]


def create_strategy(name: str, selector: Optional[CustomSelector] = None) -> SelectionStrategy:
    """
    Build a strategy by name

    Raises:
        ValueError: Unknown strategy, or "custom" without a selector
    """
    if name == "round-robin":
        return RoundRobinStrategy()
    if name == "priority":
        return PriorityStrategy()
    if name == "random":
        return RandomStrategy()
    if name == "weighted":
        return WeightedStrategy()
    if name == "custom":
        if selector is None:
            raise ValueError("custom strategy requires a selector function")
        return CustomStrategy(selector)
    raise ValueError(f"Unsupported routing strategy: {name}")

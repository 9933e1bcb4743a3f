"""
Service Layer Module Initialization
"""

from llm_bridge.services.bridge import Bridge
from llm_bridge.services.middleware import (
    CachingMiddleware,
    LoggingMiddleware,
    Middleware,
    RetryMiddleware,
    TransformMiddleware,
    compose,
    compose_stream,
)
from llm_bridge.services.router import ParallelResult, Router, RouterEvent
from llm_bridge.services.strategy import (
    BackendEntry,
    CustomStrategy,
    PriorityStrategy,
    RandomStrategy,
    RoundRobinStrategy,
    SelectionStrategy,
    WeightedStrategy,
    create_strategy,
)

__all__ = [
    "Bridge",
    "Middleware",
    "LoggingMiddleware",
    "RetryMiddleware",
    "CachingMiddleware",
    "TransformMiddleware",
    "compose",
    "compose_stream",
    "Router",
    "RouterEvent",
    "ParallelResult",
    "BackendEntry",
    "SelectionStrategy",
    "RoundRobinStrategy",
    "PriorityStrategy",
    "RandomStrategy",
    "WeightedStrategy",
    "CustomStrategy",
    "create_strategy",
]

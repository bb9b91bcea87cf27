"""Orchestration: retry, circuit breaking, provider registry and routing."""

from ragchat_core.orchestrator.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from ragchat_core.orchestrator.registry import ProviderRecord, ProviderRegistry
from ragchat_core.orchestrator.retry_handler import RetryConfig, RetryHandler
from ragchat_core.orchestrator.router import (
    ModelRouter,
    ProviderStats,
    RouteResult,
    RoutingStrategy,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "ProviderRecord",
    "ProviderRegistry",
    "RetryConfig",
    "RetryHandler",
    "ModelRouter",
    "ProviderStats",
    "RouteResult",
    "RoutingStrategy",
]

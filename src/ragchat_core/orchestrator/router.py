"""Model router: exact model-to-provider routing behind breaker and retry."""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ragchat_core.exceptions import CircuitOpenError, ModelNotFoundError
from ragchat_core.orchestrator.registry import ProviderRecord, ProviderRegistry
from ragchat_core.orchestrator.retry_handler import RetryConfig, RetryHandler
from ragchat_core.providers.base import (
    BaseProvider,
    ChatRequest,
    ChatResult,
    ModelConfig,
    ModelHandle,
)
from ragchat_core.telemetry.logger import RequestContext, get_logger

logger = get_logger(__name__)


class RoutingStrategy(str, Enum):
    """How to pick an alternate provider while the primary's breaker is open."""

    NONE = "none"
    FASTEST = "fastest"
    ROUND_ROBIN = "round_robin"
    LEAST_LOADED = "least_loaded"


@dataclass
class ProviderStats:
    """Live per-provider counters. Latencies are in seconds."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    in_flight: int = 0
    total_latency: float = 0.0
    last_error: str | None = None

    @property
    def average_latency(self) -> float | None:
        if not self.successful_requests:
            return None
        return self.total_latency / self.successful_requests

    @property
    def success_rate(self) -> float:
        completed = self.successful_requests + self.failed_requests
        if not completed:
            return 1.0
        return self.successful_requests / completed

    def record_success(self, latency: float) -> None:
        self.successful_requests += 1
        self.total_latency += latency

    def record_failure(self, error: BaseException) -> None:
        if isinstance(error, CircuitOpenError):
            self.rejected_requests += 1
        else:
            self.failed_requests += 1
        self.last_error = type(error).__name__

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "rejected_requests": self.rejected_requests,
            "in_flight": self.in_flight,
            "average_latency": self.average_latency,
            "success_rate": self.success_rate,
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class RouteResult:
    """Where a model id resolved to."""

    provider: str
    model: ModelConfig
    adapter: BaseProvider
    metadata: dict[str, Any] = field(default_factory=dict)


class ModelRouter:
    """Routes chat requests to the provider that owns the requested model."""

    def __init__(
        self,
        registry: ProviderRegistry,
        retry_config: RetryConfig | None = None,
        strategy: RoutingStrategy | str = RoutingStrategy.NONE,
        retry_handler: RetryHandler | None = None,
    ):
        self.registry = registry
        self.retry_handler = retry_handler or RetryHandler(retry_config)
        self.strategy = RoutingStrategy(strategy)
        self._stats = {pid: ProviderStats() for pid in registry.provider_ids}
        self._round_robin_index = 0

        logger.info(
            "router_initialized",
            providers=registry.provider_ids,
            models=len(registry.all_models()),
            strategy=self.strategy.value,
        )

    @classmethod
    def from_settings(cls, settings=None) -> "ModelRouter":
        from ragchat_core.config import get_settings

        settings = settings or get_settings()
        return cls(
            ProviderRegistry.from_settings(settings),
            retry_config=settings.retry_config(),
            strategy=settings.fallback_strategy,
        )

    def route(self, model_id: str) -> RouteResult:
        """Resolve ``model_id`` to its provider.

        Raises:
            ModelNotFoundError: No registered provider advertises ``model_id``
        """
        primary = self.registry.owner_of(model_id)
        if primary is None:
            raise ModelNotFoundError(model_id)

        record = primary
        if self.strategy != RoutingStrategy.NONE and not self._admits(primary):
            alternate = self._select_alternate(model_id, primary)
            if alternate is not None:
                logger.info(
                    "routing_fallback",
                    model=model_id,
                    primary=primary.provider_id,
                    selected=alternate.provider_id,
                    strategy=self.strategy.value,
                )
                record = alternate

        model = record.adapter.get_model_config(model_id)
        return RouteResult(
            provider=record.provider_id,
            model=model,
            adapter=record.adapter,
            metadata={
                "display_name": model.display_name,
                "primary": primary.provider_id,
                "fallback": record is not primary,
                "circuit_state": record.breaker.state.value if record.breaker else None,
            },
        )

    def _stats_for(self, provider_id: str) -> ProviderStats:
        # providers may be registered after the router was built
        return self._stats.setdefault(provider_id, ProviderStats())

    @staticmethod
    def _admits(record: ProviderRecord) -> bool:
        return record.breaker is None or record.breaker.allows_calls

    def _select_alternate(self, model_id: str, primary: ProviderRecord) -> ProviderRecord | None:
        candidates = [
            record
            for record in self.registry.records
            if record is not primary
            and record.adapter.supports_model(model_id)
            and self._admits(record)
        ]
        if not candidates:
            return None

        # min() keeps the first of equal keys, so ties go to registration order
        if self.strategy == RoutingStrategy.FASTEST:
            return min(
                candidates,
                key=lambda r: self._stats_for(r.provider_id).average_latency or float("inf"),
            )
        if self.strategy == RoutingStrategy.LEAST_LOADED:
            return min(candidates, key=lambda r: self._stats_for(r.provider_id).in_flight)

        selected = candidates[self._round_robin_index % len(candidates)]
        self._round_robin_index += 1
        return selected

    async def chat(self, request: ChatRequest) -> ChatResult:
        """Route ``request`` and call the provider under breaker and retry.

        Raises:
            ModelNotFoundError: Unknown model id
            CircuitOpenError: The provider's breaker rejected the call
            OperationCancelledError: ``request.cancel_token`` fired
            ProviderError: Terminal or retry-exhausted vendor failure
        """
        route = self.route(request.model)
        record = self.registry.get(route.provider)
        stats = self._stats_for(route.provider)

        with RequestContext(request_id=request.request_id, provider=route.provider):
            stats.total_requests += 1
            stats.in_flight += 1
            start = time.perf_counter()
            try:
                result = await self._call(record, request)
            except Exception as e:
                stats.record_failure(e)
                logger.warning(
                    "chat_failed", model=request.model, error_type=type(e).__name__, error=str(e)
                )
                raise
            finally:
                stats.in_flight -= 1

            latency = time.perf_counter() - start
            stats.record_success(latency)
            logger.info("chat_completed", model=request.model, latency=latency)
            return result

    async def _call(self, record: ProviderRecord, request: ChatRequest) -> ChatResult:
        async def attempt() -> ChatResult:
            return await self.retry_handler.execute(
                record.adapter.chat,
                request,
                cancel_token=request.cancel_token,
                classify=record.adapter.classify,
            )

        if record.breaker is None:
            return await attempt()
        return await record.breaker.call(attempt)

    def get_all_models(self) -> list[ModelConfig]:
        return self.registry.all_models()

    def get_model_config(self, model_id: str) -> ModelConfig | None:
        return self.registry.model_config(model_id)

    def get_provider(self, provider_id: str) -> BaseProvider | None:
        record = self.registry.get(provider_id)
        return record.adapter if record else None

    def get_models_by_provider(self, provider_id: str) -> list[ModelConfig]:
        return [
            model
            for model in self.registry.all_models()
            if self.registry.owner_of(model.id).provider_id == provider_id
        ]

    def model_supports(self, model_id: str, feature: str) -> bool:
        """Whether ``model_id`` supports ``feature`` (functions, vision, system_prompt, streaming)."""
        record = self.registry.owner_of(model_id)
        if record is None:
            return False
        model = record.adapter.get_model_config(model_id)
        if feature == "streaming":
            return record.capabilities.streaming
        return bool(getattr(model, f"supports_{feature}", False))

    def get_model(self, model_id: str, options: dict[str, Any] | None = None) -> ModelHandle:
        """Resolve ``model_id`` with generation options clamped to its limits."""
        return self.route(model_id).adapter.get_model(model_id, options)

    def get_stats(self) -> dict[str, Any]:
        return {
            record.provider_id: {
                **self._stats_for(record.provider_id).to_dict(),
                "circuit": record.breaker.snapshot() if record.breaker else None,
            }
            for record in self.registry.records
        }

    async def health_check(self) -> dict[str, Any]:
        """Check every provider concurrently."""
        records = self.registry.records
        results = await asyncio.gather(*(r.adapter.health_check() for r in records))
        providers = {}
        for record, result in zip(records, results):
            if record.breaker is not None:
                result["circuit_state"] = record.breaker.state.value
            providers[record.provider_id] = result

        healthy = sum(1 for r in providers.values() if r["status"] == "healthy")
        if healthy == len(providers) and providers:
            status = "healthy"
        elif healthy:
            status = "degraded"
        else:
            status = "unhealthy"
        return {"status": status, "providers": providers}

    async def close(self) -> None:
        await self.registry.close()

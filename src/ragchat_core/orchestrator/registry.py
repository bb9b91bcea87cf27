"""Provider registry: the configured adapters, their model index and breakers."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ragchat_core.orchestrator.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from ragchat_core.providers.base import BaseProvider, ModelConfig, ProviderCapabilities
from ragchat_core.telemetry.logger import get_logger

if TYPE_CHECKING:
    from ragchat_core.config.settings import Settings

logger = get_logger(__name__)

ProviderFactory = Callable[[], BaseProvider]


@dataclass
class ProviderRecord:
    """One configured vendor."""

    provider_id: str
    adapter: BaseProvider
    breaker: CircuitBreaker | None = None

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self.adapter.capabilities

    @property
    def models(self) -> list[ModelConfig]:
        return self.adapter.models


class ProviderRegistry:
    """Registered providers and the exact-match ``model id -> provider`` index.

    Built once and injected into the router. The first provider to advertise
    a model id owns it; later duplicates are logged and ignored.
    """

    def __init__(
        self,
        breaker_config: CircuitBreakerConfig | None = None,
        breakers_enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.breaker_config = breaker_config or CircuitBreakerConfig()
        self.breakers_enabled = breakers_enabled
        self._clock = clock
        self._records: dict[str, ProviderRecord] = {}
        self._model_index: dict[str, str] = {}

    @classmethod
    def from_adapters(cls, adapters: Iterable[BaseProvider], **kwargs) -> ProviderRegistry:
        registry = cls(**kwargs)
        for adapter in adapters:
            registry.register(adapter)
        return registry

    @classmethod
    def from_factories(
        cls, factories: dict[str, ProviderFactory], **kwargs
    ) -> ProviderRegistry:
        """Build each provider in turn; a failing factory only omits its provider."""
        registry = cls(**kwargs)
        for provider_id, factory in factories.items():
            try:
                adapter = factory()
            except Exception as e:
                logger.warning(
                    "provider_initialization_failed",
                    provider=provider_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                continue
            registry.register(adapter)
        return registry

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> ProviderRegistry:
        """Register every vendor whose adapter can be built from ``settings``."""
        from ragchat_core.config import get_settings
        from ragchat_core.providers import AnthropicProvider, GoogleProvider, OpenAIProvider

        settings = settings or get_settings()

        def secret(value) -> str | None:
            return value.get_secret_value() if value else None

        factories: dict[str, ProviderFactory] = {
            "openai": lambda: OpenAIProvider(
                secret(settings.openai_api_key),
                timeout=settings.request_timeout,
                base_url=settings.openai_base_url,
            ),
            "anthropic": lambda: AnthropicProvider(
                secret(settings.anthropic_api_key),
                timeout=settings.request_timeout,
                base_url=settings.anthropic_base_url,
            ),
            "google": lambda: GoogleProvider(
                secret(settings.google_api_key),
                timeout=settings.request_timeout,
                base_url=settings.google_base_url,
            ),
        }
        return cls.from_factories(
            factories,
            breaker_config=settings.circuit_breaker_config(),
            breakers_enabled=settings.circuit_breaker_enabled,
        )

    def register(self, adapter: BaseProvider) -> ProviderRecord:
        """Add ``adapter`` and index the models it advertises."""
        provider_id = adapter.provider_id
        if provider_id in self._records:
            raise ValueError(f"Provider '{provider_id}' is already registered")

        breaker = None
        if self.breakers_enabled:
            breaker = CircuitBreaker(provider_id, self.breaker_config, clock=self._clock)
        record = ProviderRecord(provider_id=provider_id, adapter=adapter, breaker=breaker)
        self._records[provider_id] = record

        for model in adapter.models:
            owner = self._model_index.get(model.id)
            if owner is not None:
                logger.warning(
                    "duplicate_model_id", model=model.id, owner=owner, ignored=provider_id
                )
                continue
            self._model_index[model.id] = provider_id

        logger.info(
            "provider_registered", provider=provider_id, models=[m.id for m in adapter.models]
        )
        return record

    def get(self, provider_id: str) -> ProviderRecord | None:
        return self._records.get(provider_id)

    def owner_of(self, model_id: str) -> ProviderRecord | None:
        """The provider that owns ``model_id`` in the index."""
        provider_id = self._model_index.get(model_id)
        return self._records[provider_id] if provider_id else None

    def model_config(self, model_id: str) -> ModelConfig | None:
        record = self.owner_of(model_id)
        return record.adapter.get_model_config(model_id) if record else None

    @property
    def records(self) -> list[ProviderRecord]:
        """Registered providers in registration order."""
        return list(self._records.values())

    @property
    def provider_ids(self) -> list[str]:
        return list(self._records)

    def all_models(self) -> list[ModelConfig]:
        return [self.model_config(model_id) for model_id in self._model_index]

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    async def close(self) -> None:
        for record in self._records.values():
            try:
                await record.adapter.close()
            except Exception as e:
                logger.warning("provider_close_failed", provider=record.provider_id, error=str(e))

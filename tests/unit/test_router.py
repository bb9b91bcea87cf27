"""Test the provider registry and model router."""

import asyncio
from types import SimpleNamespace

import pytest

from ragchat_core.cancellation import CancellationToken
from ragchat_core.config import Settings
from ragchat_core.exceptions import (
    AuthenticationError,
    CircuitOpenError,
    ModelNotFoundError,
    OperationCancelledError,
    RateLimitError,
)
from ragchat_core.orchestrator import (
    CircuitBreakerConfig,
    ModelRouter,
    ProviderRegistry,
    RetryConfig,
    RetryHandler,
    RoutingStrategy,
)
from ragchat_core.providers import ChatMessage, ChatRequest, OpenAIProvider


def make_request(model, **kwargs):
    return ChatRequest(model=model, messages=[ChatMessage(role="user", content="hi")], **kwargs)


@pytest.fixture
def retry_handler(clock):
    return RetryHandler(RetryConfig(max_retries=3), sleep=clock.sleep)


@pytest.fixture
def two_providers(make_provider):
    return make_provider("openai", ["gpt-x"]), make_provider("anthropic", ["claude-x"])


@pytest.fixture
def router(two_providers, retry_handler, clock):
    registry = ProviderRegistry.from_adapters(two_providers, clock=clock)
    return ModelRouter(registry, retry_handler=retry_handler)


class TestProviderRegistry:
    def test_indexes_models(self, two_providers):
        registry = ProviderRegistry.from_adapters(two_providers)

        assert registry.provider_ids == ["openai", "anthropic"]
        assert registry.owner_of("gpt-x").provider_id == "openai"
        assert registry.owner_of("claude-x").provider_id == "anthropic"
        assert registry.owner_of("gemini-x") is None
        assert all(record.breaker.is_closed for record in registry.records)

    def test_first_registration_wins(self, make_provider):
        registry = ProviderRegistry.from_adapters(
            [make_provider("a", ["shared", "only-a"]), make_provider("b", ["shared"])]
        )

        assert registry.owner_of("shared").provider_id == "a"
        assert [m.id for m in registry.all_models()] == ["shared", "only-a"]

    def test_failed_factory_omits_only_that_provider(self, make_provider):
        def broken():
            return make_provider("openai", ["gpt-x"], api_key="")

        registry = ProviderRegistry.from_factories(
            {"openai": broken, "anthropic": lambda: make_provider("anthropic", ["claude-x"])}
        )

        assert registry.provider_ids == ["anthropic"]
        assert "openai" not in registry

    def test_from_settings_skips_providers_without_keys(self):
        settings = Settings(anthropic_api_key="sk-ant-test-key")

        registry = ProviderRegistry.from_settings(settings)

        assert registry.provider_ids == ["anthropic"]
        assert registry.owner_of("claude-3-5-sonnet-20241022") is not None
        assert registry.owner_of("gpt-4o") is None

    def test_breakers_can_be_disabled(self, two_providers):
        registry = ProviderRegistry.from_adapters(two_providers, breakers_enabled=False)
        assert all(record.breaker is None for record in registry.records)

    def test_duplicate_provider_rejected(self, make_provider):
        registry = ProviderRegistry()
        registry.register(make_provider("a", ["m"]))
        with pytest.raises(ValueError):
            registry.register(make_provider("a", ["n"]))


class TestRouting:
    def test_exact_routing(self, router):
        assert router.route("gpt-x").provider == "openai"
        assert router.route("claude-x").provider == "anthropic"

    def test_unknown_model(self, router):
        with pytest.raises(ModelNotFoundError):
            router.route("gemini-x")

    def test_no_prefix_matching(self, router):
        with pytest.raises(ModelNotFoundError):
            router.route("gpt")

    def test_route_metadata(self, router):
        result = router.route("gpt-x")
        assert result.model.id == "gpt-x"
        assert result.metadata["fallback"] is False
        assert result.metadata["circuit_state"] == "closed"


class TestChat:
    @pytest.mark.asyncio
    async def test_chat_reaches_owning_provider(self, router, two_providers):
        openai, anthropic = two_providers

        response = await router.chat(make_request("claude-x"))

        assert response.content == "anthropic:claude-x"
        assert (openai.calls, anthropic.calls) == (0, 1)

    @pytest.mark.asyncio
    async def test_unknown_model_never_calls_a_provider(self, router, two_providers):
        with pytest.raises(ModelNotFoundError):
            await router.chat(make_request("gemini-x"))
        assert all(p.calls == 0 for p in two_providers)

    @pytest.mark.asyncio
    async def test_rate_limit_retried_then_succeeds(self, make_provider, retry_handler, clock):
        provider = make_provider(
            "openai",
            ["gpt-x"],
            outcomes=[RateLimitError("slow", provider="openai"), RateLimitError("slow", provider="openai")],
        )
        router = ModelRouter(ProviderRegistry.from_adapters([provider]), retry_handler=retry_handler)

        response = await router.chat(make_request("gpt-x"))

        assert response.provider == "openai"
        assert provider.calls == 3
        assert clock.sleeps == [1.0, 2.0]
        assert router.registry.get("openai").breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_terminal_error_surfaces_after_one_call(self, make_provider, retry_handler):
        provider = make_provider("openai", ["gpt-x"], outcomes=[AuthenticationError("bad key")])
        router = ModelRouter(ProviderRegistry.from_adapters([provider]), retry_handler=retry_handler)

        with pytest.raises(AuthenticationError):
            await router.chat(make_request("gpt-x"))
        assert provider.calls == 1
        assert router.get_stats()["openai"]["failed_requests"] == 1

    @pytest.mark.asyncio
    async def test_open_breaker_rejects_without_calling(self, make_provider, retry_handler, clock):
        provider = make_provider(
            "openai", ["gpt-x"], outcomes=[AuthenticationError("bad key")] * 2
        )
        registry = ProviderRegistry.from_adapters(
            [provider],
            breaker_config=CircuitBreakerConfig(failure_threshold=2, recovery_timeout=30.0),
            clock=clock,
        )
        router = ModelRouter(registry, retry_handler=retry_handler)

        for _ in range(2):
            with pytest.raises(AuthenticationError):
                await router.chat(make_request("gpt-x"))
        with pytest.raises(CircuitOpenError):
            await router.chat(make_request("gpt-x"))
        assert provider.calls == 2
        assert router.get_stats()["openai"]["rejected_requests"] == 1

        clock.advance(30.0)
        response = await router.chat(make_request("gpt-x"))
        assert response.content == "openai:gpt-x"
        assert registry.get("openai").breaker.is_closed

    @pytest.mark.asyncio
    async def test_cancelled_request(self, router, two_providers):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(OperationCancelledError):
            await router.chat(make_request("gpt-x", cancel_token=token))
        assert two_providers[0].calls == 0

    @pytest.mark.asyncio
    async def test_stats_record_success(self, router):
        await router.chat(make_request("gpt-x"))

        stats = router.get_stats()["openai"]
        assert stats["successful_requests"] == 1
        assert stats["in_flight"] == 0
        assert stats["average_latency"] is not None
        assert stats["circuit"]["state"] == "closed"

    @pytest.mark.asyncio
    async def test_provider_registered_after_router_creation(self, router, make_provider):
        router.registry.register(make_provider("google", ["gemini-x"]))

        response = await router.chat(make_request("gemini-x"))

        assert response.provider == "google"
        assert router.get_stats()["google"]["successful_requests"] == 1


class TestFallback:
    async def _open_primary(self, router, primary_model="shared"):
        with pytest.raises(AuthenticationError):
            await router.chat(make_request(primary_model))

    @pytest.fixture
    def providers(self, make_provider):
        return [
            make_provider("a", ["shared"], outcomes=[AuthenticationError("bad key")]),
            make_provider("b", ["shared"]),
            make_provider("c", ["shared"]),
        ]

    def build(self, providers, strategy, retry_handler, clock):
        registry = ProviderRegistry.from_adapters(
            providers,
            breaker_config=CircuitBreakerConfig(failure_threshold=1, recovery_timeout=60.0),
            clock=clock,
        )
        return ModelRouter(registry, retry_handler=retry_handler, strategy=strategy)

    @pytest.mark.asyncio
    async def test_no_fallback_by_default(self, providers, retry_handler, clock):
        router = self.build(providers, RoutingStrategy.NONE, retry_handler, clock)
        await self._open_primary(router)

        assert router.route("shared").provider == "a"
        with pytest.raises(CircuitOpenError):
            await router.chat(make_request("shared"))

    @pytest.mark.asyncio
    async def test_round_robin_fallback(self, providers, retry_handler, clock):
        router = self.build(providers, "round_robin", retry_handler, clock)
        await self._open_primary(router)

        first = router.route("shared")
        second = router.route("shared")
        assert (first.provider, second.provider) == ("b", "c")
        assert first.metadata["fallback"] is True
        assert first.metadata["primary"] == "a"

    @pytest.mark.asyncio
    async def test_fastest_ties_use_registration_order(self, providers, retry_handler, clock):
        router = self.build(providers, RoutingStrategy.FASTEST, retry_handler, clock)
        await self._open_primary(router)

        response = await router.chat(make_request("shared"))
        assert response.provider == "b"

    @pytest.mark.asyncio
    async def test_least_loaded(self, providers, retry_handler, clock):
        router = self.build(providers, RoutingStrategy.LEAST_LOADED, retry_handler, clock)
        await self._open_primary(router)
        router._stats["b"].in_flight = 2

        assert router.route("shared").provider == "c"

    @pytest.mark.asyncio
    async def test_primary_returned_when_no_candidate(self, make_provider, retry_handler, clock):
        providers = [make_provider("a", ["solo"], outcomes=[AuthenticationError("bad key")])]
        router = self.build(providers, RoutingStrategy.ROUND_ROBIN, retry_handler, clock)
        await self._open_primary(router, "solo")

        assert router.route("solo").provider == "a"


class TestHelpers:
    def test_catalog_helpers(self, router):
        assert [m.id for m in router.get_all_models()] == ["gpt-x", "claude-x"]
        assert router.get_model_config("gpt-x").display_name == "GPT-X"
        assert router.get_model_config("nope") is None
        assert router.get_provider("anthropic").provider_id == "anthropic"
        assert [m.id for m in router.get_models_by_provider("openai")] == ["gpt-x"]

    def test_model_supports(self, router):
        assert router.model_supports("gpt-x", "functions") is True
        assert router.model_supports("gpt-x", "vision") is False
        assert router.model_supports("gpt-x", "streaming") is True
        assert router.model_supports("unknown", "functions") is False

    def test_get_model_clamps_options(self, router):
        handle = router.get_model("gpt-x", {"temperature": 5.0, "max_tokens": 99999})

        assert handle.provider == "openai"
        assert handle.options["temperature"] == 2.0
        assert handle.options["max_tokens"] == 1024

    @pytest.mark.asyncio
    async def test_health_check(self, router):
        result = await router.health_check()

        assert result["status"] == "healthy"
        assert set(result["providers"]) == {"openai", "anthropic"}
        assert result["providers"]["openai"]["circuit_state"] == "closed"

    @pytest.mark.asyncio
    async def test_close_closes_adapters(self, router, two_providers):
        await router.close()
        assert all(p.closed for p in two_providers)


class TestStreamingCancellation:
    @pytest.fixture
    def openai_router(self, mock_openai_client):
        provider = OpenAIProvider("sk-test-key", client=mock_openai_client)
        return ModelRouter(ProviderRegistry.from_adapters([provider]))

    @staticmethod
    def delta(content):
        return SimpleNamespace(
            choices=[SimpleNamespace(delta=SimpleNamespace(content=content), finish_reason=None)],
            usage=None,
        )

    @pytest.mark.asyncio
    async def test_cancel_between_chunks_stops_stream(self, openai_router, mock_openai_client):
        source_closed = asyncio.Event()

        async def vendor_stream():
            try:
                for i in range(5):
                    await asyncio.sleep(0)
                    yield self.delta(f"part{i} ")
            finally:
                source_closed.set()

        mock_openai_client.chat.completions.create.return_value = vendor_stream()
        token = CancellationToken()

        stream = await openai_router.chat(make_request("gpt-4o-mini", stream=True, cancel_token=token))
        received = []
        with pytest.raises(OperationCancelledError):
            async for chunk in stream:
                received.append(chunk.content)
                token.cancel()

        assert received == ["part0 "]
        assert source_closed.is_set()
        assert stream.closed

    @pytest.mark.asyncio
    async def test_cancel_aborts_pending_read(self, openai_router, mock_openai_client):
        aborted = asyncio.Event()

        async def vendor_stream():
            yield self.delta("Hello")
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                aborted.set()
                raise
            yield self.delta("never")

        mock_openai_client.chat.completions.create.return_value = vendor_stream()
        token = CancellationToken()

        stream = await openai_router.chat(make_request("gpt-4o-mini", stream=True, cancel_token=token))
        first = await stream.__anext__()
        asyncio.get_running_loop().call_later(0.01, token.cancel)

        with pytest.raises(OperationCancelledError):
            await stream.__anext__()
        assert first.content == "Hello"
        assert aborted.is_set()

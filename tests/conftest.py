"""Pytest configuration and fixtures."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from ragchat_core.config import get_settings
from ragchat_core.providers.base import BaseProvider, ChatResponse, ModelConfig

ENV_KEYS = [
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "GOOGLE_API_KEY",
    "OPENAI_BASE_URL",
    "ANTHROPIC_BASE_URL",
    "OPENAI_VECTOR_STORE_ID",
    "MAX_RETRIES",
    "FALLBACK_STRATEGY",
    "LOG_LEVEL",
    "LOG_FORMAT",
    "CIRCUIT_BREAKER_ENABLED",
]


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Isolate tests from the developer's environment and cached settings."""
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("ENVIRONMENT", "testing")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class FakeClock:
    """Manual monotonic clock; ``sleep`` advances it instead of waiting."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


@pytest.fixture
def clock():
    return FakeClock()


class ScriptedProvider(BaseProvider):
    """Provider whose ``chat`` replays scripted outcomes.

    Each outcome is an exception to raise or ``None`` for a normal reply; once
    the script runs out every call succeeds.
    """

    def __init__(self, provider_id, model_ids, outcomes=None, api_key="test-key"):
        self.provider_id = provider_id
        self.display_name = provider_id.title()
        self.MODELS = [
            ModelConfig(id=m, display_name=m.upper(), context_window=8192, max_output_tokens=1024)
            for m in model_ids
        ]
        super().__init__(api_key)
        self.outcomes = list(outcomes or [])
        self.calls = 0
        self.closed = False

    async def chat(self, request):
        self.calls += 1
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if outcome is not None:
                raise outcome
        return ChatResponse(
            content=f"{self.provider_id}:{request.model}",
            model=request.model,
            provider=self.provider_id,
            request_id=request.request_id,
        )

    async def close(self):
        self.closed = True


@pytest.fixture
def make_provider():
    """Factory for scripted providers."""
    return ScriptedProvider


@pytest.fixture
def mock_openai_client():
    """OpenAI SDK client with the chat, files and vector store endpoints mocked."""
    client = MagicMock()
    client.chat.completions.create = AsyncMock()
    client.models.list = AsyncMock(return_value=SimpleNamespace(data=[]))
    client.files.create = AsyncMock()
    client.files.delete = AsyncMock(return_value=SimpleNamespace(id="file", deleted=True))
    client.vector_stores.create = AsyncMock(return_value=SimpleNamespace(id="vs_new"))
    client.vector_stores.retrieve = AsyncMock()
    client.vector_stores.files.create = AsyncMock()
    client.vector_stores.files.retrieve = AsyncMock()
    client.vector_stores.files.delete = AsyncMock()
    client.vector_stores.files.list = AsyncMock()
    client.vector_stores.file_batches.create = AsyncMock()
    client.vector_stores.file_batches.retrieve = AsyncMock()
    client.close = AsyncMock()
    return client


@pytest.fixture
def mock_anthropic_client():
    client = MagicMock()
    client.messages.create = AsyncMock()
    client.models.list = AsyncMock(return_value=SimpleNamespace(data=[]))
    client.close = AsyncMock()
    return client

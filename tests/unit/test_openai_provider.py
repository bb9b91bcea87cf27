"""Test the OpenAI provider adapter."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from ragchat_core.exceptions import (
    AuthenticationError,
    InternalProviderError,
    InvalidRequestError,
    NetworkError,
    ProviderTimeoutError,
    QuotaExceededError,
    RateLimitError,
)
from ragchat_core.providers import ChatMessage, ChatRequest, ToolDefinition
from ragchat_core.providers.openai_provider import OpenAIProvider

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def status_error(cls, status, message="error", body=None, headers=None):
    response = httpx.Response(status, request=REQUEST, headers=headers or {})
    return cls(message, response=response, body=body)


def completion(content="Hello!", tool_calls=None, finish_reason="stop"):
    return SimpleNamespace(
        model="gpt-4o-mini-2024-07-18",
        choices=[
            SimpleNamespace(
                message=SimpleNamespace(content=content, tool_calls=tool_calls),
                finish_reason=finish_reason,
            )
        ],
        usage=SimpleNamespace(prompt_tokens=1000, completion_tokens=500),
    )


@pytest.fixture
def provider(mock_openai_client):
    return OpenAIProvider("sk-test-key", client=mock_openai_client)


def make_request(model="gpt-4o-mini", **kwargs):
    messages = kwargs.pop(
        "messages",
        [
            ChatMessage(role="system", content="Be brief."),
            ChatMessage(role="user", content="Hi"),
        ],
    )
    return ChatRequest(model=model, messages=messages, **kwargs)


class TestOpenAIProvider:
    def test_requires_api_key(self):
        with pytest.raises(AuthenticationError):
            OpenAIProvider("")

    def test_catalog(self, provider):
        assert {m.id for m in provider.models} == {
            "gpt-4-turbo-2024-04-09",
            "o1-mini",
            "gpt-4o",
            "gpt-4o-mini",
        }
        assert provider.get_model_config("o1-mini").supports_system_prompt is False

    def test_payload_shape(self, provider):
        request = make_request(temperature=3.0, max_tokens=100000, user="u-1")
        payload = provider.build_payload(request, provider._handle_for(request))

        assert payload["model"] == "gpt-4o-mini"
        assert payload["messages"][0] == {"role": "system", "content": "Be brief."}
        assert payload["temperature"] == 2.0
        assert payload["max_tokens"] == 16384
        assert payload["user"] == "u-1"
        assert "stream" not in payload

    def test_system_prompt_dropped_for_reasoning_model(self, provider):
        request = make_request(model="o1-mini")
        payload = provider.build_payload(request, provider._handle_for(request))

        assert [m["role"] for m in payload["messages"]] == ["user"]

    def test_tools_mapped(self, provider):
        tool = ToolDefinition(name="lookup", description="Find a doc", parameters={"type": "object"})
        request = make_request(tools=[tool], tool_choice={"name": "lookup"})
        payload = provider.build_payload(request, provider._handle_for(request))

        assert payload["tools"] == [
            {
                "type": "function",
                "function": {"name": "lookup", "description": "Find a doc", "parameters": {"type": "object"}},
            }
        ]
        assert payload["tool_choice"] == {"type": "function", "function": {"name": "lookup"}}

    def test_tools_skipped_without_function_support(self, provider):
        request = make_request(model="o1-mini", tools=[ToolDefinition(name="lookup")])
        payload = provider.build_payload(request, provider._handle_for(request))
        assert "tools" not in payload

    def test_request_not_mutated(self, provider):
        request = make_request(temperature=3.0)
        before = request.model_dump()
        provider.build_payload(request, provider._handle_for(request))
        assert request.model_dump() == before

    @pytest.mark.asyncio
    async def test_chat(self, provider, mock_openai_client):
        mock_openai_client.chat.completions.create.return_value = completion()

        response = await provider.chat(make_request())

        assert response.content == "Hello!"
        assert response.provider == "openai"
        assert response.finish_reason == "stop"
        assert response.usage.total_tokens == 1500
        assert response.usage.total_cost == pytest.approx(0.00015 + 0.0003)
        assert response.latency is not None

    @pytest.mark.asyncio
    async def test_chat_tool_calls(self, provider, mock_openai_client):
        call = SimpleNamespace(
            id="call_1", function=SimpleNamespace(name="lookup", arguments='{"q": "rag"}')
        )
        mock_openai_client.chat.completions.create.return_value = completion(
            content=None, tool_calls=[call], finish_reason="tool_calls"
        )

        response = await provider.chat(make_request())

        assert response.content == ""
        assert response.tool_calls[0].name == "lookup"
        assert response.tool_calls[0].arguments == {"q": "rag"}

    @pytest.mark.asyncio
    async def test_streaming(self, provider, mock_openai_client):
        def chunk(content=None, finish_reason=None, usage=None, choices=True):
            return SimpleNamespace(
                choices=[
                    SimpleNamespace(
                        delta=SimpleNamespace(content=content), finish_reason=finish_reason
                    )
                ]
                if choices
                else [],
                usage=usage,
            )

        async def stream():
            yield chunk("Hel")
            yield chunk("lo")
            yield chunk(finish_reason="stop")
            yield chunk(
                choices=False, usage=SimpleNamespace(prompt_tokens=10, completion_tokens=2)
            )

        mock_openai_client.chat.completions.create.return_value = stream()

        result = await provider.chat(make_request(stream=True))
        chunks = [c async for c in result]

        assert "".join(c.content for c in chunks) == "Hello"
        assert chunks[-1].is_final
        assert chunks[-1].finish_reason == "stop"
        assert chunks[-1].usage.total_tokens == 12
        payload = mock_openai_client.chat.completions.create.call_args.kwargs
        assert payload["stream_options"] == {"include_usage": True}

    @pytest.mark.asyncio
    async def test_unread_stream_releases_vendor_stream(self, provider, mock_openai_client):
        vendor_stream = MagicMock()
        vendor_stream.aclose = AsyncMock()
        mock_openai_client.chat.completions.create.return_value = vendor_stream

        async with await provider.chat(make_request(stream=True)) as stream:
            pass

        assert stream.closed
        vendor_stream.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_mid_stream_error_classified(self, provider, mock_openai_client):
        async def stream():
            yield SimpleNamespace(
                choices=[SimpleNamespace(delta=SimpleNamespace(content="Hi"), finish_reason=None)],
                usage=None,
            )
            raise openai.APIConnectionError(request=REQUEST)

        mock_openai_client.chat.completions.create.return_value = stream()
        result = await provider.chat(make_request(stream=True))

        with pytest.raises(NetworkError):
            async for _ in result:
                pass

    @pytest.mark.asyncio
    async def test_vendor_error_classified(self, provider, mock_openai_client):
        mock_openai_client.chat.completions.create.side_effect = status_error(
            openai.RateLimitError, 429, headers={"retry-after": "7"}
        )

        with pytest.raises(RateLimitError) as exc_info:
            await provider.chat(make_request())
        assert exc_info.value.retry_after == 7.0
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_unknown_model(self, provider):
        with pytest.raises(InvalidRequestError):
            await provider.chat(make_request(model="gpt-2"))

    @pytest.mark.asyncio
    async def test_health_check(self, provider, mock_openai_client):
        result = await provider.health_check()
        assert result["status"] == "healthy"

        mock_openai_client.models.list.side_effect = status_error(openai.AuthenticationError, 401)
        result = await provider.health_check()
        assert result["status"] == "unhealthy"
        assert result["error"] == "authentication"


class TestOpenAIClassification:
    @pytest.fixture
    def classify(self, provider):
        return provider.classify

    def test_timeout(self, classify):
        assert isinstance(classify(openai.APITimeoutError(request=REQUEST)), ProviderTimeoutError)

    def test_connection(self, classify):
        assert isinstance(classify(openai.APIConnectionError(request=REQUEST)), NetworkError)

    def test_auth(self, classify):
        assert isinstance(classify(status_error(openai.AuthenticationError, 401)), AuthenticationError)
        assert isinstance(classify(status_error(openai.PermissionDeniedError, 403)), AuthenticationError)

    def test_quota(self, classify):
        error = status_error(
            openai.RateLimitError,
            429,
            message="You exceeded your current quota",
            body={"code": "insufficient_quota", "message": "You exceeded your current quota"},
        )
        assert isinstance(classify(error), QuotaExceededError)

    def test_bad_request(self, classify):
        assert isinstance(classify(status_error(openai.BadRequestError, 400)), InvalidRequestError)
        assert isinstance(classify(status_error(openai.NotFoundError, 404)), InvalidRequestError)

    def test_server_error(self, classify):
        error = classify(status_error(openai.InternalServerError, 500))
        assert isinstance(error, InternalProviderError)
        assert error.status_code == 500

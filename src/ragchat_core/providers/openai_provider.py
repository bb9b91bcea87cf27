"""
OpenAI provider implementation with request shaping, error classification and streaming.
"""

import json
import logging
import time
from collections.abc import AsyncIterator
from typing import Any, Dict, List, Optional

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    BadRequestError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    UnprocessableEntityError,
)
from openai import AuthenticationError as OpenAIAuthError
from openai import RateLimitError as OpenAIRateLimitError

from ragchat_core.exceptions import (
    AuthenticationError,
    InvalidRequestError,
    NetworkError,
    ProviderError,
    ProviderTimeoutError,
    QuotaExceededError,
    RateLimitError,
    classify_error,
    classify_status,
    make_provider_error,
)

from .base import (
    BaseProvider,
    ChatRequest,
    ChatResponse,
    ChatResult,
    ModelConfig,
    ModelHandle,
    ProviderCapabilities,
    StreamChunk,
    ToolCall,
    TokenUsage,
    retry_after_seconds,
)

logger = logging.getLogger(__name__)


def parse_tool_arguments(raw: Optional[str]) -> Dict[str, Any] | str:
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def classify_openai_error(error: BaseException, timeout: Optional[float] = None) -> ProviderError:
    """Map OpenAI SDK exceptions onto the error taxonomy."""
    if isinstance(error, ProviderError):
        return error

    provider = "openai"
    message = str(error)

    # APITimeoutError subclasses APIConnectionError
    if isinstance(error, APITimeoutError):
        return ProviderTimeoutError(
            f"OpenAI request timeout after {timeout}s" if timeout else "OpenAI request timeout",
            provider=provider,
            cause=error,
        )
    if isinstance(error, APIConnectionError):
        return NetworkError("Failed to connect to OpenAI API", provider=provider, cause=error)
    if isinstance(error, (OpenAIAuthError, PermissionDeniedError)):
        return AuthenticationError(
            "Invalid OpenAI API key", provider=provider, status_code=error.status_code, cause=error
        )
    if isinstance(error, OpenAIRateLimitError):
        if getattr(error, "code", None) == "insufficient_quota" or "quota" in message.lower():
            return QuotaExceededError(
                "OpenAI quota exceeded. Please check your billing.",
                provider=provider,
                status_code=429,
                cause=error,
            )
        return RateLimitError(
            "OpenAI rate limit exceeded",
            provider=provider,
            status_code=429,
            cause=error,
            retry_after=retry_after_seconds(error.response),
        )
    if isinstance(error, (BadRequestError, NotFoundError, UnprocessableEntityError, ConflictError)):
        return InvalidRequestError(
            f"Invalid request to OpenAI: {message}",
            provider=provider,
            status_code=error.status_code,
            cause=error,
        )
    if isinstance(error, APIStatusError):
        kind = classify_status(error.status_code, message)
        return make_provider_error(
            kind, f"OpenAI API error: {message}", provider, error.status_code, error
        )

    return classify_error(error, provider)


class OpenAIProvider(BaseProvider):
    """OpenAI provider implementation with streaming support."""

    provider_id = "openai"
    display_name = "OpenAI"
    api_key_env = "OPENAI_API_KEY"
    capabilities = ProviderCapabilities(
        streaming=True, function_calling=True, vision=True, batch_requests=True
    )

    MODELS = [
        ModelConfig(
            id="gpt-4-turbo-2024-04-09",
            display_name="GPT-4 Turbo",
            context_window=128000,
            max_output_tokens=4096,
            input_cost_per_1k=0.01,
            output_cost_per_1k=0.03,
            supports_vision=True,
        ),
        ModelConfig(
            id="o1-mini",
            display_name="o1-mini",
            context_window=128000,
            max_output_tokens=65536,
            input_cost_per_1k=0.003,
            output_cost_per_1k=0.012,
            supports_functions=False,
            supports_system_prompt=False,
        ),
        ModelConfig(
            id="gpt-4o",
            display_name="GPT-4 Omni",
            context_window=128000,
            max_output_tokens=16384,
            input_cost_per_1k=0.005,
            output_cost_per_1k=0.015,
            supports_vision=True,
        ),
        ModelConfig(
            id="gpt-4o-mini",
            display_name="GPT-4 Omni Mini",
            context_window=128000,
            max_output_tokens=16384,
            input_cost_per_1k=0.00015,
            output_cost_per_1k=0.0006,
            supports_vision=True,
        ),
    ]

    def __init__(
        self,
        api_key: Optional[str],
        timeout: float = 60.0,
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        """
        Initialize OpenAI provider.

        Args:
            api_key: OpenAI API key
            timeout: Request timeout in seconds
            base_url: Optional API base URL
            client: Preconfigured client, mainly for tests
        """
        super().__init__(api_key, timeout)
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,  # We handle retries ourselves
        )

    def build_payload(self, request: ChatRequest, handle: ModelHandle) -> Dict[str, Any]:
        """Shape a vendor request for ``handle``'s model."""
        model = handle.model

        # Reasoning models reject system messages
        messages: List[Dict[str, Any]] = []
        for msg in request.messages:
            if msg.role == "system" and not model.supports_system_prompt:
                continue
            message: Dict[str, Any] = {"role": msg.role, "content": msg.content}
            if msg.name:
                message["name"] = msg.name
            messages.append(message)

        payload: Dict[str, Any] = {"model": handle.vendor_model_id, "messages": messages}
        for key in ("temperature", "top_p", "max_tokens", "frequency_penalty", "presence_penalty"):
            if key in handle.options:
                payload[key] = handle.options[key]

        if request.tools and model.supports_functions:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    },
                }
                for tool in request.tools
            ]
            if request.tool_choice is not None:
                payload["tool_choice"] = self._map_tool_choice(request.tool_choice)

        if request.user:
            payload["user"] = request.user
        if request.stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}

        return payload

    @staticmethod
    def _map_tool_choice(choice: Any) -> Any:
        if isinstance(choice, dict) and "name" in choice:
            return {"type": "function", "function": {"name": choice["name"]}}
        return choice

    async def chat(self, request: ChatRequest) -> ChatResult:
        """
        Generate a chat completion using OpenAI.

        Args:
            request: Chat request

        Returns:
            ChatResponse, or an async iterator of StreamChunk when streaming

        Raises:
            ProviderError: If an error occurs during generation
        """
        handle = self._handle_for(request)
        payload = self.build_payload(request, handle)
        self._log_request(request, handle)

        start_time = time.perf_counter()
        try:
            response = await self.client.chat.completions.create(**payload)
        except Exception as e:
            self._log_error(e, handle.vendor_model_id)
            raise self.classify(e) from e

        if request.stream:
            return self._open_stream(self._iter_stream(response, handle), request, source=response)

        chat_response = self._to_response(response, handle, request)
        chat_response.latency = time.perf_counter() - start_time
        self._log_response(chat_response)
        return chat_response

    def _to_response(self, response: Any, handle: ModelHandle, request: ChatRequest) -> ChatResponse:
        choice = response.choices[0]
        tool_calls = [
            ToolCall(
                id=call.id,
                name=call.function.name,
                arguments=parse_tool_arguments(call.function.arguments),
            )
            for call in (choice.message.tool_calls or [])
        ]

        usage: Optional[TokenUsage] = None
        if response.usage:
            usage = self._usage(
                handle.model, response.usage.prompt_tokens, response.usage.completion_tokens
            )

        return ChatResponse(
            content=choice.message.content or "",
            model=response.model,
            provider=self.provider_id,
            request_id=request.request_id,
            finish_reason=choice.finish_reason,
            usage=usage,
            tool_calls=tool_calls,
        )

    async def _iter_stream(self, stream: Any, handle: ModelHandle) -> AsyncIterator[StreamChunk]:
        finish_reason: Optional[str] = None
        usage: Optional[TokenUsage] = None

        async for chunk in stream:
            if getattr(chunk, "usage", None):
                usage = self._usage(
                    handle.model, chunk.usage.prompt_tokens, chunk.usage.completion_tokens
                )
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            if choice.finish_reason:
                finish_reason = choice.finish_reason
            if choice.delta and choice.delta.content:
                yield StreamChunk(content=choice.delta.content)

        yield StreamChunk(is_final=True, finish_reason=finish_reason, usage=usage)

    def classify(self, error: BaseException) -> ProviderError:
        """Map OpenAI SDK exceptions onto the error taxonomy."""
        return classify_openai_error(error, self.timeout)

    async def _ping(self) -> None:
        await self.client.models.list()

    async def close(self) -> None:
        await self.client.close()

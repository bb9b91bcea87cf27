"""
Anthropic provider implementation with message shaping, error classification and streaming.
"""

import logging
import time
from collections.abc import AsyncIterator
from typing import Any, Dict, List, Optional

from anthropic import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncAnthropic,
    BadRequestError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    UnprocessableEntityError,
)
from anthropic import AuthenticationError as AnthropicAuthError
from anthropic import RateLimitError as AnthropicRateLimitError

from ragchat_core.exceptions import (
    AuthenticationError,
    InternalProviderError,
    InvalidRequestError,
    NetworkError,
    ProviderError,
    ProviderTimeoutError,
    QuotaExceededError,
    RateLimitError,
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

DEFAULT_MAX_TOKENS = 4096
OVERLOADED_STATUS = 529


class AnthropicProvider(BaseProvider):
    """Anthropic provider implementation with streaming support."""

    provider_id = "anthropic"
    display_name = "Anthropic"
    api_key_env = "ANTHROPIC_API_KEY"
    capabilities = ProviderCapabilities(
        streaming=True, function_calling=True, vision=True, context_caching=True
    )
    temperature_range = (0.0, 1.0)

    MODELS = [
        ModelConfig(
            id="claude-3-5-sonnet-20241022",
            display_name="Claude 3.5 Sonnet",
            context_window=200000,
            max_output_tokens=8192,
            input_cost_per_1k=0.003,
            output_cost_per_1k=0.015,
            supports_vision=True,
        ),
        ModelConfig(
            id="claude-3-5-haiku-20241022",
            display_name="Claude 3.5 Haiku",
            context_window=200000,
            max_output_tokens=8192,
            input_cost_per_1k=0.001,
            output_cost_per_1k=0.005,
        ),
        ModelConfig(
            id="claude-3-opus-20240229",
            display_name="Claude 3 Opus",
            context_window=200000,
            max_output_tokens=4096,
            input_cost_per_1k=0.015,
            output_cost_per_1k=0.075,
            supports_vision=True,
        ),
    ]

    def __init__(
        self,
        api_key: Optional[str],
        timeout: float = 60.0,
        base_url: Optional[str] = None,
        client: Optional[AsyncAnthropic] = None,
    ) -> None:
        """
        Initialize Anthropic provider.

        Args:
            api_key: Anthropic API key
            timeout: Request timeout in seconds
            base_url: Optional API base URL
            client: Preconfigured client, mainly for tests
        """
        super().__init__(api_key, timeout)
        self.client = client or AsyncAnthropic(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,  # We handle retries ourselves
        )

    def build_payload(self, request: ChatRequest, handle: ModelHandle) -> Dict[str, Any]:
        """Shape a Messages API request for ``handle``'s model."""
        # Anthropic expects system messages to be separate
        system_parts: List[str] = []
        anthropic_messages: List[Dict[str, Any]] = []
        for msg in request.messages:
            if msg.role == "system":
                system_parts.append(msg.content)
            else:
                anthropic_messages.append({"role": msg.role, "content": msg.content})

        # Ensure conversation starts with user message
        if not anthropic_messages or anthropic_messages[0]["role"] != "user":
            anthropic_messages.insert(0, {"role": "user", "content": "Please continue."})

        # Merge consecutive messages with the same role
        cleaned_messages: List[Dict[str, Any]] = []
        for msg in anthropic_messages:
            if cleaned_messages and cleaned_messages[-1]["role"] == msg["role"]:
                cleaned_messages[-1]["content"] += "\n\n" + msg["content"]
            else:
                cleaned_messages.append(dict(msg))

        options = handle.options
        payload: Dict[str, Any] = {
            "model": handle.vendor_model_id,
            "messages": cleaned_messages,
            "max_tokens": options.get(
                "max_tokens", min(DEFAULT_MAX_TOKENS, handle.model.max_output_tokens)
            ),
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)

        # Penalties have no Anthropic equivalent and are dropped
        for key in ("temperature", "top_p", "top_k"):
            if key in options:
                payload[key] = options[key]

        if request.tools and handle.model.supports_functions and request.tool_choice != "none":
            payload["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.parameters,
                }
                for tool in request.tools
            ]
            tool_choice = self._map_tool_choice(request.tool_choice)
            if tool_choice:
                payload["tool_choice"] = tool_choice

        if request.user:
            payload["metadata"] = {"user_id": request.user}
        if request.stream:
            payload["stream"] = True

        return payload

    @staticmethod
    def _map_tool_choice(choice: Any) -> Optional[Dict[str, Any]]:
        if choice is None:
            return None
        if isinstance(choice, dict):
            return {"type": "tool", "name": choice["name"]}
        if choice == "required":
            return {"type": "any"}
        return {"type": "auto"}

    async def chat(self, request: ChatRequest) -> ChatResult:
        """
        Generate a chat completion using Anthropic.

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
            response = await self.client.messages.create(**payload)
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
        text_parts: List[str] = []
        tool_calls: List[ToolCall] = []
        for block in response.content or []:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=block.input or {}))

        usage: Optional[TokenUsage] = None
        if response.usage:
            usage = self._usage(
                handle.model, response.usage.input_tokens, response.usage.output_tokens
            )

        return ChatResponse(
            content="".join(text_parts),
            model=response.model,
            provider=self.provider_id,
            request_id=request.request_id,
            finish_reason=response.stop_reason,
            usage=usage,
            tool_calls=tool_calls,
        )

    async def _iter_stream(self, stream: Any, handle: ModelHandle) -> AsyncIterator[StreamChunk]:
        input_tokens = 0
        output_tokens = 0
        finish_reason: Optional[str] = None

        async for event in stream:
            if event.type == "message_start":
                input_tokens = event.message.usage.input_tokens
            elif event.type == "content_block_delta":
                if getattr(event.delta, "type", None) == "text_delta" and event.delta.text:
                    yield StreamChunk(content=event.delta.text)
            elif event.type == "message_delta":
                finish_reason = event.delta.stop_reason or finish_reason
                if event.usage:
                    output_tokens = event.usage.output_tokens

        yield StreamChunk(
            is_final=True,
            finish_reason=finish_reason,
            usage=self._usage(handle.model, input_tokens, output_tokens),
        )

    def classify(self, error: BaseException) -> ProviderError:
        """Map Anthropic SDK exceptions onto the error taxonomy."""
        if isinstance(error, ProviderError):
            return error

        provider = self.provider_id
        message = str(error)

        if isinstance(error, APITimeoutError):
            return ProviderTimeoutError(
                f"Anthropic request timeout after {self.timeout}s", provider=provider, cause=error
            )
        if isinstance(error, APIConnectionError):
            return NetworkError("Failed to connect to Anthropic API", provider=provider, cause=error)
        if isinstance(error, (AnthropicAuthError, PermissionDeniedError)):
            return AuthenticationError(
                "Invalid Anthropic API key", provider=provider, status_code=error.status_code, cause=error
            )
        if isinstance(error, AnthropicRateLimitError):
            return RateLimitError(
                "Anthropic rate limit exceeded",
                provider=provider,
                status_code=429,
                cause=error,
                retry_after=retry_after_seconds(error.response),
            )
        if "credit balance" in message.lower():
            return QuotaExceededError(
                "Anthropic credit balance is too low", provider=provider,
                status_code=getattr(error, "status_code", None), cause=error,
            )
        if isinstance(error, (BadRequestError, NotFoundError, UnprocessableEntityError, ConflictError)):
            return InvalidRequestError(
                f"Invalid request to Anthropic: {message}",
                provider=provider,
                status_code=error.status_code,
                cause=error,
            )
        if isinstance(error, APIStatusError):
            if error.status_code == OVERLOADED_STATUS:
                return InternalProviderError(
                    "Anthropic API is overloaded", provider=provider,
                    status_code=OVERLOADED_STATUS, cause=error,
                )
            kind = classify_status(error.status_code, message)
            return make_provider_error(
                kind, f"Anthropic API error: {message}", provider, error.status_code, error
            )

        return super().classify(error)

    async def _ping(self) -> None:
        await self.client.models.list(limit=1)

    async def close(self) -> None:
        await self.client.close()

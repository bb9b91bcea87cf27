"""
Base provider abstract class and common models for LLM providers.
"""

import inspect
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ragchat_core.cancellation import CancellationToken, run_cancellable
from ragchat_core.exceptions import (
    AuthenticationError,
    CoreError,
    InvalidRequestError,
    ProviderError,
    classify_error,
)

logger = logging.getLogger(__name__)


class ModelConfig(BaseModel):
    """Static description of one vendor model."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Model identifier used for routing")
    display_name: str = Field(..., description="Human readable model name")
    context_window: int = Field(..., description="Context window in tokens")
    max_output_tokens: int = Field(..., description="Maximum completion tokens")
    input_cost_per_1k: float = Field(default=0.0, description="USD per 1k prompt tokens")
    output_cost_per_1k: float = Field(default=0.0, description="USD per 1k completion tokens")
    supports_functions: bool = True
    supports_vision: bool = False
    supports_system_prompt: bool = True
    vendor_model_id: Optional[str] = Field(
        default=None, description="Model id sent to the vendor when it differs from id"
    )

    @property
    def api_model_id(self) -> str:
        return self.vendor_model_id or self.id

    def estimate_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        return (prompt_tokens / 1000) * self.input_cost_per_1k + (
            completion_tokens / 1000
        ) * self.output_cost_per_1k


class ProviderCapabilities(BaseModel):
    """Provider capabilities."""

    model_config = ConfigDict(frozen=True)

    streaming: bool = True
    function_calling: bool = True
    vision: bool = False
    audio_input: bool = False
    audio_output: bool = False
    batch_requests: bool = False
    context_caching: bool = False


class ChatMessage(BaseModel):
    """Represents a single chat message."""

    role: Literal["system", "user", "assistant"] = Field(..., description="Message role")
    content: str = Field(..., description="Message content")
    name: Optional[str] = Field(default=None, description="Optional author name")


class ToolDefinition(BaseModel):
    """A callable function exposed to the model."""

    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


ToolChoice = Union[Literal["auto", "none", "required"], Dict[str, Any]]


class ChatRequest(BaseModel):
    """Request for a chat completion. Never mutated by the core."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    model: str = Field(..., description="Model identifier")
    messages: List[ChatMessage] = Field(..., description="Ordered conversation")
    temperature: Optional[float] = Field(default=None, description="Sampling temperature")
    max_tokens: Optional[int] = Field(default=None, gt=0, description="Maximum tokens in response")
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stream: bool = Field(default=False, description="Whether to stream the response")
    tools: Optional[List[ToolDefinition]] = None
    tool_choice: Optional[ToolChoice] = None
    user: Optional[str] = None
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    cancel_token: Optional[CancellationToken] = Field(default=None, exclude=True)


class TokenUsage(BaseModel):
    """Token usage statistics."""

    prompt_tokens: int = Field(default=0, description="Number of tokens in the prompt")
    completion_tokens: int = Field(default=0, description="Number of tokens in the completion")
    total_tokens: int = Field(default=0, description="Total number of tokens")
    total_cost: Optional[float] = Field(default=None, description="Total cost in USD")


class ToolCall(BaseModel):
    """A function call requested by the model."""

    id: Optional[str] = None
    name: str
    arguments: Dict[str, Any] | str = Field(default_factory=dict)


class ChatResponse(BaseModel):
    """Represents a chat completion response."""

    content: str = Field(..., description="Response content")
    model: str = Field(..., description="Model used for generation")
    provider: str = Field(..., description="Provider id")
    request_id: Optional[str] = None
    finish_reason: Optional[str] = Field(default=None, description="Completion finish reason")
    usage: Optional[TokenUsage] = Field(default=None, description="Token usage statistics")
    tool_calls: List[ToolCall] = Field(default_factory=list)
    latency: Optional[float] = Field(default=None, description="Vendor call duration in seconds")


class StreamChunk(BaseModel):
    """A chunk of streamed response."""

    content: str = Field(default="", description="Chunk content")
    is_final: bool = Field(default=False, description="Whether this is the final chunk")
    finish_reason: Optional[str] = None
    usage: Optional[TokenUsage] = Field(default=None, description="Token usage (if final)")


ChatResult = Union[ChatResponse, "ChatStream"]


@dataclass(frozen=True)
class ModelHandle:
    """A resolved model plus the generation options clamped to its limits."""

    provider: str
    model: ModelConfig
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def vendor_model_id(self) -> str:
        return self.model.api_model_id


def clamp(value: Optional[float], low: float, high: float) -> Optional[float]:
    if value is None:
        return None
    return max(low, min(high, value))


def retry_after_seconds(response: Any) -> Optional[float]:
    """Read a ``retry-after`` header from a vendor HTTP response."""
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class BaseProvider(ABC):
    """Abstract base class for chat-capable providers."""

    provider_id: ClassVar[str] = "base"
    display_name: ClassVar[str] = "Base"
    capabilities: ClassVar[ProviderCapabilities] = ProviderCapabilities()
    MODELS: ClassVar[List[ModelConfig]] = []

    temperature_range: ClassVar[tuple[float, float]] = (0.0, 2.0)
    api_key_env: ClassVar[str] = ""

    def __init__(self, api_key: Optional[str], timeout: float = 60.0):
        """
        Initialize the provider.

        Args:
            api_key: API key for the provider
            timeout: Request timeout in seconds

        Raises:
            AuthenticationError: If no API key is supplied
        """
        if not api_key or not api_key.strip():
            raise AuthenticationError(
                f"{self.display_name} API key is required. Set {self.api_key_env}.",
                provider=self.provider_id,
            )
        self.api_key = api_key
        self.timeout = timeout
        self._models = {model.id: model for model in self.MODELS}

    @property
    def models(self) -> List[ModelConfig]:
        return list(self._models.values())

    def supports_model(self, model_id: str) -> bool:
        """Check if the provider supports a specific model."""
        return model_id in self._models

    def get_model_config(self, model_id: str) -> Optional[ModelConfig]:
        return self._models.get(model_id)

    def get_model(self, model_id: str, options: Optional[Dict[str, Any]] = None) -> ModelHandle:
        """Resolve ``model_id`` and clamp generation options to its limits."""
        model = self.get_model_config(model_id)
        if model is None:
            raise InvalidRequestError(
                f"Model {model_id} not found in {self.display_name} provider",
                provider=self.provider_id,
                status_code=404,
            )

        options = dict(options or {})
        low, high = self.temperature_range
        resolved: Dict[str, Any] = {}
        if options.get("temperature") is not None:
            resolved["temperature"] = clamp(options["temperature"], low, high)
        if options.get("top_p") is not None:
            resolved["top_p"] = clamp(options["top_p"], 0.0, 1.0)
        if options.get("max_tokens") is not None:
            resolved["max_tokens"] = min(int(options["max_tokens"]), model.max_output_tokens)
        for key in ("top_k", "frequency_penalty", "presence_penalty"):
            if options.get(key) is not None:
                resolved[key] = options[key]

        return ModelHandle(provider=self.provider_id, model=model, options=resolved)

    def _handle_for(self, request: ChatRequest) -> ModelHandle:
        return self.get_model(
            request.model,
            {
                "temperature": request.temperature,
                "top_p": request.top_p,
                "top_k": request.top_k,
                "max_tokens": request.max_tokens,
                "frequency_penalty": request.frequency_penalty,
                "presence_penalty": request.presence_penalty,
            },
        )

    @abstractmethod
    async def chat(self, request: ChatRequest) -> ChatResult:
        """
        Generate a chat completion.

        Returns a ``ChatResponse``, or an async iterator of ``StreamChunk``
        when ``request.stream`` is set.

        Raises:
            ProviderError: Classified vendor failure
        """

    def classify(self, error: BaseException) -> ProviderError:
        """Map a vendor exception onto the error taxonomy."""
        return classify_error(error, self.provider_id)

    async def health_check(self) -> Dict[str, Any]:
        """Check the vendor and report status and latency."""
        start = time.perf_counter()
        try:
            await self._ping()
        except Exception as e:
            error = self.classify(e)
            return {
                "provider": self.provider_id,
                "status": "unhealthy",
                "latency": None,
                "error": error.kind.value,
                "message": error.message,
            }
        return {
            "provider": self.provider_id,
            "status": "healthy",
            "latency": time.perf_counter() - start,
            "models": [model.id for model in self.models],
        }

    async def _ping(self) -> None:
        """Cheapest authenticated vendor call; overridden per provider."""

    async def close(self) -> None:
        """Release vendor client resources."""

    def _usage(self, model: ModelConfig, prompt_tokens: int, completion_tokens: int) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            total_cost=model.estimate_cost(prompt_tokens, completion_tokens),
        )

    def _open_stream(
        self, chunks: AsyncIterator[StreamChunk], request: ChatRequest, source: Any = None
    ) -> "ChatStream":
        """Wrap ``chunks`` so iteration honours the request's cancel token.

        ``source`` is the vendor stream or response released on close.
        """
        return ChatStream(self, chunks, source=source, cancel_token=request.cancel_token)

    def _log_request(self, request: ChatRequest, handle: ModelHandle) -> None:
        """
        Log request details.

        Args:
            request: Chat request
            handle: Resolved model handle
        """
        logger.info(
            f"Provider {self.provider_id} request",
            extra={
                "provider": self.provider_id,
                "model": handle.vendor_model_id,
                "request_id": request.request_id,
                "message_count": len(request.messages),
                "stream": request.stream,
                "max_tokens": handle.options.get("max_tokens"),
            },
        )

    def _log_response(self, response: ChatResponse) -> None:
        """
        Log response details.

        Args:
            response: Chat response
        """
        logger.info(
            f"Provider {self.provider_id} response",
            extra={
                "provider": self.provider_id,
                "model": response.model,
                "request_id": response.request_id,
                "duration": response.latency,
                "usage": response.usage.model_dump() if response.usage else None,
            },
        )

    def _log_error(self, error: BaseException, model: Optional[str] = None) -> None:
        """
        Log error details.

        Args:
            error: Exception that occurred
            model: Model identifier if available
        """
        logger.warning(
            f"Provider {self.provider_id} error",
            extra={
                "provider": self.provider_id,
                "model": model,
                "error_type": type(error).__name__,
                "error_message": str(error),
            },
        )


async def _next_chunk(chunks: AsyncIterator[StreamChunk]) -> Optional[StreamChunk]:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


class ChatStream:
    """Streamed reply returned by ``chat`` when ``request.stream`` is set.

    Errors raised while iterating are classified like any other vendor error.
    When the cancel token fires, the pending read is aborted, the vendor
    stream is closed and ``OperationCancelledError`` is raised. Closing the
    stream, or leaving an ``async with`` block, releases the vendor
    connection even if it was never iterated.
    """

    def __init__(
        self,
        provider: BaseProvider,
        chunks: AsyncIterator[StreamChunk],
        source: Any = None,
        cancel_token: Optional[CancellationToken] = None,
    ):
        self.provider = provider
        self._chunks = chunks
        self._source = source
        self._cancel_token = cancel_token
        self.closed = False

    def __aiter__(self) -> "ChatStream":
        return self

    async def __anext__(self) -> StreamChunk:
        if self.closed:
            raise StopAsyncIteration
        try:
            if self._cancel_token is not None:
                self._cancel_token.raise_if_cancelled()
            chunk = await run_cancellable(_next_chunk(self._chunks), self._cancel_token)
        except CoreError:
            await self.aclose()
            raise
        except Exception as e:
            self.provider._log_error(e)
            await self.aclose()
            raise self.provider.classify(e) from e

        if chunk is None:
            await self.aclose()
            raise StopAsyncIteration
        return chunk

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self._chunks.aclose()
        finally:
            if self._source is not None:
                close = getattr(self._source, "aclose", None) or getattr(self._source, "close", None)
                if close is not None:
                    result = close()
                    if inspect.isawaitable(result):
                        await result

    async def __aenter__(self) -> "ChatStream":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.aclose()
        return False

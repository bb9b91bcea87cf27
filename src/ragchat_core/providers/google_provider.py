"""
Google Gemini provider implementation over the Generative Language REST API.
"""

import json
import logging
import time
from collections.abc import AsyncIterator
from typing import Any, Dict, List, Optional

import httpx

from ragchat_core.exceptions import (
    AuthenticationError,
    ErrorKind,
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

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com"
API_VERSION = "v1beta"
TOP_K_RANGE = (1, 40)

FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
}


class GoogleProvider(BaseProvider):
    """Gemini provider; talks to the REST API with ``httpx``."""

    provider_id = "google"
    display_name = "Google"
    api_key_env = "GOOGLE_API_KEY"
    capabilities = ProviderCapabilities(
        streaming=True,
        function_calling=True,
        vision=True,
        audio_input=True,
        context_caching=True,
    )

    MODELS = [
        ModelConfig(
            id="gemini-2.0-flash-exp",
            display_name="Gemini 2.0 Flash (Experimental)",
            context_window=1048576,
            max_output_tokens=8192,
            supports_vision=True,
        ),
        ModelConfig(
            id="gemini-1.5-pro",
            display_name="Gemini 1.5 Pro",
            context_window=2097152,
            max_output_tokens=8192,
            input_cost_per_1k=0.00125,
            output_cost_per_1k=0.005,
            supports_vision=True,
        ),
        ModelConfig(
            id="gemini-1.5-flash",
            display_name="Gemini 1.5 Flash",
            context_window=1048576,
            max_output_tokens=8192,
            input_cost_per_1k=0.000075,
            output_cost_per_1k=0.0003,
            supports_vision=True,
        ),
        ModelConfig(
            id="gemini-1.5-flash-8b",
            display_name="Gemini 1.5 Flash-8B",
            context_window=1048576,
            max_output_tokens=8192,
            input_cost_per_1k=0.0000375,
            output_cost_per_1k=0.00015,
        ),
    ]

    def __init__(
        self,
        api_key: Optional[str],
        timeout: float = 60.0,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize Google provider.

        Args:
            api_key: Google AI Studio API key
            timeout: Request timeout in seconds
            base_url: API root, defaults to the public endpoint
            client: Preconfigured ``httpx.AsyncClient``, mainly for tests
        """
        super().__init__(api_key, timeout)
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    def _url(self, model_id: str, method: str) -> str:
        return f"{self.base_url}/{API_VERSION}/models/{model_id}:{method}"

    @property
    def _headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

    def build_payload(self, request: ChatRequest, handle: ModelHandle) -> Dict[str, Any]:
        """Shape a ``generateContent`` body for ``handle``'s model."""
        system_parts: List[Dict[str, str]] = []
        contents: List[Dict[str, Any]] = []
        for msg in request.messages:
            if msg.role == "system":
                system_parts.append({"text": msg.content})
                continue
            role = "model" if msg.role == "assistant" else "user"
            if contents and contents[-1]["role"] == role:
                contents[-1]["parts"].append({"text": msg.content})
            else:
                contents.append({"role": role, "parts": [{"text": msg.content}]})

        payload: Dict[str, Any] = {"contents": contents}
        if system_parts and handle.model.supports_system_prompt:
            payload["systemInstruction"] = {"parts": system_parts}

        options = handle.options
        generation_config: Dict[str, Any] = {}
        if "temperature" in options:
            generation_config["temperature"] = options["temperature"]
        if "top_p" in options:
            generation_config["topP"] = options["top_p"]
        if "top_k" in options:
            low, high = TOP_K_RANGE
            generation_config["topK"] = max(low, min(high, int(options["top_k"])))
        if "max_tokens" in options:
            generation_config["maxOutputTokens"] = options["max_tokens"]
        if "frequency_penalty" in options:
            generation_config["frequencyPenalty"] = options["frequency_penalty"]
        if "presence_penalty" in options:
            generation_config["presencePenalty"] = options["presence_penalty"]
        if generation_config:
            payload["generationConfig"] = generation_config

        if request.tools and handle.model.supports_functions:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {
                            "name": tool.name,
                            "description": tool.description,
                            "parameters": tool.parameters,
                        }
                        for tool in request.tools
                    ]
                }
            ]
            tool_config = self._map_tool_choice(request.tool_choice)
            if tool_config:
                payload["toolConfig"] = tool_config

        return payload

    @staticmethod
    def _map_tool_choice(choice: Any) -> Optional[Dict[str, Any]]:
        if choice is None:
            return None
        if isinstance(choice, dict):
            return {
                "functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": [choice["name"]]}
            }
        mode = {"auto": "AUTO", "none": "NONE", "required": "ANY"}[choice]
        return {"functionCallingConfig": {"mode": mode}}

    async def chat(self, request: ChatRequest) -> ChatResult:
        """
        Generate a chat completion using Gemini.

        Raises:
            ProviderError: If an error occurs during generation
        """
        handle = self._handle_for(request)
        payload = self.build_payload(request, handle)
        self._log_request(request, handle)

        if request.stream:
            url = self._url(handle.vendor_model_id, "streamGenerateContent")
            http_request = self.client.build_request(
                "POST", url, params={"alt": "sse"}, headers=self._headers, json=payload
            )
            try:
                response = await self.client.send(http_request, stream=True)
                if response.status_code >= 400:
                    await response.aread()
            except Exception as e:
                self._log_error(e, handle.vendor_model_id)
                raise self.classify(e) from e

            if response.status_code >= 400:
                await response.aclose()
                error = self._error_from_response(response)
                self._log_error(error, handle.vendor_model_id)
                raise error
            return self._open_stream(self._iter_stream(response, handle), request, source=response)

        start_time = time.perf_counter()
        try:
            response = await self.client.post(
                self._url(handle.vendor_model_id, "generateContent"),
                headers=self._headers,
                json=payload,
            )
            if response.status_code >= 400:
                raise self._error_from_response(response)
            data = response.json()
        except Exception as e:
            self._log_error(e, handle.vendor_model_id)
            raise self.classify(e) from e

        chat_response = self._to_response(data, handle, request)
        chat_response.latency = time.perf_counter() - start_time
        self._log_response(chat_response)
        return chat_response

    def _to_response(
        self, data: Dict[str, Any], handle: ModelHandle, request: ChatRequest
    ) -> ChatResponse:
        text, tool_calls, finish_reason = self._parse_candidate(data)
        return ChatResponse(
            content=text,
            model=data.get("modelVersion") or handle.vendor_model_id,
            provider=self.provider_id,
            request_id=request.request_id,
            finish_reason=finish_reason,
            usage=self._parse_usage(data, handle),
            tool_calls=tool_calls,
        )

    @staticmethod
    def _parse_candidate(data: Dict[str, Any]) -> tuple[str, List[ToolCall], Optional[str]]:
        candidates = data.get("candidates") or []
        if not candidates:
            return "", [], None

        candidate = candidates[0]
        text_parts: List[str] = []
        tool_calls: List[ToolCall] = []
        for part in (candidate.get("content") or {}).get("parts", []):
            if "text" in part:
                text_parts.append(part["text"])
            elif "functionCall" in part:
                call = part["functionCall"]
                tool_calls.append(ToolCall(name=call["name"], arguments=call.get("args") or {}))

        raw_reason = candidate.get("finishReason")
        finish_reason = FINISH_REASONS.get(raw_reason, raw_reason.lower() if raw_reason else None)
        return "".join(text_parts), tool_calls, finish_reason

    def _parse_usage(self, data: Dict[str, Any], handle: ModelHandle) -> Optional[TokenUsage]:
        metadata = data.get("usageMetadata")
        if not metadata:
            return None
        return self._usage(
            handle.model,
            metadata.get("promptTokenCount", 0),
            metadata.get("candidatesTokenCount", 0),
        )

    async def _iter_stream(
        self, response: httpx.Response, handle: ModelHandle
    ) -> AsyncIterator[StreamChunk]:
        finish_reason: Optional[str] = None
        usage: Optional[TokenUsage] = None
        try:
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                body = line[len("data:"):].strip()
                if not body:
                    continue
                data = json.loads(body)
                if "error" in data:
                    raise self._error_from_envelope(data["error"], response.status_code)

                text, _, reason = self._parse_candidate(data)
                finish_reason = reason or finish_reason
                usage = self._parse_usage(data, handle) or usage
                if text:
                    yield StreamChunk(content=text)
        finally:
            await response.aclose()

        yield StreamChunk(is_final=True, finish_reason=finish_reason, usage=usage)

    def _error_from_response(self, response: httpx.Response) -> ProviderError:
        try:
            envelope = response.json().get("error") or {}
        except ValueError:
            envelope = {"message": response.text}
        error = self._error_from_envelope(envelope, response.status_code)
        if isinstance(error, RateLimitError):
            error.retry_after = retry_after_seconds(response)
        return error

    def _error_from_envelope(self, envelope: Dict[str, Any], status_code: int) -> ProviderError:
        """Classify a ``{"error": {...}}`` body from the Gemini API."""
        provider = self.provider_id
        message = envelope.get("message") or f"HTTP {status_code}"
        status = envelope.get("status", "")
        code = envelope.get("code") or status_code

        if "API key not valid" in message or status in ("UNAUTHENTICATED", "PERMISSION_DENIED"):
            return AuthenticationError(f"Invalid Google API key: {message}", provider=provider, status_code=code)
        if status == "RESOURCE_EXHAUSTED" or code == 429:
            if "quota" in message.lower() and "billing" in message.lower():
                return QuotaExceededError(message, provider=provider, status_code=code)
            return RateLimitError(f"Google rate limit exceeded: {message}", provider=provider, status_code=code)
        if status == "DEADLINE_EXCEEDED":
            return ProviderTimeoutError(message, provider=provider, status_code=code)
        if status == "UNAVAILABLE":
            return make_provider_error(ErrorKind.INTERNAL, message, provider, code)

        kind = classify_status(code, message)
        return make_provider_error(kind, f"Google API error: {message}", provider, code)

    def classify(self, error: BaseException) -> ProviderError:
        """Map ``httpx`` and payload errors onto the error taxonomy."""
        if isinstance(error, ProviderError):
            return error
        if isinstance(error, httpx.TimeoutException):
            return ProviderTimeoutError(
                f"Google request timeout after {self.timeout}s", provider=self.provider_id, cause=error
            )
        if isinstance(error, httpx.TransportError):
            return NetworkError(
                "Failed to connect to Google API", provider=self.provider_id, cause=error
            )
        return super().classify(error)

    async def _ping(self) -> None:
        response = await self.client.get(
            f"{self.base_url}/{API_VERSION}/models", headers=self._headers, params={"pageSize": 1}
        )
        if response.status_code >= 400:
            raise self._error_from_response(response)

    async def close(self) -> None:
        await self.client.aclose()

"""Error taxonomy for the ragchat core.

Every failure that leaves a provider adapter or the vector store client is
either a ``ProviderError`` tagged with one ``ErrorKind`` or one of the
synthetic errors raised by the core itself (open circuit, unknown model,
cancellation, processing timeout).
"""

import asyncio
from enum import Enum
from typing import Any, Dict, Optional

import httpx


class ErrorKind(str, Enum):
    """Closed set of provider failure kinds."""

    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    QUOTA_EXCEEDED = "quota_exceeded"
    INVALID_REQUEST = "invalid_request"
    NETWORK = "network"
    TIMEOUT = "timeout"
    INTERNAL = "internal"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE_KINDS

    @property
    def http_status(self) -> int:
        """HTTP status the application layer should answer with."""
        return _HTTP_STATUS[self]


_RETRYABLE_KINDS = frozenset(
    {ErrorKind.RATE_LIMIT, ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.INTERNAL}
)

_HTTP_STATUS = {
    ErrorKind.AUTHENTICATION: 401,
    ErrorKind.RATE_LIMIT: 429,
    ErrorKind.QUOTA_EXCEEDED: 402,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.NETWORK: 503,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.INTERNAL: 500,
}


class CoreError(Exception):
    """Base exception for the ragchat core."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "INTERNAL_ERROR"
        self.status_code = status_code
        self.details = details or {}


class ProviderError(CoreError):
    """A vendor failure normalized to one ``ErrorKind``.

    ``retryable`` is derived from ``kind`` and cannot be overridden.
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
        kind: Optional[ErrorKind] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        if kind is not None:
            self.kind = kind
        super().__init__(
            message,
            error_code=self.kind.value.upper(),
            status_code=status_code,
            details=details,
        )
        self.provider = provider
        self.cause = cause
        if provider:
            self.details["provider"] = provider

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(kind={self.kind.value!r}, provider={self.provider!r}, "
            f"status_code={self.status_code!r}, message={self.message!r})"
        )


class AuthenticationError(ProviderError):
    """Invalid, missing or revoked API key."""

    kind = ErrorKind.AUTHENTICATION


class RateLimitError(ProviderError):
    """Vendor rate limit hit."""

    kind = ErrorKind.RATE_LIMIT

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class QuotaExceededError(ProviderError):
    """Billing quota or credit exhausted."""

    kind = ErrorKind.QUOTA_EXCEEDED


class InvalidRequestError(ProviderError):
    """The vendor rejected the request as malformed."""

    kind = ErrorKind.INVALID_REQUEST


class NetworkError(ProviderError):
    """Connection could not be established or was dropped."""

    kind = ErrorKind.NETWORK


class ProviderTimeoutError(ProviderError):
    """The vendor did not answer in time."""

    kind = ErrorKind.TIMEOUT


class InternalProviderError(ProviderError):
    """Vendor-side failure or an unrecognized error."""

    kind = ErrorKind.INTERNAL


_KIND_TO_CLASS = {
    ErrorKind.AUTHENTICATION: AuthenticationError,
    ErrorKind.RATE_LIMIT: RateLimitError,
    ErrorKind.QUOTA_EXCEEDED: QuotaExceededError,
    ErrorKind.INVALID_REQUEST: InvalidRequestError,
    ErrorKind.NETWORK: NetworkError,
    ErrorKind.TIMEOUT: ProviderTimeoutError,
    ErrorKind.INTERNAL: InternalProviderError,
}


def make_provider_error(
    kind: ErrorKind,
    message: str,
    provider: Optional[str] = None,
    status_code: Optional[int] = None,
    cause: Optional[BaseException] = None,
) -> ProviderError:
    """Build the ``ProviderError`` subclass for ``kind``."""
    return _KIND_TO_CLASS[kind](
        message, provider=provider, status_code=status_code, cause=cause
    )


class CircuitOpenError(CoreError):
    """The circuit breaker refused the call; the vendor was not contacted."""

    def __init__(self, provider: str, retry_after: Optional[float] = None):
        message = f"Circuit breaker for provider '{provider}' is open"
        super().__init__(message, error_code="CIRCUIT_OPEN", status_code=503)
        self.provider = provider
        self.retry_after = retry_after
        self.details["provider"] = provider


class ModelNotFoundError(CoreError):
    """No registered provider advertises the requested model id."""

    def __init__(self, model_id: str):
        super().__init__(
            f"Model '{model_id}' not found in any configured provider",
            error_code="MODEL_NOT_FOUND",
            status_code=404,
        )
        self.model_id = model_id


class OperationCancelledError(CoreError):
    """The caller's cancellation token fired."""

    def __init__(self, message: str = "Operation cancelled"):
        super().__init__(message, error_code="CANCELLED", status_code=499)


class ProcessingTimeoutError(CoreError):
    """A vector store batch did not reach a terminal state in time."""

    def __init__(self, batch_id: str, waited: float):
        super().__init__(
            f"Processing timeout: batch '{batch_id}' still in progress after {waited:.1f}s",
            error_code="PROCESSING_TIMEOUT",
            status_code=504,
        )
        self.batch_id = batch_id
        self.waited = waited


class ConfigurationError(CoreError):
    """Missing or invalid configuration."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIG_ERROR", status_code=500, **kwargs)


def classify_status(status_code: Optional[int], message: str = "") -> ErrorKind:
    """Map an HTTP status code, then message substrings, to an ``ErrorKind``."""
    text = message.lower()

    if status_code is not None:
        if status_code in (401, 403):
            return ErrorKind.AUTHENTICATION
        if status_code == 402:
            return ErrorKind.QUOTA_EXCEEDED
        if status_code == 429:
            if "quota" in text and ("billing" in text or "insufficient" in text):
                return ErrorKind.QUOTA_EXCEEDED
            return ErrorKind.RATE_LIMIT
        if status_code == 408:
            return ErrorKind.TIMEOUT
        if status_code >= 500:
            return ErrorKind.INTERNAL
        if 400 <= status_code < 500:
            return ErrorKind.INVALID_REQUEST

    if "rate limit" in text or "too many requests" in text or "429" in text:
        return ErrorKind.RATE_LIMIT
    if "unauthorized" in text or "401" in text or "api key" in text:
        return ErrorKind.AUTHENTICATION
    if "quota" in text or "billing" in text or "402" in text:
        return ErrorKind.QUOTA_EXCEEDED
    if "timeout" in text or "timed out" in text:
        return ErrorKind.TIMEOUT
    if "network" in text or "connection" in text:
        return ErrorKind.NETWORK
    if "invalid" in text or "400" in text:
        return ErrorKind.INVALID_REQUEST
    return ErrorKind.INTERNAL


def classify_error(error: BaseException, provider: Optional[str] = None) -> ProviderError:
    """Normalize any exception into a ``ProviderError``.

    Unrecognized errors become ``INTERNAL`` and are therefore retryable.
    """
    if isinstance(error, ProviderError):
        if provider and not error.provider:
            error.provider = provider
        return error

    message = str(error) or type(error).__name__
    prefix = f"{provider}: " if provider else ""

    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return ProviderTimeoutError(f"{prefix}request timed out", provider=provider, cause=error)

    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        kind = classify_status(status, message)
        return make_provider_error(kind, f"{prefix}{message}", provider, status, error)

    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return NetworkError(f"{prefix}{message}", provider=provider, cause=error)

    status_code = getattr(error, "status_code", None)
    if not isinstance(status_code, int):
        status_code = None
    kind = classify_status(status_code, message)
    return make_provider_error(kind, f"{prefix}{message}", provider, status_code, error)


__all__ = [
    "ErrorKind",
    "CoreError",
    "ProviderError",
    "AuthenticationError",
    "RateLimitError",
    "QuotaExceededError",
    "InvalidRequestError",
    "NetworkError",
    "ProviderTimeoutError",
    "InternalProviderError",
    "CircuitOpenError",
    "ModelNotFoundError",
    "OperationCancelledError",
    "ProcessingTimeoutError",
    "ConfigurationError",
    "classify_status",
    "classify_error",
    "make_provider_error",
]

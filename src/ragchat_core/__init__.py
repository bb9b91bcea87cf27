"""Multi-provider chat routing and vector store client."""

__version__ = "0.1.0"


def get_version():
    return __version__


from ragchat_core.cancellation import CancellationToken
from ragchat_core.exceptions import (
    CircuitOpenError,
    CoreError,
    ErrorKind,
    ModelNotFoundError,
    OperationCancelledError,
    ProcessingTimeoutError,
    ProviderError,
)
from ragchat_core.orchestrator import (
    CircuitBreaker,
    ModelRouter,
    ProviderRegistry,
    RetryConfig,
    RetryHandler,
    RoutingStrategy,
)
from ragchat_core.providers import ChatMessage, ChatRequest, ChatResponse, StreamChunk
from ragchat_core.vector_store import FileUpload, VectorStoreClient

__all__ = [
    "__version__",
    "get_version",
    "CancellationToken",
    "CircuitOpenError",
    "CoreError",
    "ErrorKind",
    "ModelNotFoundError",
    "OperationCancelledError",
    "ProcessingTimeoutError",
    "ProviderError",
    "CircuitBreaker",
    "ModelRouter",
    "ProviderRegistry",
    "RetryConfig",
    "RetryHandler",
    "RoutingStrategy",
    "ChatMessage",
    "ChatRequest",
    "ChatResponse",
    "StreamChunk",
    "FileUpload",
    "VectorStoreClient",
]

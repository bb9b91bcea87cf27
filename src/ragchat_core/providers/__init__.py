from .anthropic_provider import AnthropicProvider
from .base import (
    BaseProvider,
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ChatResult,
    ChatStream,
    ModelConfig,
    ModelHandle,
    ProviderCapabilities,
    StreamChunk,
    TokenUsage,
    ToolCall,
    ToolDefinition,
)
from .google_provider import GoogleProvider
from .openai_provider import OpenAIProvider

__all__ = [
    "BaseProvider",
    "ChatMessage",
    "ChatRequest",
    "ChatResponse",
    "ChatResult",
    "ChatStream",
    "ModelConfig",
    "ModelHandle",
    "ProviderCapabilities",
    "StreamChunk",
    "TokenUsage",
    "ToolCall",
    "ToolDefinition",
    "OpenAIProvider",
    "AnthropicProvider",
    "GoogleProvider",
]

"""Completion gateway layer — turns, gateway protocols, litellm backend."""

from ensemble.llm.message import (
    ContentPart,
    Message,
    TextPart,
    TokenUsage,
    ToolCall,
    ToolCallPart,
    ToolResultPart,
)
from ensemble.llm.provider import (
    Completion,
    CompletionConfig,
    CompletionGateway,
    LiteLLMGateway,
    ProviderConfig,
    StreamingGateway,
    create_gateway,
)
from ensemble.llm.streaming import StreamEvent, StreamingCompletionAdapter, collect_stream

__all__ = [
    "ContentPart",
    "Message",
    "TextPart",
    "TokenUsage",
    "ToolCall",
    "ToolCallPart",
    "ToolResultPart",
    "Completion",
    "CompletionConfig",
    "CompletionGateway",
    "LiteLLMGateway",
    "ProviderConfig",
    "StreamingGateway",
    "create_gateway",
    "StreamEvent",
    "StreamingCompletionAdapter",
    "collect_stream",
]

"""Type definitions for both protocol shapes."""

from . import anthropic
from .chat import (
    ChatCompletionChunk,
    ChatCompletionResponse,
    ChatCompletionsRequest,
    ChatMessage,
    Choice,
    ContentPart,
    Delta,
    FunctionCall,
    ReasoningDetail,
    ToolCall,
    Usage,
)

__all__ = [
    "anthropic",
    "ChatCompletionChunk",
    "ChatCompletionResponse",
    "ChatCompletionsRequest",
    "ChatMessage",
    "Choice",
    "ContentPart",
    "Delta",
    "FunctionCall",
    "ReasoningDetail",
    "ToolCall",
    "Usage",
]

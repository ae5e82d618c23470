"""Anthropic Messages <-> OpenAI Chat Completions translation."""

from .stream_adapter import (
    ChatToMessagesStreamAdapter,
    StreamState,
    translate_chunk_to_events,
    translate_error_event,
)
from .translator import (
    chat_completion_to_messages,
    messages_to_chat_completions,
    translate_model_name,
)

__all__ = [
    "ChatToMessagesStreamAdapter",
    "StreamState",
    "chat_completion_to_messages",
    "messages_to_chat_completions",
    "translate_chunk_to_events",
    "translate_error_event",
    "translate_model_name",
]

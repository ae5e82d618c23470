"""API module for the gateway."""

from .routes import chat_completions, handle_openai_request, messages_endpoint

__all__ = [
    "chat_completions",
    "handle_openai_request",
    "messages_endpoint",
]

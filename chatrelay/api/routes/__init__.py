"""API routes for the gateway."""

from .chat import chat_completions, handle_openai_request
from .messages import messages_endpoint

__all__ = [
    "chat_completions",
    "handle_openai_request",
    "messages_endpoint",
]

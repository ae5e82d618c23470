"""chatrelay - Anthropic Messages gateway in front of an OpenAI-compatible upstream

Accepts Anthropic Messages and OpenAI Chat Completions requests and forwards
them to a Copilot-style chat completions upstream.

This module provides:
- Request/response translation between the two protocols, streaming included
- An adaptive rate limiter shared by every upstream call
- Initiator inference for the upstream's ``X-Initiator`` header

Example:
    >>> from chatrelay import create_app, load_config
    >>> import uvicorn
    >>> uvicorn.run(create_app(load_config()), host="127.0.0.1", port=4141)
"""

from .app import create_app
from .config_loader import load_config
from .logging import setup_logging

__version__ = "0.1.0"

__all__ = [
    "create_app",
    "load_config",
    "setup_logging",
]

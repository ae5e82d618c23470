"""Inbound authentication."""

from .api_key import (
    ApiKeyValidator,
    extract_bearer_token,
    get_api_key_validator,
    set_api_key_validator,
)

__all__ = [
    "ApiKeyValidator",
    "extract_bearer_token",
    "get_api_key_validator",
    "set_api_key_validator",
]

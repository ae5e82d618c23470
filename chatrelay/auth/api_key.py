"""Inbound API key authentication for the gateway."""

from __future__ import annotations

import hmac
import logging
from typing import Any, Mapping, Optional

from fastapi import HTTPException, Request

logger = logging.getLogger("chatrelay")

DEFAULT_HEADER_NAME = "x-api-key"


def extract_bearer_token(auth_header: Optional[str]) -> Optional[str]:
    """Return the token of an ``Authorization: Bearer <token>`` header."""
    if not auth_header:
        return None
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class ApiKeyValidator:
    """Checks inbound requests against the configured ``auth.api_key``.

    With no key configured every request is accepted.
    """

    def __init__(self, api_key: Optional[str] = None) -> None:
        self.api_key = api_key or None

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None) -> "ApiKeyValidator":
        auth_cfg = (config or {}).get("auth") or {}
        if not isinstance(auth_cfg, Mapping):
            auth_cfg = {}
        api_key = auth_cfg.get("api_key")
        return cls(str(api_key) if api_key else None)

    @property
    def enabled(self) -> bool:
        return self.api_key is not None

    def validate_request(self, request: Request) -> None:
        """Validate an incoming request.

        Accepts ``Authorization: Bearer <key>`` or ``x-api-key: <key>``.

        Raises:
            HTTPException: 401 for a missing or wrong key.
        """
        if self.api_key is None:
            return

        provided_key = extract_bearer_token(request.headers.get("Authorization"))
        if not provided_key:
            provided_key = request.headers.get(DEFAULT_HEADER_NAME)

        if not provided_key:
            logger.warning("Request rejected: missing API key")
            raise HTTPException(
                status_code=401,
                detail={
                    "error": {
                        "message": "Unauthorized. Provide Authorization: Bearer <API_KEY>.",
                        "type": "authentication_error",
                        "code": "missing_api_key",
                    }
                },
            )

        # Constant-time comparison
        if not hmac.compare_digest(provided_key.encode("utf-8"), self.api_key.encode("utf-8")):
            logger.warning("Request rejected: invalid API key")
            raise HTTPException(
                status_code=401,
                detail={
                    "error": {
                        "message": "Invalid API key",
                        "type": "authentication_error",
                        "code": "invalid_api_key",
                    }
                },
            )


# Singleton instance
_validator: ApiKeyValidator | None = None


def get_api_key_validator() -> ApiKeyValidator:
    """Get the singleton ApiKeyValidator instance."""
    global _validator
    if _validator is None:
        _validator = ApiKeyValidator()
    return _validator


def set_api_key_validator(validator: ApiKeyValidator | None) -> None:
    """Replace (or clear) the singleton validator."""
    global _validator
    _validator = validator

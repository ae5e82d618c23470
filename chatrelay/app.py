"""FastAPI application factory for the gateway."""

import logging
from typing import Any, Mapping

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from .api.routes import chat_completions, messages_endpoint
from .auth import ApiKeyValidator, set_api_key_validator
from .core.registry import set_upstream_client
from .ratelimit import configure_rate_limiter, get_rate_limit_settings, reset_rate_limiter
from .upstream import UpstreamClient, get_upstream_settings

logger = logging.getLogger("chatrelay")


async def health() -> PlainTextResponse:
    """GET / - liveness probe."""
    return PlainTextResponse("Server running")


def create_app(config: Mapping[str, Any] | None = None) -> FastAPI:
    """Build the gateway app and wire its process-wide collaborators.

    Installs a fresh rate limiter, upstream client and API key validator,
    replacing any left over from a previous call.
    """
    config = config or {}

    rate_limit_settings = get_rate_limit_settings(config)
    if rate_limit_settings.enabled:
        rate_limiter = configure_rate_limiter(rate_limit_settings)
        logger.info(
            f"Rate limiter enabled: interval={rate_limit_settings.interval_ms}ms, "
            f"burst={rate_limit_settings.burst}, max_queue={rate_limit_settings.max_queue}"
        )
    else:
        reset_rate_limiter()
        rate_limiter = None
        logger.info("Rate limiter disabled")

    upstream_settings = get_upstream_settings(config)
    set_upstream_client(UpstreamClient(upstream_settings, rate_limiter))

    validator = ApiKeyValidator.from_config(config)
    set_api_key_validator(validator)

    app = FastAPI(title="chatrelay")
    app.get("/")(health)
    app.post("/v1/messages")(messages_endpoint)
    app.post("/v1/chat/completions")(chat_completions)

    logger.info(
        f"Gateway app created: upstream={upstream_settings.base_url}, "
        f"inbound auth {'enabled' if validator.enabled else 'disabled'}"
    )
    return app

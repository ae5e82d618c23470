"""OpenAI-compatible chat completions endpoint.

Bodies are forwarded unchanged; the gateway only adds the initiator header
and admission control.
"""

import json
import logging
from typing import AsyncIterator, Mapping

from fastapi import HTTPException, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect

from ...auth import get_api_key_validator
from ...core.exceptions import UpstreamError
from ...core.registry import get_upstream_client
from ...initiator import infer_initiator_from_chat_messages
from ...ratelimit import CancelToken, RateLimitCancelled, RateLimitQueueFull, watch_disconnect
from ...upstream import UpstreamStream

logger = logging.getLogger("chatrelay")


def _invalid_request(message: str, code: str) -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={
            "error": {
                "message": message,
                "type": "invalid_request_error",
                "code": code,
            }
        },
    )


def _upstream_error_response(exc: UpstreamError) -> Response:
    """Relay the upstream's error body when it is JSON, else wrap the message."""
    if exc.body:
        try:
            json.loads(exc.body)
        except json.JSONDecodeError:
            pass
        else:
            return Response(
                content=exc.body,
                status_code=exc.status_code,
                media_type="application/json",
            )
    return JSONResponse(
        {
            "error": {
                "message": exc.body or exc.message,
                "type": "upstream_error",
                "code": exc.status_code,
            }
        },
        status_code=exc.status_code,
    )


async def handle_openai_request(request: Request) -> Response:
    """Handle OpenAI-compatible chat completions requests.

    Args:
        request: The FastAPI request object.

    Returns:
        A JSONResponse, or a StreamingResponse relaying upstream SSE bytes.
    """
    get_api_key_validator().validate_request(request)

    try:
        body = await request.body()
        payload = json.loads(body or b"{}")
    except ClientDisconnect:
        logger.warning("ClientDisconnect while reading chat completions body")
        return Response(status_code=499)
    except json.JSONDecodeError as exc:
        logger.error(f"Invalid JSON payload: {exc}")
        raise _invalid_request("Invalid JSON payload", "invalid_json") from exc

    if not isinstance(payload, Mapping):
        logger.error("Payload must be a JSON object")
        raise _invalid_request("Request body must be a JSON object", "invalid_json_shape")

    model_name = payload.get("model")
    if not isinstance(model_name, str) or not model_name:
        logger.error("Request missing model name")
        raise _invalid_request("You must provide a model parameter", "missing_parameter")

    messages = payload.get("messages")
    if not messages or not isinstance(messages, list):
        logger.error("Request missing or invalid messages array")
        raise _invalid_request("You must provide a messages array", "missing_parameter")

    initiator = infer_initiator_from_chat_messages(
        messages,
        user_agent=request.headers.get("user-agent"),
    )

    is_stream = bool(payload.get("stream"))
    logger.info(
        f"Processing request for model {model_name}, stream={is_stream}, initiator={initiator}"
    )

    cancel_token = CancelToken()
    watcher = watch_disconnect(cancel_token, request.is_disconnected)
    try:
        result = await get_upstream_client().create_chat_completions(
            payload,
            initiator=initiator,
            cancel_token=cancel_token,
        )
    except RateLimitQueueFull as exc:
        logger.warning(f"Rejected chat completions request: {exc}")
        raise HTTPException(
            status_code=429,
            detail={
                "error": {
                    "message": str(exc),
                    "type": "rate_limit_error",
                    "code": "queue_full",
                }
            },
        ) from exc
    except RateLimitCancelled:
        logger.info("Client disconnected while waiting for admission")
        return Response(status_code=499)
    except UpstreamError as exc:
        logger.error(f"Error processing request for model {model_name}: {exc.message}")
        return _upstream_error_response(exc)
    finally:
        watcher.cancel()

    if isinstance(result, UpstreamStream):

        async def passthrough() -> AsyncIterator[bytes]:
            try:
                async for chunk in result.aiter_bytes():
                    yield chunk
            finally:
                await result.aclose()

        return StreamingResponse(
            passthrough(),
            media_type=result.headers.get("content-type", "text/event-stream"),
            headers={"cache-control": "no-cache"},
            background=BackgroundTask(result.aclose),
        )

    logger.info(f"Request for model {model_name} completed successfully")
    return JSONResponse(result)


async def chat_completions(request: Request) -> Response:
    """Chat completions endpoint - OpenAI compatible.

    POST /v1/chat/completions
    """
    logger.info("Received chat completions request")
    return await handle_openai_request(request)

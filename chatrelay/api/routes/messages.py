"""Anthropic-compatible Messages API endpoint."""

import asyncio
import json
import logging
import time
import uuid
from typing import Any, AsyncIterator, Mapping, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect

from ...auth import get_api_key_validator
from ...core.exceptions import InvalidRequestError, UpstreamError
from ...core.registry import get_upstream_client
from ...initiator import infer_initiator_from_anthropic_messages
from ...messages import (
    ChatToMessagesStreamAdapter,
    chat_completion_to_messages,
    messages_to_chat_completions,
)
from ...ratelimit import CancelToken, RateLimitCancelled, RateLimitQueueFull, watch_disconnect
from ...upstream import UpstreamStream

logger = logging.getLogger("chatrelay")

# Upstream statuses mapped onto Anthropic error types
_ERROR_TYPES = {
    400: "invalid_request_error",
    401: "authentication_error",
    403: "permission_error",
    404: "not_found_error",
    413: "request_too_large",
    429: "rate_limit_error",
    529: "overloaded_error",
}


def _anthropic_error_response(
    message: str,
    *,
    error_type: str = "invalid_request_error",
    status_code: int = 400,
    error_code: Optional[str] = None,
    param: Optional[str] = None,
) -> JSONResponse:
    error: dict[str, Any] = {"type": error_type, "message": message}
    if error_code:
        error["code"] = error_code
    if param:
        error["param"] = param
    payload = {"type": "error", "error": error}
    return JSONResponse(payload, status_code=status_code)


def _upstream_error_message(exc: UpstreamError) -> str:
    """Prefer the upstream's own error message when its body carries one."""
    if exc.body:
        try:
            parsed = json.loads(exc.body)
        except json.JSONDecodeError:
            return exc.body
        if isinstance(parsed, Mapping):
            error = parsed.get("error")
            if isinstance(error, Mapping) and error.get("message"):
                return str(error["message"])
        return exc.body
    return exc.message


def _validate_payload(payload: Any) -> None:
    """Reject bodies that cannot be translated.

    Raises:
        InvalidRequestError: With ``param`` set to the offending field
    """
    if not isinstance(payload, Mapping):
        raise InvalidRequestError("Request body must be a JSON object", "invalid_json_shape")

    model = payload.get("model")
    if not isinstance(model, str) or not model:
        raise InvalidRequestError(
            "You must provide a model parameter", "missing_parameter", param="model"
        )

    messages = payload.get("messages")
    if not isinstance(messages, list):
        raise InvalidRequestError(
            "messages: field required and must be a list", "missing_parameter", param="messages"
        )
    for index, message in enumerate(messages):
        if not isinstance(message, Mapping) or message.get("role") not in ("user", "assistant"):
            raise InvalidRequestError(
                f"messages.{index}: role must be 'user' or 'assistant'",
                "invalid_message",
                param=f"messages.{index}.role",
            )
        content = message.get("content")
        if not isinstance(content, (str, list)):
            raise InvalidRequestError(
                f"messages.{index}: content must be a string or a list of blocks",
                "invalid_message",
                param=f"messages.{index}.content",
            )
        if isinstance(content, list) and not all(
            isinstance(block, Mapping) and isinstance(block.get("type"), str)
            for block in content
        ):
            raise InvalidRequestError(
                f"messages.{index}: every content block needs a type",
                "invalid_message",
                param=f"messages.{index}.content",
            )


async def messages_endpoint(request: Request) -> Response:
    """POST /v1/messages - Anthropic Messages API compatible endpoint."""
    # Generate request ID for log correlation
    req_id = uuid.uuid4().hex[:8]
    start_time = time.perf_counter()

    client_host = request.client.host if request.client else "unknown"
    logger.info(f"[{req_id}] Messages API request from {client_host}")

    get_api_key_validator().validate_request(request)

    try:
        body = await request.body()
        payload = json.loads(body or b"{}")
    except ClientDisconnect:
        elapsed = time.perf_counter() - start_time
        logger.warning(f"[{req_id}] ClientDisconnect after {elapsed:.3f}s while reading body")
        return Response(status_code=499)  # Client Closed Request
    except json.JSONDecodeError:
        return _anthropic_error_response(
            "Invalid JSON payload",
            error_code="invalid_json",
        )

    try:
        _validate_payload(payload)
    except InvalidRequestError as exc:
        logger.warning(f"[{req_id}] Rejected request: {exc.message}")
        return _anthropic_error_response(exc.message, error_code=exc.code, param=exc.param)

    initiator = infer_initiator_from_anthropic_messages(
        payload["messages"],
        anthropic_beta=request.headers.get("anthropic-beta"),
        user_agent=request.headers.get("user-agent"),
    )

    openai_payload = messages_to_chat_completions(payload)
    is_stream = bool(openai_payload.get("stream"))

    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            f"[{req_id}] Translated to OpenAI format: model={openai_payload.get('model')}, "
            f"messages_count={len(openai_payload.get('messages', []))}, "
            f"stream={is_stream}, initiator={initiator}"
        )

    cancel_token = CancelToken()
    watcher = watch_disconnect(cancel_token, request.is_disconnected)
    try:
        result = await get_upstream_client().create_chat_completions(
            openai_payload,
            initiator=initiator,
            cancel_token=cancel_token,
        )
    except RateLimitQueueFull as exc:
        logger.warning(f"[{req_id}] Rejected: {exc}")
        return _anthropic_error_response(
            str(exc),
            error_type="rate_limit_error",
            status_code=429,
            error_code="queue_full",
        )
    except RateLimitCancelled:
        logger.info(f"[{req_id}] Client disconnected while waiting for admission")
        return Response(status_code=499)
    except UpstreamError as exc:
        elapsed = time.perf_counter() - start_time
        logger.error(
            f"[{req_id}] Upstream error after {elapsed:.3f}s: status={exc.status_code} {exc.message}"
        )
        return _anthropic_error_response(
            _upstream_error_message(exc),
            error_type=_ERROR_TYPES.get(exc.status_code, "api_error"),
            status_code=exc.status_code,
        )
    finally:
        watcher.cancel()

    if isinstance(result, UpstreamStream):
        elapsed = time.perf_counter() - start_time
        logger.info(
            f"[{req_id}] Starting translated streaming response for {payload['model']}, "
            f"setup took {elapsed:.3f}s"
        )
        adapter = ChatToMessagesStreamAdapter()

        async def adapted_stream() -> AsyncIterator[bytes]:
            try:
                async for frame in adapter.adapt_stream(result.aiter_chunks()):
                    yield frame
            except asyncio.CancelledError:
                logger.info(f"[{req_id}] Client went away mid-stream")
                raise
            finally:
                await result.aclose()

        return StreamingResponse(
            adapted_stream(),
            media_type="text/event-stream",
            headers={"cache-control": "no-cache"},
            background=BackgroundTask(result.aclose),
        )

    response_payload = chat_completion_to_messages(result)
    elapsed = time.perf_counter() - start_time
    logger.info(
        f"[{req_id}] Completed non-streaming response for {payload['model']}, "
        f"stop_reason={response_payload['stop_reason']}, took {elapsed:.3f}s"
    )
    return JSONResponse(response_payload)

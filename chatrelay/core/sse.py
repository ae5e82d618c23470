"""SSE (Server-Sent Events) framing helpers and stream error detection."""

import json
import logging
from typing import Any, AsyncIterator, Mapping, Optional

logger = logging.getLogger("chatrelay")

DONE_SENTINEL = "[DONE]"


def format_sse_event(event_type: str, data: Mapping[str, Any]) -> bytes:
    """Serialize one event as an ``event:``/``data:`` SSE frame."""
    json_str = json.dumps(data, ensure_ascii=False)
    return f"event: {event_type}\ndata: {json_str}\n\n".encode("utf-8")


async def iter_sse_json(lines: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    """Yield the JSON objects carried by ``data:`` lines of an SSE stream.

    Stops at the ``[DONE]`` sentinel. Comment lines, ``event:`` lines and
    undecodable payloads are skipped.
    """
    async for raw_line in lines:
        line = raw_line.strip()
        if not line or not line.startswith("data:"):
            continue

        data_str = line[5:].strip()
        if data_str == DONE_SENTINEL:
            return

        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            logger.debug(f"Skipping undecodable SSE payload: {data_str[:100]}")
            continue

        if isinstance(data, dict):
            yield data


def detect_stream_error(chunk: Mapping[str, Any]) -> Optional[str]:
    """
    Check if a decoded stream chunk is an error object instead of a completion chunk.

    Returns an error message if an error is detected, None otherwise.

    Detects patterns like:
    - {"type":"error","error":{...}}
    - Generic OpenAI style: {"error":{...}}
    """
    if chunk.get("type") == "error":
        error_obj = chunk.get("error") or {}
        if isinstance(error_obj, Mapping):
            error_msg = error_obj.get("message") or str(error_obj)
        else:
            error_msg = str(error_obj) or "unknown error"
        return f"SSE stream error: {error_msg}"

    error_obj = chunk.get("error")
    if isinstance(error_obj, Mapping):
        error_msg = error_obj.get("message") or str(error_obj)
        error_type = error_obj.get("type", "unknown")
        return f"SSE stream error: {error_msg} (type={error_type})"

    return None

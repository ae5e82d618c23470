"""Stream adapter for converting OpenAI Chat Completions chunks to Anthropic Messages SSE.

The translation itself is a pure step function, ``translate_chunk_to_events``,
that takes one decoded upstream chunk plus the request's ``StreamState`` and
returns the Anthropic events it produces. ``ChatToMessagesStreamAdapter``
drives it over an async chunk iterator and serializes the events.

OpenAI Chat Completion chunks:
    {"choices":[{"delta":{"role":"assistant"},"index":0}]}
    {"choices":[{"delta":{"reasoning_content":"Let me think"},"index":0}]}
    {"choices":[{"delta":{"content":"Hello"},"index":0}]}
    {"choices":[{"delta":{"tool_calls":[...]},"index":0}]}
    {"choices":[{"delta":{},"finish_reason":"stop","index":0}]}

Anthropic Messages Events:
    event: message_start
    data: {"type":"message_start","message":{...}}

    event: content_block_start
    data: {"type":"content_block_start","index":0,"content_block":{"type":"text","text":""}}

    event: content_block_delta
    data: {"type":"content_block_delta","index":0,"delta":{"type":"text_delta","text":"Hello"}}

    event: content_block_stop
    data: {"type":"content_block_stop","index":0}

    event: message_delta
    data: {"type":"message_delta","delta":{"stop_reason":"end_turn"},"usage":{"output_tokens":10}}

    event: message_stop
    data: {"type":"message_stop"}

Block discipline: at most one block is open at a time, and
``content_block_index`` only advances when a block is closed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping, Optional

from ..core.ids import sanitize_id
from ..core.sse import format_sse_event
from ..types import anthropic
from .translator import _convert_stop_reason, _convert_usage

logger = logging.getLogger("chatrelay")

STREAM_ERROR_MESSAGE = "An unexpected error occurred during streaming."


@dataclass
class ToolCallInfo:
    """Where an upstream tool call (keyed by its delta index) was opened."""

    id: str
    name: str
    block_index: int


@dataclass
class StreamState:
    """Per-request translation state. Never shared between requests."""

    message_start_sent: bool = False
    content_block_open: bool = False
    current_content_block_type: Optional[str] = None
    content_block_index: int = 0
    tool_calls: dict[int, ToolCallInfo] = field(default_factory=dict)
    closed_blocks: set[int] = field(default_factory=set)
    finished: bool = False


def _is_tool_block_open(state: StreamState) -> bool:
    if not state.content_block_open:
        return False
    return any(
        tc.block_index == state.content_block_index for tc in state.tool_calls.values()
    )


def _stop_current_block(
    state: StreamState,
    events: list[anthropic.StreamEvent],
    advance_index: bool = True,
) -> None:
    if not state.content_block_open:
        return

    events.append({"type": "content_block_stop", "index": state.content_block_index})
    state.closed_blocks.add(state.content_block_index)
    if advance_index:
        state.content_block_index += 1
    state.content_block_open = False
    state.current_content_block_type = None


def _ensure_block_open(
    state: StreamState,
    events: list[anthropic.StreamEvent],
    block_type: str,
    content_block: dict[str, Any],
) -> None:
    if state.content_block_open and state.current_content_block_type != block_type:
        _stop_current_block(state, events)

    if state.content_block_open:
        return

    events.append({
        "type": "content_block_start",
        "index": state.content_block_index,
        "content_block": content_block,
    })
    state.content_block_open = True
    state.current_content_block_type = block_type


def _thinking_delta(delta: Mapping[str, Any]) -> tuple[Optional[str], Optional[str]]:
    """Gather reasoning text and signature from every field upstreams use.

    Text is concatenated in a fixed order: ``thinking``, ``reasoning_content``,
    ``reasoning``, then ``reasoning_details`` entries.
    """
    parts: list[str] = []
    signature = (
        delta.get("thinking_signature")
        or delta.get("reasoning_signature")
        or delta.get("signature")
        or None
    )

    for key in ("thinking", "reasoning_content", "reasoning"):
        value = delta.get(key)
        if isinstance(value, str) and value:
            parts.append(value)

    for detail in delta.get("reasoning_details") or []:
        if not isinstance(detail, Mapping):
            continue
        text = detail.get("thinking") or detail.get("reasoning") or detail.get("text")
        if text:
            parts.append(text)
        if not signature and detail.get("signature"):
            signature = detail["signature"]

    return ("".join(parts) if parts else None), signature


def _message_start(chunk: Mapping[str, Any]) -> anthropic.StreamEvent:
    usage = _convert_usage(chunk.get("usage"))
    usage["output_tokens"] = 0
    return {
        "type": "message_start",
        "message": {
            "id": chunk.get("id", ""),
            "type": "message",
            "role": "assistant",
            "content": [],
            "model": chunk.get("model", ""),
            "stop_reason": None,
            "stop_sequence": None,
            "usage": usage,
        },
    }


def _process_tool_call_deltas(
    state: StreamState,
    events: list[anthropic.StreamEvent],
    tool_calls: list[Mapping[str, Any]],
) -> None:
    for tool_call in tool_calls:
        tc_index = tool_call.get("index", 0)
        function = tool_call.get("function") or {}

        if tool_call.get("id") and function.get("name"):
            # A new call always starts its own block
            _stop_current_block(state, events)

            block_index = state.content_block_index
            info = ToolCallInfo(
                id=sanitize_id(tool_call["id"]),
                name=function["name"],
                block_index=block_index,
            )
            state.tool_calls[tc_index] = info

            events.append({
                "type": "content_block_start",
                "index": block_index,
                "content_block": {
                    "type": "tool_use",
                    "id": info.id,
                    "name": info.name,
                    "input": {},
                },
            })
            state.content_block_open = True
            state.current_content_block_type = "tool_use"

        arguments = function.get("arguments")
        if not arguments:
            continue

        info = state.tool_calls.get(tc_index)
        if info is None:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"Dropping arguments for unknown tool call index {tc_index}")
            continue

        events.append({
            "type": "content_block_delta",
            "index": info.block_index,
            "delta": {"type": "input_json_delta", "partial_json": arguments},
        })


def _finish(
    state: StreamState,
    events: list[anthropic.StreamEvent],
    finish_reason: str,
    usage: Mapping[str, Any] | None,
) -> None:
    # Tool blocks left open by interleaved calls are closed first, in order
    dangling = sorted(
        {
            tc.block_index
            for tc in state.tool_calls.values()
            if tc.block_index != state.content_block_index
            and tc.block_index not in state.closed_blocks
        }
    )
    for block_index in dangling:
        events.append({"type": "content_block_stop", "index": block_index})
        state.closed_blocks.add(block_index)

    _stop_current_block(state, events, advance_index=False)

    events.append({
        "type": "message_delta",
        "delta": {
            "stop_reason": _convert_stop_reason(finish_reason),
            "stop_sequence": None,
        },
        "usage": _convert_usage(usage),
    })
    events.append({"type": "message_stop"})
    state.finished = True


def translate_chunk_to_events(
    chunk: Mapping[str, Any],
    state: StreamState,
) -> list[anthropic.StreamEvent]:
    """Translate one upstream chunk into zero or more Anthropic stream events.

    Args:
        chunk: A decoded OpenAI ``chat.completion.chunk`` object
        state: The request's stream state; mutated in place

    Returns:
        The events to emit, in order
    """
    events: list[anthropic.StreamEvent] = []

    if state.finished:
        return events

    choices = chunk.get("choices") or []
    if not choices:
        return events

    choice = choices[0]
    delta = choice.get("delta") or {}

    if not state.message_start_sent:
        events.append(_message_start(chunk))
        state.message_start_sent = True

    thinking, signature = _thinking_delta(delta)
    if thinking or signature:
        thinking_block: dict[str, Any] = {"type": "thinking", "thinking": ""}
        if signature:
            thinking_block["signature"] = signature
        _ensure_block_open(state, events, "thinking", thinking_block)

        if thinking:
            events.append({
                "type": "content_block_delta",
                "index": state.content_block_index,
                "delta": {"type": "thinking_delta", "thinking": thinking},
            })
        if signature:
            events.append({
                "type": "content_block_delta",
                "index": state.content_block_index,
                "delta": {"type": "signature_delta", "signature": signature},
            })

    content = delta.get("content")
    if content:
        if _is_tool_block_open(state):
            _stop_current_block(state, events)

        _ensure_block_open(state, events, "text", {"type": "text", "text": ""})
        events.append({
            "type": "content_block_delta",
            "index": state.content_block_index,
            "delta": {"type": "text_delta", "text": content},
        })

    tool_calls = delta.get("tool_calls")
    if tool_calls:
        _process_tool_call_deltas(state, events, tool_calls)

    finish_reason = choice.get("finish_reason")
    if finish_reason:
        _finish(state, events, finish_reason, chunk.get("usage"))

    return events


def translate_error_event() -> anthropic.StreamEvent:
    """The single event sent when the upstream stream fails mid-flight."""
    return {
        "type": "error",
        "error": {"type": "api_error", "message": STREAM_ERROR_MESSAGE},
    }


class ChatToMessagesStreamAdapter:
    """Converts an upstream chat completion chunk stream to Anthropic Messages SSE.

    Holds one ``StreamState`` for the lifetime of a single streaming request.
    """

    def __init__(self, message_id: Optional[str] = None, model: Optional[str] = None):
        """Initialize the stream adapter.

        Args:
            message_id: Overrides the upstream chunk id in ``message_start``
            model: Overrides the upstream model name in ``message_start``
        """
        self.message_id = message_id
        self.model = model
        self.state = StreamState()

    def process_chunk(self, chunk: Mapping[str, Any]) -> list[anthropic.StreamEvent]:
        """Run one chunk through the state machine."""
        events = translate_chunk_to_events(chunk, self.state)
        for event in events:
            if event.get("type") == "message_start":
                if self.message_id:
                    event["message"]["id"] = self.message_id
                if self.model:
                    event["message"]["model"] = self.model
        return events

    async def adapt_stream(
        self,
        chunks: AsyncIterator[Mapping[str, Any]],
    ) -> AsyncIterator[bytes]:
        """Transform decoded upstream chunks into Anthropic Messages SSE frames.

        An upstream failure, or a stream that ends before any
        ``finish_reason``, produces exactly one ``error`` frame and ends the
        stream without closing open blocks.

        Args:
            chunks: Decoded ``chat.completion.chunk`` objects, in arrival order

        Yields:
            SSE formatted bytes
        """
        try:
            async for chunk in chunks:
                for event in self.process_chunk(chunk):
                    yield format_sse_event(event["type"], event)
                if self.state.finished:
                    break
        except Exception as exc:
            logger.error(f"Upstream stream failed mid-flight: {exc}")
        else:
            if self.state.finished:
                return
            logger.warning("Upstream stream ended without a finish_reason")

        error_event = translate_error_event()
        yield format_sse_event(error_event["type"], error_event)

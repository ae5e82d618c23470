"""Anthropic <-> OpenAI Messages translation.

This module translates between Anthropic Messages API format and OpenAI Chat
Completions API format, so Anthropic-format requests can be served by an
OpenAI-compatible upstream.

Key mappings:
- Anthropic system (top-level) -> OpenAI system message
- Anthropic content blocks -> OpenAI content / tool_calls / tool messages
- Anthropic tools -> OpenAI functions/tools
- Anthropic tool_choice -> OpenAI tool_choice
- Anthropic thinking -> OpenAI reasoning
- OpenAI reasoning fields -> Anthropic thinking blocks

Tool-call ids are passed through ``sanitize_id`` in both directions.

Reference:
- Anthropic Messages API: https://docs.anthropic.com/en/api/messages
- OpenAI Chat Completions: https://platform.openai.com/docs/api-reference/chat
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from typing import Any, Mapping, Optional, Sequence

from ..core.ids import sanitize_id
from ..types import anthropic
from ..types.chat import ChatCompletionsRequest, ChatMessage, ContentPart, ToolCall

logger = logging.getLogger("chatrelay")

# Dated sub-variants the upstream does not serve, collapsed to their family.
MODEL_ALIASES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"^claude-sonnet-4-.*"), "claude-sonnet-4"),
    (re.compile(r"^claude-opus-4-.*"), "claude-opus-4"),
)

STOP_REASONS = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "content_filter": "refusal",
}
DEFAULT_STOP_REASON = "end_turn"

BLOCK_SEPARATOR = "\n\n"


def translate_model_name(model: str) -> str:
    """Collapse dated model variants onto the family name the upstream knows."""
    for pattern, family in MODEL_ALIASES:
        if pattern.match(model):
            return family
    return model


# =============================================================================
# Request translation (Anthropic -> OpenAI)
# =============================================================================


def _convert_anthropic_image_to_openai(block: Mapping[str, Any]) -> ContentPart:
    """Convert Anthropic image block to OpenAI image_url content part.

    Anthropic format:
        {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "..."}}
        {"type": "image", "source": {"type": "url", "url": "https://..."}}

    OpenAI format:
        {"type": "image_url", "image_url": {"url": "data:image/png;base64,..."}}
        {"type": "image_url", "image_url": {"url": "https://..."}}
    """
    source = block.get("source") or {}
    source_type = source.get("type", "")

    if source_type == "url":
        url = source.get("url", "")
    else:
        media_type = source.get("media_type", "image/png")
        data = source.get("data", "")
        url = f"data:{media_type};base64,{data}"

    return {"type": "image_url", "image_url": {"url": url}}


def _convert_anthropic_document_to_openai(block: Mapping[str, Any]) -> ContentPart:
    """Convert Anthropic document block to an OpenAI content part.

    Image documents become image parts; anything else becomes a text
    placeholder since chat completions has no document part.
    """
    source = block.get("source") or {}
    media_type = source.get("media_type", "application/pdf")

    if source.get("type") == "base64" and media_type.startswith("image/"):
        return _convert_anthropic_image_to_openai({"type": "image", "source": source})

    doc_name = block.get("title") or block.get("name") or "document"
    return {"type": "text", "text": f"[Document: {doc_name} ({media_type})]"}


def _is_structured_block(block: Mapping[str, Any]) -> bool:
    """Return True for blocks that cannot be flattened into plain text."""
    block_type = block.get("type")
    if block_type == "image":
        return True
    if block_type == "document":
        source = block.get("source") or {}
        return source.get("type") == "base64" and str(
            source.get("media_type", "")
        ).startswith("image/")
    return False


def _block_text(block: Mapping[str, Any]) -> Optional[str]:
    block_type = block.get("type")
    if block_type == "text":
        return block.get("text", "")
    if block_type == "thinking":
        return block.get("thinking", "")
    return None


def _map_content(
    content: str | Sequence[Mapping[str, Any]] | None,
) -> str | list[ContentPart] | None:
    """Map Anthropic message content onto OpenAI message content.

    Text-only content collapses to one string (blocks joined by a blank
    line). Structured parts are kept only when a block can't be expressed as
    text, e.g. an image.
    """
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return None

    blocks = [block for block in content if isinstance(block, Mapping)]

    if not any(_is_structured_block(block) for block in blocks):
        texts: list[str] = []
        for block in blocks:
            text = _block_text(block)
            if text is not None:
                texts.append(text)
            elif block.get("type") == "document":
                texts.append(_convert_anthropic_document_to_openai(block)["text"])
        return BLOCK_SEPARATOR.join(texts)

    parts: list[ContentPart] = []
    for block in blocks:
        block_type = block.get("type")
        text = _block_text(block)
        if text is not None:
            parts.append({"type": "text", "text": text})
        elif block_type == "image":
            parts.append(_convert_anthropic_image_to_openai(block))
        elif block_type == "document":
            parts.append(_convert_anthropic_document_to_openai(block))
        else:
            logger.debug(f"Dropping unsupported content block type: {block_type}")
    return parts


def _serialize_tool_input(input_data: Any) -> str:
    """Serialize tool input to JSON string for OpenAI format."""
    if isinstance(input_data, str):
        return input_data
    return json.dumps(input_data if input_data is not None else {}, ensure_ascii=False)


def _convert_system_to_openai(
    system: str | Sequence[Mapping[str, Any]] | None,
) -> Optional[ChatMessage]:
    """Convert Anthropic top-level system to OpenAI system message.

    Anthropic allows system as string or array of text blocks; the blocks
    are joined with a blank line.
    """
    if not system:
        return None

    if isinstance(system, str):
        return {"role": "system", "content": system}

    text_parts: list[str] = []
    for block in system:
        if block.get("type") == "text":
            text_parts.append(block.get("text", ""))
        else:
            logger.warning(f"Non-text block in system parameter: {block.get('type')}")

    if text_parts:
        return {"role": "system", "content": BLOCK_SEPARATOR.join(text_parts)}

    return None


def _convert_tool_result(block: Mapping[str, Any]) -> ChatMessage:
    content = _map_content(block.get("content"))
    if content is None:
        content = ""
    if block.get("is_error"):
        if isinstance(content, str):
            content = f"[Error] {content}"
        else:
            content = [{"type": "text", "text": "[Error]"}, *content]

    return {
        "role": "tool",
        "tool_call_id": sanitize_id(block.get("tool_use_id", "")),
        "content": content,
    }


def _convert_user_message(message: Mapping[str, Any]) -> list[ChatMessage]:
    content = message.get("content")
    if not isinstance(content, list):
        return [{"role": "user", "content": _map_content(content) or ""}]

    tool_results = [b for b in content if b.get("type") == "tool_result"]
    other_blocks = [b for b in content if b.get("type") != "tool_result"]

    # tool_use -> tool_result -> user: results go out before the rest of the turn
    converted: list[ChatMessage] = [_convert_tool_result(b) for b in tool_results]

    if other_blocks:
        converted.append({"role": "user", "content": _map_content(other_blocks)})

    return converted


def _convert_assistant_message(message: Mapping[str, Any]) -> list[ChatMessage]:
    content = message.get("content")
    if not isinstance(content, list):
        return [{"role": "assistant", "content": _map_content(content)}]

    tool_uses = [b for b in content if b.get("type") == "tool_use"]
    if not tool_uses:
        return [{"role": "assistant", "content": _map_content(content)}]

    ordered_text = BLOCK_SEPARATOR.join(
        text for text in (_block_text(b) for b in content) if text is not None
    )
    tool_calls: list[ToolCall] = [
        {
            "id": sanitize_id(block.get("id") or f"call_{uuid.uuid4().hex[:8]}"),
            "type": "function",
            "function": {
                "name": block.get("name", ""),
                "arguments": _serialize_tool_input(block.get("input", {})),
            },
        }
        for block in tool_uses
    ]
    return [{"role": "assistant", "content": ordered_text or None, "tool_calls": tool_calls}]


def _convert_tool_choice(
    tool_choice: str | Mapping[str, Any] | None,
) -> str | dict[str, Any] | None:
    """Convert Anthropic tool_choice to OpenAI format.

    Anthropic: {"type": "auto"|"any"|"none"} | {"type": "tool", "name": "..."}
    OpenAI: "auto" | "required" | "none" | {"type": "function", "function": {"name": "..."}}
    """
    if tool_choice is None:
        return None

    if isinstance(tool_choice, str):
        choice_type, name = tool_choice, None
    else:
        choice_type, name = tool_choice.get("type", ""), tool_choice.get("name")

    if choice_type == "auto":
        return "auto"
    if choice_type == "any":
        return "required"
    if choice_type == "none":
        return "none"
    if choice_type == "tool" and name:
        return {"type": "function", "function": {"name": name}}

    return None


def _convert_tools(tools: Sequence[Mapping[str, Any]] | None) -> list[dict[str, Any]] | None:
    """Convert Anthropic tools to OpenAI format.

    Anthropic: {"name": "...", "description": "...", "input_schema": {...}}
    OpenAI: {"type": "function", "function": {"name": "...", "description": "...", "parameters": {...}}}
    """
    if not tools:
        return None

    openai_tools = []
    for tool in tools:
        function: dict[str, Any] = {
            "name": tool.get("name", ""),
            "parameters": tool.get("input_schema") or {},
        }
        if tool.get("description") is not None:
            function["description"] = tool["description"]
        openai_tools.append({"type": "function", "function": function})

    return openai_tools


def _convert_thinking(thinking: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Map Anthropic ``thinking`` onto the upstream ``reasoning`` object.

    Absent or disabled thinking yields no reasoning field at all.
    """
    if not isinstance(thinking, Mapping):
        return None

    thinking_type = thinking.get("type")
    if not thinking_type or thinking_type == "disabled":
        return None

    reasoning: dict[str, Any] = {"type": thinking_type, "enabled": True}
    if thinking_type == "enabled" and thinking.get("budget_tokens") is not None:
        reasoning["budget_tokens"] = thinking["budget_tokens"]
    return reasoning


def messages_to_chat_completions(payload: Mapping[str, Any]) -> ChatCompletionsRequest:
    """Translate Anthropic Messages request to OpenAI Chat Completions.

    Handles:
    - Model alias normalization
    - Top-level system parameter -> system message
    - Content blocks (text, thinking, image, document, tool_use, tool_result)
    - Tools, tool_choice and thinking mapping
    - Parameter mapping (max_tokens, stop_sequences, temperature, etc.)

    Args:
        payload: Anthropic Messages API request body

    Returns:
        OpenAI Chat Completions API request body
    """
    openai_messages: list[ChatMessage] = []

    system_message = _convert_system_to_openai(payload.get("system"))
    if system_message:
        openai_messages.append(system_message)

    for message in payload.get("messages") or []:
        if message.get("role") == "assistant":
            openai_messages.extend(_convert_assistant_message(message))
        else:
            openai_messages.extend(_convert_user_message(message))

    result: dict[str, Any] = {
        "model": translate_model_name(payload.get("model", "")),
        "messages": openai_messages,
    }

    if payload.get("max_tokens") is not None:
        result["max_tokens"] = payload["max_tokens"]

    if payload.get("stop_sequences") is not None:
        result["stop"] = payload["stop_sequences"]

    for param in ("stream", "temperature", "top_p"):
        if payload.get(param) is not None:
            result[param] = payload[param]

    if payload.get("top_k") is not None:
        logger.debug(f"top_k={payload['top_k']} is not supported upstream, ignoring")

    metadata = payload.get("metadata")
    if isinstance(metadata, Mapping) and metadata.get("user_id"):
        result["user"] = metadata["user_id"]

    tools = _convert_tools(payload.get("tools"))
    if tools:
        result["tools"] = tools

    tool_choice = _convert_tool_choice(payload.get("tool_choice"))
    if tool_choice is not None:
        result["tool_choice"] = tool_choice

    reasoning = _convert_thinking(payload.get("thinking"))
    if reasoning is not None:
        result["thinking"] = dict(payload["thinking"])
        result["reasoning"] = reasoning

    return result  # type: ignore[return-value]


# =============================================================================
# Response translation (OpenAI -> Anthropic)
# =============================================================================


def _convert_stop_reason(finish_reason: str | None) -> str:
    """Convert OpenAI finish_reason to Anthropic stop_reason.

    OpenAI: stop, length, tool_calls, content_filter, function_call
    Anthropic: end_turn, max_tokens, tool_use, refusal
    Anything unrecognized (or missing) is reported as end_turn.
    """
    if finish_reason is None:
        return DEFAULT_STOP_REASON
    return STOP_REASONS.get(finish_reason, DEFAULT_STOP_REASON)


def _convert_usage(usage: Mapping[str, Any] | None) -> anthropic.Usage:
    """Map upstream usage onto Anthropic usage.

    Anthropic counts cache hits apart from input tokens, so cached prompt
    tokens are subtracted from ``input_tokens`` and reported separately.
    """
    usage = usage or {}
    details = usage.get("prompt_tokens_details") or {}
    cached_tokens = details.get("cached_tokens") if isinstance(details, Mapping) else None

    result: anthropic.Usage = {
        "input_tokens": (usage.get("prompt_tokens") or 0) - (cached_tokens or 0),
        "output_tokens": usage.get("completion_tokens") or 0,
    }
    if cached_tokens is not None:
        result["cache_read_input_tokens"] = cached_tokens
    return result


def _reasoning_text(source: Mapping[str, Any]) -> Optional[str]:
    for key in ("thinking", "reasoning", "text"):
        value = source.get(key)
        if value:
            return value
    return None


def _message_signature(message: Mapping[str, Any]) -> Optional[str]:
    for key in ("thinking_signature", "reasoning_signature", "signature"):
        value = message.get(key)
        if value:
            return value
    return None


def _parse_tool_arguments(arguments: Any) -> dict[str, Any]:
    """Parse tool-call arguments; anything but a JSON object becomes ``{}``."""
    if isinstance(arguments, Mapping):
        return dict(arguments)
    if not isinstance(arguments, str) or not arguments:
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError:
        logger.warning(f"Dropping unparseable tool arguments: {arguments[:100]}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _convert_openai_message_to_blocks(
    message: Mapping[str, Any],
) -> list[anthropic.AssistantContentBlock]:
    """Rebuild Anthropic content blocks from an upstream assistant message.

    Thinking blocks come first, deduplicated on (text, signature) because
    upstreams may repeat the same reasoning across several fields; then
    text; then tool_use blocks.
    """
    thinking_blocks: list[anthropic.ThinkingBlock] = []
    text_blocks: list[anthropic.TextBlock] = []
    seen_thinking: set[tuple[str, str]] = set()

    def add_thinking(thinking: Optional[str], signature: Optional[str]) -> None:
        if not thinking:
            return
        key = (thinking, signature or "")
        if key in seen_thinking:
            return
        seen_thinking.add(key)
        block: anthropic.ThinkingBlock = {"type": "thinking", "thinking": thinking}
        if signature:
            block["signature"] = signature
        thinking_blocks.append(block)

    content = message.get("content")
    if isinstance(content, str):
        if content:
            text_blocks.append({"type": "text", "text": content})
    elif isinstance(content, list):
        for part in content:
            part_type = part.get("type", "")
            if part_type in ("text", "output_text"):
                text_blocks.append({"type": "text", "text": part.get("text", "")})
            elif part_type in ("reasoning", "thinking"):
                add_thinking(_reasoning_text(part), part.get("signature"))

    add_thinking(
        message.get("thinking") or message.get("reasoning") or message.get("reasoning_content"),
        _message_signature(message),
    )

    for detail in message.get("reasoning_details") or []:
        if isinstance(detail, Mapping):
            add_thinking(_reasoning_text(detail), detail.get("signature"))

    tool_blocks: list[anthropic.ToolUseBlock] = []
    for call in message.get("tool_calls") or []:
        function = call.get("function") or {}
        tool_blocks.append({
            "type": "tool_use",
            "id": sanitize_id(call.get("id") or f"toolu_{uuid.uuid4().hex[:12]}"),
            "name": function.get("name", ""),
            "input": _parse_tool_arguments(function.get("arguments")),
        })

    return [*thinking_blocks, *text_blocks, *tool_blocks]


def chat_completion_to_messages(payload: Mapping[str, Any]) -> anthropic.MessagesResponse:
    """Translate OpenAI Chat Completions response to Anthropic Messages.

    Only the first choice is used; the upstream is always called with n=1.

    Args:
        payload: OpenAI Chat Completions API response body

    Returns:
        Anthropic Messages API response body
    """
    choices = payload.get("choices") or []
    choice = choices[0] if choices else {}
    message = choice.get("message") or {}

    content_blocks = _convert_openai_message_to_blocks(message)
    if not content_blocks:
        content_blocks = [{"type": "text", "text": ""}]

    return {
        "id": payload.get("id") or f"msg_{uuid.uuid4().hex[:24]}",
        "type": "message",
        "role": "assistant",
        "model": payload.get("model", ""),
        "content": content_blocks,
        "stop_reason": _convert_stop_reason(choice.get("finish_reason")),
        "stop_sequence": None,
        "usage": _convert_usage(payload.get("usage")),
    }

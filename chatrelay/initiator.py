"""Infer who started the current turn: a human (``user``) or an agent loop (``agent``).

The upstream bills and schedules the two differently and expects the answer
in an ``X-Initiator`` header. Neither client protocol carries it, so it is
inferred from the shape of the conversation:

1. An empty conversation is a user turn.
2. Leading/trailing ``system``/``developer`` messages are ignored.
3. A conversation ending in an ``assistant`` or ``tool`` message is an agent turn.
4. A user message carrying a ``tool_result`` block is an agent turn.
5. A user message answering an assistant tool call is an agent turn.
6. A user message that looks like a synthetic continuation (compaction
   hand-offs, checkpoint markers, environment context) is an agent turn.

The soft part of rule 6 (long text plus summarization vocabulary from a
known agent client) is a best-effort heuristic and can misclassify long
human messages.
"""

from __future__ import annotations

import re
from typing import Any, Literal, Mapping, Optional, Sequence

Initiator = Literal["agent", "user"]

AGENT: Initiator = "agent"
USER: Initiator = "user"

NON_CONVERSATIONAL_ROLES = frozenset({"system", "developer"})
AGENT_ROLES = frozenset({"assistant", "tool"})

HANDOFF_SUMMARY_PREFIX = "Another language model started to solve this problem"
CHECKPOINT_COMPACTION_MARKER = "CONTEXT CHECKPOINT COMPACTION"
ENVIRONMENT_CONTEXT_TAGS = ("<environment_context>", "</environment_context>")

AGENT_USER_AGENT_MARKERS = ("codex", "claude-cli", "claude-code")
AGENT_BETA_PREFIX = "claude-code"

SOFT_HEURISTIC_MIN_LENGTH = 800
COMPACTION_VOCABULARY_RE = re.compile(
    r"summary|summarize|compression?|compact(?:ion)?|context window|handoff|conversation",
    re.IGNORECASE,
)


def has_claude_code_beta(anthropic_beta: Optional[str]) -> bool:
    """Return True if an ``anthropic-beta`` header announces a Claude Code harness."""
    if not anthropic_beta:
        return False
    return any(
        token.strip().lower().startswith(AGENT_BETA_PREFIX)
        for token in anthropic_beta.split(",")
    )


def infer_initiator_from_anthropic_messages(
    messages: Sequence[Mapping[str, Any]],
    anthropic_beta: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Initiator:
    """Classify an Anthropic Messages conversation."""
    agent_client = has_claude_code_beta(anthropic_beta) or _is_agent_user_agent(user_agent)
    return _classify(messages, agent_client)


def infer_initiator_from_chat_messages(
    messages: Sequence[Mapping[str, Any]],
    user_agent: Optional[str] = None,
) -> Initiator:
    """Classify an OpenAI Chat Completions conversation."""
    return _classify(messages, _is_agent_user_agent(user_agent))


def _classify(messages: Sequence[Mapping[str, Any]], agent_client: bool) -> Initiator:
    if not messages:
        return USER

    conversation = [
        message for message in messages
        if isinstance(message, Mapping)
        and message.get("role") not in NON_CONVERSATIONAL_ROLES
    ]
    if not conversation:
        return USER

    last_message = conversation[-1]
    role = last_message.get("role")
    if role in AGENT_ROLES:
        return AGENT
    if role != "user":
        return USER

    if _has_tool_result(last_message):
        return AGENT

    previous_message = conversation[-2] if len(conversation) > 1 else None
    if previous_message is None or previous_message.get("role") != "assistant":
        return USER

    if _requested_tool_call(previous_message):
        return AGENT

    if _looks_like_synthetic_continuation(_message_text(last_message), agent_client):
        return AGENT

    return USER


def _is_agent_user_agent(user_agent: Optional[str]) -> bool:
    if not user_agent:
        return False
    lowered = user_agent.lower()
    return any(marker in lowered for marker in AGENT_USER_AGENT_MARKERS)


def _has_tool_result(message: Mapping[str, Any]) -> bool:
    content = message.get("content")
    return isinstance(content, list) and any(
        isinstance(block, Mapping) and block.get("type") == "tool_result"
        for block in content
    )


def _requested_tool_call(message: Mapping[str, Any]) -> bool:
    if message.get("tool_calls"):
        return True
    content = message.get("content")
    return isinstance(content, list) and any(
        isinstance(block, Mapping) and block.get("type") == "tool_use"
        for block in content
    )


def _message_text(message: Mapping[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""

    parts: list[str] = []
    for part in content:
        if not isinstance(part, Mapping):
            continue
        for key in ("text", "thinking", "reasoning"):
            value = part.get(key)
            if isinstance(value, str):
                parts.append(value)
                break
    return "\n\n".join(parts)


def _looks_like_synthetic_continuation(text: str, agent_client: bool) -> bool:
    """Detect user turns an agent harness wrote on the human's behalf.

    Only called when the previous message came from the assistant.
    """
    trimmed = text.strip()
    if not trimmed:
        return False

    if trimmed.startswith(HANDOFF_SUMMARY_PREFIX):
        return True
    if CHECKPOINT_COMPACTION_MARKER in trimmed:
        return True
    if any(tag in trimmed for tag in ENVIRONMENT_CONTEXT_TAGS):
        return True

    if not agent_client:
        return False
    if len(trimmed) < SOFT_HEURISTIC_MIN_LENGTH:
        return False
    return COMPACTION_VOCABULARY_RE.search(trimmed) is not None

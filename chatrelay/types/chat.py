"""Types for the OpenAI Chat Completions shapes spoken by the upstream.

Besides the standard fields, upstreams that expose model reasoning use a
handful of vendor fields (``reasoning``, ``reasoning_content``, ``thinking``,
``reasoning_details`` and the matching ``*_signature`` keys). They are all
optional here.
"""

from typing import Any

from typing_extensions import TypedDict


class FunctionCall(TypedDict, total=False):
    """A function call within a tool call.

    Attributes:
        name: Function name. Missing on streamed follow-up chunks.
        arguments: JSON text. Streamed incrementally as fragments.
    """
    name: str
    arguments: str


class ToolCall(TypedDict, total=False):
    """A tool call; ``index`` is only present on streaming deltas."""
    id: str
    type: str
    function: FunctionCall
    index: int


class ContentPart(TypedDict, total=False):
    """``text`` / ``output_text`` / ``image_url`` / ``reasoning`` / ``thinking`` part."""
    type: str
    text: str
    image_url: dict[str, Any]
    reasoning: str
    thinking: str
    signature: str


class ReasoningDetail(TypedDict, total=False):
    type: str
    text: str
    reasoning: str
    thinking: str
    signature: str


class ChatMessage(TypedDict, total=False):
    role: str
    content: str | list[ContentPart] | None
    name: str
    tool_calls: list[ToolCall]
    tool_call_id: str
    reasoning: str | None
    reasoning_content: str | None
    thinking: str | None
    signature: str | None
    reasoning_signature: str | None
    thinking_signature: str | None
    reasoning_details: list[ReasoningDetail] | None


class Delta(ChatMessage, total=False):
    """Incremental message update in a streaming chunk."""


class Choice(TypedDict, total=False):
    index: int
    delta: Delta
    message: ChatMessage
    finish_reason: str | None
    logprobs: dict[str, Any] | None


class Usage(TypedDict, total=False):
    """Token usage; ``prompt_tokens`` includes any ``cached_tokens``."""
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    prompt_tokens_details: dict[str, int]


class ChatCompletionChunk(TypedDict, total=False):
    id: str
    object: str
    created: int
    model: str
    choices: list[Choice]
    usage: Usage | None


class ChatCompletionResponse(TypedDict, total=False):
    id: str
    object: str
    created: int
    model: str
    choices: list[Choice]
    usage: Usage | None


class ChatCompletionsRequest(TypedDict, total=False):
    model: str
    messages: list[ChatMessage]
    max_tokens: int
    stop: list[str]
    stream: bool
    temperature: float
    top_p: float
    user: str
    tools: list[dict[str, Any]]
    tool_choice: str | dict[str, Any]
    thinking: dict[str, Any]
    reasoning: dict[str, Any]

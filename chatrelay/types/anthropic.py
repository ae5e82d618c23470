"""Types for the Anthropic Messages API shapes handled by the gateway.

Content blocks are modelled as one TypedDict per concrete kind, each tagged
by a ``Literal`` ``type`` field, so translators can dispatch on ``type`` and
type checkers see which keys belong to which kind.
"""

from typing import Any, Literal, Union

from typing_extensions import NotRequired, TypedDict


# =============================================================================
# Content blocks
# =============================================================================


class ImageSource(TypedDict, total=False):
    """Image payload: ``base64`` (media_type + data) or ``url``."""
    type: str
    media_type: str
    data: str
    url: str


class TextBlock(TypedDict):
    type: Literal["text"]
    text: str


class ThinkingBlock(TypedDict):
    """Extended-reasoning block; ``signature`` is opaque and optional."""
    type: Literal["thinking"]
    thinking: str
    signature: NotRequired[str]


class ImageBlock(TypedDict):
    type: Literal["image"]
    source: ImageSource


class ToolUseBlock(TypedDict):
    """A tool invocation requested by the assistant.

    ``id`` always matches ``^[A-Za-z0-9_-]+$`` once it leaves the gateway.
    """
    type: Literal["tool_use"]
    id: str
    name: str
    input: dict[str, Any]


class ToolResultBlock(TypedDict):
    """The outcome of a tool call, sent back in a user turn."""
    type: Literal["tool_result"]
    tool_use_id: str
    content: NotRequired[Union[str, list[Union[TextBlock, ImageBlock]]]]
    is_error: NotRequired[bool]


UserContentBlock = Union[TextBlock, ImageBlock, ToolResultBlock]
AssistantContentBlock = Union[TextBlock, ThinkingBlock, ToolUseBlock]
ContentBlock = Union[TextBlock, ThinkingBlock, ImageBlock, ToolUseBlock, ToolResultBlock]


# =============================================================================
# Requests
# =============================================================================


class Message(TypedDict):
    role: Literal["user", "assistant"]
    content: Union[str, list[ContentBlock]]


class Tool(TypedDict, total=False):
    name: str
    description: str
    input_schema: dict[str, Any]


class ToolChoice(TypedDict, total=False):
    """``auto`` | ``any`` | ``none`` | ``tool`` (with ``name``)."""
    type: str
    name: str


class ThinkingConfig(TypedDict, total=False):
    """``enabled`` (with ``budget_tokens``), ``adaptive`` or ``disabled``."""
    type: str
    budget_tokens: int


class MessagesRequest(TypedDict, total=False):
    model: str
    messages: list[Message]
    system: Union[str, list[TextBlock]]
    max_tokens: int
    stop_sequences: list[str]
    stream: bool
    temperature: float
    top_p: float
    top_k: int
    metadata: dict[str, Any]
    tools: list[Tool]
    tool_choice: ToolChoice
    thinking: ThinkingConfig


# =============================================================================
# Responses and stream events
# =============================================================================


class Usage(TypedDict, total=False):
    """Token accounting. Cache hits are reported apart from ``input_tokens``."""
    input_tokens: int
    output_tokens: int
    cache_read_input_tokens: int


class MessagesResponse(TypedDict):
    id: str
    type: Literal["message"]
    role: Literal["assistant"]
    model: str
    content: list[AssistantContentBlock]
    stop_reason: Union[str, None]
    stop_sequence: Union[str, None]
    usage: Usage


class StreamEvent(TypedDict, total=False):
    """One Messages streaming event.

    ``type`` is one of ``message_start``, ``content_block_start``,
    ``content_block_delta``, ``content_block_stop``, ``message_delta``,
    ``message_stop`` or ``error``; the remaining keys depend on it.
    """
    type: str
    index: int
    message: dict[str, Any]
    content_block: dict[str, Any]
    delta: dict[str, Any]
    usage: Usage
    error: dict[str, Any]

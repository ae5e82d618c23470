"""Tool-call identifier sanitizing.

Anthropic requires ``tool_use.id`` to match ``^[A-Za-z0-9_-]+$`` while
OpenAI-compatible upstreams hand out ids such as ``call:1`` or ``fc.abc/2``.
Sanitizing is plain character substitution so the id on a ``tool_use`` block
and the ``tool_use_id`` on its ``tool_result`` map to the same value no matter
which side converts them.
"""

from __future__ import annotations

import re
import secrets
import string

_VALID_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_INVALID_ID_CHAR_RE = re.compile(r"[^A-Za-z0-9_-]")
_FALLBACK_ALPHABET = string.ascii_lowercase + string.digits


def is_valid_id(value: str) -> bool:
    """Return True if ``value`` is an acceptable Anthropic tool id."""
    return bool(value) and _VALID_ID_RE.match(value) is not None


def sanitize_id(value: str) -> str:
    """Map an upstream tool id onto the Anthropic id grammar.

    Examples:
        >>> sanitize_id("call_abc:123")
        'call_abc_123'
        >>> sanitize_id("valid-id_123")
        'valid-id_123'
    """
    if not value:
        return value

    if _VALID_ID_RE.match(value):
        return value

    sanitized = _INVALID_ID_CHAR_RE.sub("_", value)
    if not sanitized.strip("_"):
        return _random_id()
    return sanitized


def _random_id() -> str:
    suffix = "".join(secrets.choice(_FALLBACK_ALPHABET) for _ in range(9))
    return f"id_{suffix}"

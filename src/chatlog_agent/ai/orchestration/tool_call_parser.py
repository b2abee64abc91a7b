"""Parsing utilities for tool calls and reasoning embedded in model text.

Some models cannot emit structured function calls and instead write them
inline as ``<tool_call>{"name": ..., "arguments": ...}</tool_call>`` blocks,
often preceded by a ``<think>...</think>`` reasoning span. The helpers here
recover those calls in the same normalized shape used for native calls.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from typing import Any

from .types import ToolCall

__all__ = [
    "THINK_OPEN",
    "THINK_CLOSE",
    "TOOL_CALL_OPEN",
    "TOOL_CALL_CLOSE",
    "THINK_BLOCK_RE",
    "TOOL_CALL_BLOCK_RE",
    "normalize_marker_text",
    "has_tool_call_markup",
    "extract_tool_calls",
    "strip_thinking",
    "strip_tool_call_blocks",
    "fallback_tool_call_id",
]

LOGGER = logging.getLogger(__name__)

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"
TOOL_CALL_OPEN = "<tool_call>"
TOOL_CALL_CLOSE = "</tool_call>"

# Full-width and stylized brackets some models emit around markers. Every
# mapping is one character to one character so offsets stay valid.
_MARKER_TRANSLATION = str.maketrans(
    {
        ord("＜"): "<",
        ord("﹤"): "<",
        ord("〈"): "<",
        ord("＞"): ">",
        ord("﹥"): ">",
        ord("〉"): ">",
        ord("／"): "/",
        ord("＿"): "_",
    }
)

THINK_BLOCK_RE = re.compile(r"<think>(?P<body>.*?)</think>", re.IGNORECASE | re.DOTALL)
TOOL_CALL_BLOCK_RE = re.compile(
    r"<tool_call>\s*(?P<body>.*?)\s*</tool_call>",
    re.IGNORECASE | re.DOTALL,
)
_TOOL_CALL_OPEN_RE = re.compile(r"<tool_call>", re.IGNORECASE)
_CODE_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*(?P<body>.*?)\s*```$", re.DOTALL)


def normalize_marker_text(text: str) -> str:
    """Map stylized marker glyphs to ASCII without changing string length."""
    return text.translate(_MARKER_TRANSLATION)


def has_tool_call_markup(text: str | None) -> bool:
    """Whether ``text`` contains an opening tool-call marker."""
    if not text:
        return False
    return _TOOL_CALL_OPEN_RE.search(normalize_marker_text(text)) is not None


def fallback_tool_call_id() -> str:
    return f"fallback-{uuid.uuid4()}"


def extract_tool_calls(text: str | None) -> list[ToolCall] | None:
    """Parse every ``<tool_call>`` block in ``text`` into a ToolCall.

    Args:
        text: Raw model output.

    Returns:
        None when the text holds no tool-call block at all. Otherwise the list
        of calls that parsed, which is empty when every block was malformed.
        Malformed blocks are logged and skipped without aborting the rest.
    """
    if not text:
        return None
    normalized = normalize_marker_text(text)
    blocks = [match.group("body") for match in TOOL_CALL_BLOCK_RE.finditer(normalized)]
    if not blocks:
        return None

    calls: list[ToolCall] = []
    for body in blocks:
        call = _parse_block(body)
        if call is not None:
            calls.append(call)
    return calls


def _parse_block(body: str) -> ToolCall | None:
    payload = body.strip()
    fenced = _CODE_FENCE_RE.match(payload)
    if fenced:
        payload = fenced.group("body").strip()
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as exc:
        LOGGER.warning("Failed to parse tool_call block: %s (content=%r)", exc, body[:200])
        return None
    if not isinstance(parsed, dict):
        LOGGER.warning("tool_call block is not a JSON object: %r", body[:200])
        return None

    name = parsed.get("name")
    if not isinstance(name, str) or not name.strip():
        LOGGER.warning("tool_call block has no tool name: %r", body[:200])
        return None

    return ToolCall(
        id=fallback_tool_call_id(),
        name=name.strip(),
        arguments=_serialize_arguments(parsed.get("arguments")),
        source="fallback",
    )


def _serialize_arguments(arguments: Any) -> str:
    if arguments is None:
        return "{}"
    if isinstance(arguments, str):
        return arguments.strip() or "{}"
    return json.dumps(arguments, ensure_ascii=False)


def strip_thinking(text: str | None) -> tuple[str, str]:
    """Split ``text`` into (thinking, clean content).

    Every complete ``<think>`` span is removed from the content; an unterminated
    opening marker is left in place as ordinary text. Both parts are trimmed.
    """
    if not text:
        return "", ""
    normalized = normalize_marker_text(text)
    thinking_parts: list[str] = []
    pieces: list[str] = []
    cursor = 0
    for match in THINK_BLOCK_RE.finditer(normalized):
        thinking_parts.append(match.group("body").strip())
        pieces.append(text[cursor:match.start()])
        cursor = match.end()
    pieces.append(text[cursor:])
    thinking = "\n".join(part for part in thinking_parts if part)
    return thinking.strip(), "".join(pieces).strip()


def strip_tool_call_blocks(text: str | None) -> str:
    """Remove every complete ``<tool_call>`` block from ``text``."""
    if not text:
        return ""
    normalized = normalize_marker_text(text)
    pieces: list[str] = []
    cursor = 0
    for match in TOOL_CALL_BLOCK_RE.finditer(normalized):
        pieces.append(text[cursor:match.start()])
        cursor = match.end()
    pieces.append(text[cursor:])
    return "".join(pieces).strip()

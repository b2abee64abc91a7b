"""Incremental separation of streamed model text.

The parser is a small state machine fed with content deltas. It decides after
each delta how much of the accumulated buffer can be shown to the consumer,
while suppressing ``<think>`` reasoning spans and deferring ``<tool_call>``
payloads so they are never displayed.

States:
  plain      - forwarding visible text
  thinking   - inside a ``<think>`` span, forwarding nothing
  tool_call  - inside a ``<tool_call>`` span, forwarding nothing

Transitions happen on ``marker_open``/``marker_close`` (found while scanning
the buffer) and on ``stream_end`` (``finish()``).
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass

from .tool_call_parser import (
    THINK_OPEN,
    TOOL_CALL_OPEN,
    has_tool_call_markup,
    normalize_marker_text,
)

__all__ = ["ParserState", "ParsedSpan", "StreamingTagParser"]


class ParserState(enum.Enum):
    PLAIN = "plain"
    THINKING = "thinking"
    TOOL_CALL = "tool_call"


_OPEN_RE = re.compile(r"<think>|<tool_call>", re.IGNORECASE)
_CLOSE_RES: dict[ParserState, re.Pattern[str]] = {
    ParserState.THINKING: re.compile(r"</think>", re.IGNORECASE),
    ParserState.TOOL_CALL: re.compile(r"</tool_call>", re.IGNORECASE),
}
_CLOSE_LENGTHS = {ParserState.THINKING: len("</think>"), ParserState.TOOL_CALL: len("</tool_call>")}
_OPEN_MARKERS = (THINK_OPEN, TOOL_CALL_OPEN)


@dataclass(slots=True, frozen=True)
class ParsedSpan:
    """A completed suppressed span.

    Attributes:
        kind: ``THINKING`` or ``TOOL_CALL``.
        start: Buffer offset of the opening marker.
        end: Buffer offset just past the closing marker.
        body: Text between the markers.
    """

    kind: ParserState
    start: int
    end: int
    body: str


class StreamingTagParser:
    """Splits one model call's streamed text into visible and suppressed parts.

    Every character returned by :meth:`feed` and :meth:`finish` is returned
    exactly once and in buffer order; text inside a completed span never is.
    A trailing fragment that may turn out to be an opening marker (``"<thi"``)
    is held back until the next delta settles it.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._normalized = ""
        self._displayed = 0
        self._state = ParserState.PLAIN
        self._span_open = 0
        self._close_scan = 0
        self._spans: list[ParsedSpan] = []
        self._forwarded: list[str] = []
        self._finished = False

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def state(self) -> ParserState:
        return self._state

    @property
    def buffer(self) -> str:
        return self._buffer

    @property
    def displayed(self) -> int:
        """Buffer offset up to which text is forwarded or consumed."""
        return self._displayed

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def spans(self) -> tuple[ParsedSpan, ...]:
        return tuple(self._spans)

    @property
    def thinking(self) -> list[str]:
        return [span.body.strip() for span in self._spans if span.kind is ParserState.THINKING]

    @property
    def tool_call_blocks(self) -> list[str]:
        return [span.body for span in self._spans if span.kind is ParserState.TOOL_CALL]

    @property
    def has_tool_call_markup(self) -> bool:
        return has_tool_call_markup(self._buffer)

    @property
    def forwarded(self) -> str:
        """Everything returned to the caller so far."""
        return "".join(self._forwarded)

    @property
    def visible_text(self) -> str:
        """The buffer with every completed span removed."""
        pieces: list[str] = []
        cursor = 0
        for span in self._spans:
            pieces.append(self._buffer[cursor:span.start])
            cursor = span.end
        pieces.append(self._buffer[cursor:])
        return "".join(pieces)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def feed(self, delta: str | None) -> str:
        """Append ``delta`` and return the text that is now safe to forward."""
        if self._finished:
            raise RuntimeError("Cannot feed a finished StreamingTagParser")
        if not delta:
            return ""
        self._buffer += delta
        self._normalized += normalize_marker_text(delta)
        return self._advance(final=False)

    def finish(self) -> str:
        """Signal end of stream and flush whatever is still held back.

        Unterminated spans are released as ordinary text.
        """
        if self._finished:
            return ""
        self._finished = True
        return self._advance(final=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _advance(self, *, final: bool) -> str:
        emitted: list[str] = []
        while True:
            if self._state is ParserState.PLAIN:
                match = _OPEN_RE.search(self._normalized, self._displayed)
                if match is None:
                    end = len(self._buffer)
                    if not final:
                        end -= self._pending_marker_length()
                    self._emit_until(end, emitted)
                    break
                self._emit_until(match.start(), emitted)
                marker = match.group(0).lower()
                self._state = ParserState.THINKING if marker == THINK_OPEN else ParserState.TOOL_CALL
                self._span_open = match.start()
                self._close_scan = match.end()
                continue

            close = _CLOSE_RES[self._state].search(self._normalized, self._close_scan)
            if close is None:
                if final:
                    self._state = ParserState.PLAIN
                    self._emit_until(len(self._buffer), emitted)
                else:
                    # A closing marker split across deltas starts within this window.
                    self._close_scan = max(
                        self._close_scan,
                        len(self._normalized) - _CLOSE_LENGTHS[self._state] + 1,
                    )
                break

            body_start = self._span_open + len(self._open_marker_for(self._state))
            self._spans.append(
                ParsedSpan(
                    kind=self._state,
                    start=self._span_open,
                    end=close.end(),
                    body=self._buffer[body_start:close.start()],
                )
            )
            self._displayed = close.end()
            self._state = ParserState.PLAIN

        text = "".join(emitted)
        if text:
            self._forwarded.append(text)
        return text

    def _emit_until(self, end: int, emitted: list[str]) -> None:
        if end > self._displayed:
            emitted.append(self._buffer[self._displayed:end])
            self._displayed = end

    def _pending_marker_length(self) -> int:
        """Length of a buffer suffix that is a proper prefix of an opening marker."""
        tail = self._normalized[self._displayed:].lower()
        longest = max(len(marker) for marker in _OPEN_MARKERS) - 1
        for size in range(min(longest, len(tail)), 0, -1):
            suffix = tail[-size:]
            if any(marker.startswith(suffix) for marker in _OPEN_MARKERS):
                return size
        return 0

    @staticmethod
    def _open_marker_for(state: ParserState) -> str:
        return THINK_OPEN if state is ParserState.THINKING else TOOL_CALL_OPEN

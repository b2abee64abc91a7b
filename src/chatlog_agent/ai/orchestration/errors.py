"""Error types raised by the agent execution engine."""

from __future__ import annotations

__all__ = [
    "AgentError",
    "TransportError",
    "TranscriptError",
    "ToolDispatchError",
]


class AgentError(Exception):
    """Base error for all agent operations."""


class TransportError(AgentError):
    """Raised when the model transport cannot produce a response."""

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        self.cause = cause
        super().__init__(message)


class TranscriptError(AgentError):
    """Raised when a transcript violates its structural invariants."""


class ToolDispatchError(AgentError):
    """Raised when a tool batch cannot be dispatched at all."""

    def __init__(self, tool_names: list[str], message: str) -> None:
        self.tool_names = tool_names
        super().__init__(f"{', '.join(tool_names) or 'tools'}: {message}")

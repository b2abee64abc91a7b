"""Core type definitions for the agent execution engine.

This module defines the dataclasses that flow between the orchestrator, the
streaming parser, the retrieval pipeline and the external collaborators
(model transport, tool catalog and tool executor). Value types are frozen so
they can be shared across rounds without defensive copies.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Literal, Mapping, Protocol, Sequence, runtime_checkable

from .errors import TranscriptError

__all__ = [
    # Transcript
    "MessageRole",
    "MessageKind",
    "Message",
    "Transcript",
    # Tool calls
    "ToolCall",
    "ToolResult",
    # Usage and streaming
    "TokenUsage",
    "StreamChunk",
    "ChunkCallback",
    "ExecutionResult",
    # Transport payloads
    "ChatResponse",
    "StreamDelta",
    # Configuration
    "AbortSignal",
    "ChatOptions",
    "AgentConfig",
    "OwnerInfo",
    "TimeFilter",
    "ToolContext",
    "PromptConfig",
    "ChatType",
]

MessageRole = Literal["system", "user", "assistant", "tool"]
MessageKind = Literal["system", "user", "assistant", "assistant_with_calls", "tool_result"]
ChatType = Literal["group", "private"]
ToolCallSource = Literal["native", "fallback", "forced"]


# -----------------------------------------------------------------------------
# Tool Calls
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolCall:
    """Normalized tool call dispatched to the tool executor.

    Native calls (returned structurally by the transport) and fallback calls
    (parsed from embedded markup) share this shape; ``source`` is informational
    only and never consulted during dispatch.

    Attributes:
        id: Correlation id echoed back by the matching tool message.
        name: Name of the tool to call.
        arguments: Arguments as JSON text.
        type: Call type discriminator, always ``"function"``.
        source: Where the call came from.
    """

    id: str
    name: str
    arguments: str = "{}"
    type: str = "function"
    source: ToolCallSource = "native"

    def to_param(self) -> dict[str, Any]:
        """Convert to the OpenAI ``tool_calls`` entry format."""
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments},
        }

    def parsed_arguments(self) -> dict[str, Any] | None:
        """Decode ``arguments``; returns None when they are not a JSON object."""
        try:
            parsed = json.loads(self.arguments or "{}")
        except (json.JSONDecodeError, TypeError):
            return None
        return parsed if isinstance(parsed, dict) else None

    @classmethod
    def from_param(cls, param: Mapping[str, Any], *, source: ToolCallSource = "native") -> ToolCall:
        """Create a ToolCall from an OpenAI-style mapping."""
        function = param.get("function") or {}
        arguments = function.get("arguments", "{}")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments, ensure_ascii=False)
        return cls(
            id=str(param.get("id") or ""),
            name=str(function.get("name") or ""),
            arguments=arguments or "{}",
            type=str(param.get("type") or "function"),
            source=source,
        )


@dataclass(slots=True, frozen=True)
class ToolResult:
    """Outcome of one tool call, positionally aligned with its call.

    Attributes:
        success: Whether the tool produced a result.
        result: The tool's payload when ``success`` is True.
        error: Error description when ``success`` is False.
    """

    success: bool
    result: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, result: Any) -> ToolResult:
        return cls(success=True, result=result)

    @classmethod
    def failure(cls, error: str) -> ToolResult:
        return cls(success=False, error=error)

    @property
    def payload(self) -> Any:
        """The value reported to stream consumers: result or error."""
        return self.result if self.success else self.error

    def to_message_content(self, error_prefix: str = "Error: ") -> str:
        """Serialize into the content of a ``tool`` transcript message."""
        if self.success:
            return json.dumps(self.result, ensure_ascii=False, default=str)
        return f"{error_prefix}{self.error}"


# -----------------------------------------------------------------------------
# Transcript
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable chat message.

    Attributes:
        role: The role of the message sender.
        content: The text content of the message.
        tool_calls: Tool calls made by the assistant (assistant only).
        tool_call_id: ID linking a tool result to its call (tool only).
    """

    role: MessageRole
    content: str
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None

    @property
    def kind(self) -> MessageKind:
        """Tagged variant of this message."""
        if self.role == "assistant" and self.tool_calls:
            return "assistant_with_calls"
        if self.role == "tool":
            return "tool_result"
        return self.role

    def to_chat_param(self) -> dict[str, Any]:
        """Convert to OpenAI's ChatCompletionMessageParam format."""
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_param() for call in self.tool_calls]
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        return payload

    @classmethod
    def from_chat_param(cls, param: Mapping[str, Any]) -> Message:
        """Create a Message from an OpenAI-style mapping."""
        raw_calls = param.get("tool_calls") or ()
        return cls(
            role=param.get("role", "user"),  # type: ignore[arg-type]
            content=str(param.get("content") or ""),
            tool_calls=tuple(ToolCall.from_param(call) for call in raw_calls),
            tool_call_id=param.get("tool_call_id"),
        )

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str = "", tool_calls: Sequence[ToolCall] = ()) -> Message:
        return cls(role="assistant", content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool(cls, content: str, tool_call_id: str) -> Message:
        return cls(role="tool", content=content, tool_call_id=tool_call_id)


class Transcript:
    """Ordered message list owned by one agent execution.

    The transcript is replayed in full to the model on every round, so order
    is significant. Assistant tool calls and their results are appended as a
    single exchange so every tool message correlates to a prior call id.
    """

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: list[Message] = list(messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(self._messages)

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def append(self, message: Message) -> None:
        self._messages.append(message)

    def append_tool_exchange(self, calls: Sequence[ToolCall], contents: Sequence[str]) -> None:
        """Append an assistant-with-calls message and one tool message per call."""
        if len(calls) != len(contents):
            raise TranscriptError(
                f"Tool exchange needs one result per call ({len(calls)} calls, {len(contents)} results)"
            )
        self._messages.append(Message.assistant("", tool_calls=calls))
        for call, content in zip(calls, contents):
            self._messages.append(Message.tool(content, tool_call_id=call.id))

    def last_index_of(self, role: MessageRole) -> int:
        """Index of the last message with ``role``, or -1."""
        for index in range(len(self._messages) - 1, -1, -1):
            if self._messages[index].role == role:
                return index
        return -1

    def insert_before_last_user(self, message: Message) -> int:
        """Insert ``message`` right before the most recent user message.

        Falls back to appending when there is no user message. Returns the
        index the message was inserted at.
        """
        index = self.last_index_of("user")
        if index == -1:
            index = len(self._messages)
        self._messages.insert(index, message)
        return index

    def to_params(self) -> list[dict[str, Any]]:
        return [message.to_chat_param() for message in self._messages]

    def verify_tool_correlation(self) -> None:
        """Raise TranscriptError unless every tool message answers a prior call."""
        known_ids: set[str] = set()
        for position, message in enumerate(self._messages):
            if message.kind == "assistant_with_calls":
                known_ids.update(call.id for call in message.tool_calls)
            elif message.kind == "tool_result" and message.tool_call_id not in known_ids:
                raise TranscriptError(
                    f"Tool message at {position} references unknown call id {message.tool_call_id!r}"
                )


# -----------------------------------------------------------------------------
# Usage, Chunks and Results
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TokenUsage:
    """Token counts reported by one or more model calls."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @classmethod
    def from_mapping(cls, usage: Any) -> TokenUsage | None:
        """Build from an OpenAI usage object or mapping; None when absent."""
        if usage is None:
            return None
        if isinstance(usage, TokenUsage):
            return usage
        getter = usage.get if isinstance(usage, Mapping) else lambda key, default=None: getattr(usage, key, default)
        prompt = int(getter("prompt_tokens", 0) or 0)
        completion = int(getter("completion_tokens", 0) or 0)
        total = getter("total_tokens", None)
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=int(total) if total is not None else prompt + completion,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


ChunkType = Literal["content", "tool_start", "tool_result", "done", "error"]


@dataclass(slots=True, frozen=True)
class StreamChunk:
    """Event delivered to a streaming consumer.

    Attributes:
        type: Event discriminator.
        content: Text delta (``content`` events).
        tool_name: Tool name (``tool_start``/``tool_result`` events).
        tool_params: Decoded call arguments (``tool_start`` events).
        tool_result: Result or error payload (``tool_result`` events).
        error: Error message (``error`` events).
        is_finished: Set on terminal events.
        usage: Cumulative usage (terminal events).
    """

    type: ChunkType
    content: str | None = None
    tool_name: str | None = None
    tool_params: Mapping[str, Any] | None = None
    tool_result: Any = None
    error: str | None = None
    is_finished: bool = False
    usage: TokenUsage | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type in ("done", "error")

    @classmethod
    def content_delta(cls, text: str) -> StreamChunk:
        return cls(type="content", content=text)

    @classmethod
    def tool_start(cls, name: str, params: Mapping[str, Any] | None) -> StreamChunk:
        return cls(type="tool_start", tool_name=name, tool_params=params)

    @classmethod
    def tool_finished(cls, name: str, result: Any) -> StreamChunk:
        return cls(type="tool_result", tool_name=name, tool_result=result)

    @classmethod
    def done(cls, usage: TokenUsage) -> StreamChunk:
        return cls(type="done", is_finished=True, usage=usage)

    @classmethod
    def failed(cls, error: str, usage: TokenUsage) -> StreamChunk:
        return cls(type="error", error=error, is_finished=True, usage=usage)


ChunkCallback = Callable[[StreamChunk], "Awaitable[None] | None"]


@dataclass(slots=True, frozen=True)
class ExecutionResult:
    """Outcome of one ``execute``/``execute_stream`` invocation.

    Attributes:
        content: Final answer text.
        tools_used: Tool names in dispatch order (duplicates kept).
        tool_rounds: Completed tool rounds.
        total_usage: Usage summed over every model call in the execution.
        error: Transport failure message when no answer could be produced.
    """

    content: str
    tools_used: tuple[str, ...] = ()
    tool_rounds: int = 0
    total_usage: TokenUsage = field(default_factory=TokenUsage)
    error: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.tools_used, tuple):
            object.__setattr__(self, "tools_used", tuple(self.tools_used))

    @property
    def success(self) -> bool:
        return self.error is None


# -----------------------------------------------------------------------------
# Transport Payloads
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ChatResponse:
    """Complete response from a blocking model call."""

    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    finish_reason: str | None = None
    usage: TokenUsage | None = None

    @property
    def has_native_tool_calls(self) -> bool:
        return self.finish_reason == "tool_calls" and bool(self.tool_calls)


@dataclass(slots=True, frozen=True)
class StreamDelta:
    """One event from a streaming model call.

    ``tool_calls`` is cumulative: each delta carrying it holds every call
    assembled so far. The last delta of a stream has ``is_finished`` set.
    """

    content: str | None = None
    tool_calls: tuple[ToolCall, ...] | None = None
    usage: TokenUsage | None = None
    is_finished: bool = False
    finish_reason: str | None = None


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------


@runtime_checkable
class AbortSignal(Protocol):
    """Cooperative cancellation flag (``asyncio.Event``, ``threading.Event``...)."""

    def is_set(self) -> bool:
        ...


@dataclass(slots=True, frozen=True)
class ChatOptions:
    """Default sampling options applied to every round."""

    temperature: float = 0.7
    max_tokens: int = 2048


@dataclass(slots=True, frozen=True)
class AgentConfig:
    """Configuration for one agent.

    Attributes:
        max_tool_rounds: Round budget before the forced final answer.
        llm_options: Sampling options for round calls.
        abort_signal: Optional cancellation flag checked at every suspension point.
        auto_semantic_search: Whether the best-effort retrieval heuristic may
            run when the semantic pipeline is disabled.
    """

    max_tool_rounds: int = 5
    llm_options: ChatOptions = field(default_factory=ChatOptions)
    abort_signal: AbortSignal | None = None
    auto_semantic_search: bool = True


@dataclass(slots=True, frozen=True)
class OwnerInfo:
    """Identity of the user inside the analysed conversation."""

    display_name: str
    platform_id: str


@dataclass(slots=True, frozen=True)
class TimeFilter:
    """Inclusive unix-second range restricting message queries."""

    start_ts: int | None = None
    end_ts: int | None = None

    def to_dict(self) -> dict[str, int]:
        payload: dict[str, int] = {}
        if self.start_ts is not None:
            payload["startTs"] = self.start_ts
        if self.end_ts is not None:
            payload["endTs"] = self.end_ts
        return payload


@dataclass(slots=True, frozen=True)
class ToolContext:
    """Execution context handed to the tool executor with every batch."""

    session_id: str = ""
    owner_info: OwnerInfo | None = None
    max_messages_limit: int | None = None
    time_filter: TimeFilter | None = None
    locale: str = "zh-CN"


@dataclass(slots=True, frozen=True)
class PromptConfig:
    """User overrides for the editable parts of the system prompt."""

    role_definition: str = ""
    response_rules: str = ""

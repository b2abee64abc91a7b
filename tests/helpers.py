"""Shared test helpers and stub classes.

Scripted transports and tool collaborators used across the agent tests.
Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Callable, Iterable, Mapping, Sequence, Union

from chatlog_agent.ai.orchestration.tools import ToolSpec
from chatlog_agent.ai.orchestration.types import (
    ChatResponse,
    Message,
    StreamChunk,
    StreamDelta,
    TokenUsage,
    ToolCall,
    ToolContext,
    ToolResult,
)

ScriptStep = Union[StreamDelta, Exception, Callable[[], None]]


def usage(prompt: int, completion: int) -> TokenUsage:
    return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)


def text_response(content: str, *, tokens: tuple[int, int] = (10, 5)) -> ChatResponse:
    return ChatResponse(content=content, finish_reason="stop", usage=usage(*tokens))


def native_call_response(*calls: ToolCall, tokens: tuple[int, int] = (10, 5)) -> ChatResponse:
    return ChatResponse(content="", tool_calls=tuple(calls), finish_reason="tool_calls", usage=usage(*tokens))


def text_stream(*pieces: str, tokens: tuple[int, int] = (10, 5)) -> list[ScriptStep]:
    steps: list[ScriptStep] = [StreamDelta(content=piece) for piece in pieces]
    steps.append(StreamDelta(usage=usage(*tokens), is_finished=True, finish_reason="stop"))
    return steps


def native_call_stream(*calls: ToolCall, tokens: tuple[int, int] = (10, 5)) -> list[ScriptStep]:
    return [
        StreamDelta(tool_calls=tuple(calls)),
        StreamDelta(tool_calls=tuple(calls), usage=usage(*tokens), is_finished=True, finish_reason="tool_calls"),
    ]


class AbortFlag:
    """Minimal cancellation flag."""

    def __init__(self) -> None:
        self._set = False

    def set(self) -> None:
        self._set = True

    def is_set(self) -> bool:
        return self._set


class ScriptedModelClient:
    """Model transport that replays scripted responses in call order.

    ``responses`` feeds ``chat`` and ``streams`` feeds ``stream_chat``. A
    script entry that is an exception is raised; a callable stream step is
    invoked instead of being yielded.
    """

    def __init__(
        self,
        responses: Iterable[ChatResponse | Exception] = (),
        streams: Iterable[Sequence[ScriptStep]] = (),
    ) -> None:
        self._responses = list(responses)
        self._streams = [list(script) for script in streams]
        self.chat_calls: list[dict[str, Any]] = []
        self.stream_calls: list[dict[str, Any]] = []

    @property
    def call_count(self) -> int:
        return len(self.chat_calls) + len(self.stream_calls)

    async def chat(
        self,
        messages: Sequence[Message],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        abort_signal: Any = None,
    ) -> ChatResponse:
        self.chat_calls.append(
            {"messages": list(messages), "tools": tools, "temperature": temperature, "max_tokens": max_tokens}
        )
        if not self._responses:
            raise AssertionError("Unexpected chat call")
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def stream_chat(
        self,
        messages: Sequence[Message],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        abort_signal: Any = None,
    ) -> AsyncIterator[StreamDelta]:
        self.stream_calls.append(
            {"messages": list(messages), "tools": tools, "temperature": temperature, "max_tokens": max_tokens}
        )
        if not self._streams:
            raise AssertionError("Unexpected stream_chat call")
        for step in self._streams.pop(0):
            await asyncio.sleep(0)
            if isinstance(step, Exception):
                raise step
            if callable(step):
                step()
                continue
            yield step


class FakeTools:
    """Tool catalog and executor recording every dispatched batch."""

    def __init__(
        self,
        names: Iterable[str] = ("get_recent_messages", "search_messages"),
        results: Mapping[str, ToolResult | Callable[[ToolCall], ToolResult]] | None = None,
    ) -> None:
        self._names = list(names)
        self._results = dict(results or {})
        self.batches: list[list[ToolCall]] = []
        self.contexts: list[ToolContext] = []

    @property
    def dispatched(self) -> list[ToolCall]:
        return [call for batch in self.batches for call in batch]

    async def get_tool_definitions(self) -> list[dict[str, Any]]:
        return [ToolSpec(name=name, description=f"{name} tool").to_openai_tool() for name in self._names]

    async def execute_tool_calls(self, calls: Sequence[ToolCall], context: ToolContext) -> list[ToolResult]:
        self.batches.append(list(calls))
        self.contexts.append(context)
        results: list[ToolResult] = []
        for call in calls:
            configured = self._results.get(call.name)
            if configured is None:
                results.append(ToolResult.ok({"tool": call.name, "messages": []}))
            elif callable(configured):
                results.append(configured(call))
            else:
                results.append(configured)
        return results


class ChunkRecorder:
    """Stream consumer collecting every chunk."""

    def __init__(self) -> None:
        self.chunks: list[StreamChunk] = []

    def __call__(self, chunk: StreamChunk) -> None:
        self.chunks.append(chunk)

    def of_type(self, chunk_type: str) -> list[StreamChunk]:
        return [chunk for chunk in self.chunks if chunk.type == chunk_type]

    @property
    def text(self) -> str:
        return "".join(chunk.content or "" for chunk in self.of_type("content"))

    @property
    def terminal(self) -> list[StreamChunk]:
        return [chunk for chunk in self.chunks if chunk.is_terminal]

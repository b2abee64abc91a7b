"""Collaborator contracts and the default in-process tool registry.

The orchestrator depends only on the protocols defined here. ``ToolRegistry``
implements both the catalog and the executor contract for hosts that register
plain Python callables as tools.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Mapping,
    Protocol,
    Sequence,
    runtime_checkable,
)

from .types import AbortSignal, ChatResponse, Message, StreamDelta, ToolCall, ToolContext, ToolResult

__all__ = [
    "ModelClient",
    "ToolCatalog",
    "ToolCallExecutor",
    "ConfigAccessor",
    "StaticConfigAccessor",
    "ToolSpec",
    "ToolHandler",
    "ToolRegistry",
    "DuplicateToolError",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Protocols
# -----------------------------------------------------------------------------


@runtime_checkable
class ModelClient(Protocol):
    """Language-model transport used by the agent."""

    async def chat(
        self,
        messages: Sequence[Message],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> ChatResponse:
        """Run one blocking completion."""
        ...

    def stream_chat(
        self,
        messages: Sequence[Message],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """Run one streaming completion; the last delta has ``is_finished`` set."""
        ...


@runtime_checkable
class ToolCatalog(Protocol):
    async def get_tool_definitions(self) -> list[dict[str, Any]]:
        ...


@runtime_checkable
class ToolCallExecutor(Protocol):
    """Runs one batch of tool calls.

    Implementations return exactly one ToolResult per call, in call order,
    and report failures as results instead of raising.
    """

    async def execute_tool_calls(
        self,
        calls: Sequence[ToolCall],
        context: ToolContext,
    ) -> list[ToolResult]:
        ...


@runtime_checkable
class ConfigAccessor(Protocol):
    """Read-only view of the active configuration.

    ``load()`` returns any object exposing an ``embedding_model`` attribute.
    """

    def load(self) -> Any:
        ...


class StaticConfigAccessor:
    """ConfigAccessor over a fixed settings object."""

    def __init__(self, settings: Any) -> None:
        self._settings = settings

    def load(self) -> Any:
        return self._settings


# -----------------------------------------------------------------------------
# Tool Specification
# -----------------------------------------------------------------------------


ToolHandler = Callable[..., Any | Awaitable[Any]]


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Interface of a registered tool.

    Attributes:
        name: Unique identifier for the tool.
        description: Human-readable description shown to the model.
        parameters: JSON Schema for the tool's arguments.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters) if self.parameters else {
                    "type": "object",
                    "properties": {},
                },
            },
        }


class DuplicateToolError(Exception):
    """Raised when attempting to register a tool with a name that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


@dataclass(slots=True)
class _Registration:
    spec: ToolSpec
    handler: ToolHandler
    accepts_context: bool


# -----------------------------------------------------------------------------
# Tool Registry
# -----------------------------------------------------------------------------


class ToolRegistry:
    """In-process tool catalog and executor.

    Handlers receive the decoded argument mapping and, when they declare a
    second positional parameter, the batch's :class:`ToolContext`. Handlers
    may be sync or async.

    Example:
        registry = ToolRegistry()
        registry.register(
            ToolSpec(name="get_recent_messages", description="Latest messages"),
            lambda args, context: store.recent(context.session_id, args.get("limit", 50)),
        )
    """

    def __init__(self, *, default_timeout: float | None = 30.0) -> None:
        self._tools: dict[str, _Registration] = {}
        self._default_timeout = default_timeout

    def register(self, spec: ToolSpec, handler: ToolHandler, *, allow_override: bool = False) -> None:
        """Register ``handler`` under ``spec.name``.

        Raises:
            DuplicateToolError: If the name is taken and ``allow_override`` is False.
        """
        if spec.name in self._tools and not allow_override:
            raise DuplicateToolError(spec.name)
        self._tools[spec.name] = _Registration(
            spec=spec,
            handler=handler,
            accepts_context=_accepts_context(handler),
        )
        LOGGER.debug("Registered tool: %s", spec.name)

    def unregister(self, name: str) -> bool:
        if name in self._tools:
            del self._tools[name]
            LOGGER.debug("Unregistered tool: %s", name)
            return True
        return False

    def list_names(self) -> list[str]:
        return list(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    async def get_tool_definitions(self) -> list[dict[str, Any]]:
        return [registration.spec.to_openai_tool() for registration in self._tools.values()]

    async def execute_tool_calls(
        self,
        calls: Sequence[ToolCall],
        context: ToolContext,
    ) -> list[ToolResult]:
        """Run ``calls`` concurrently and return their results in call order."""
        if not calls:
            return []
        return list(await asyncio.gather(*(self._execute_one(call, context) for call in calls)))

    async def _execute_one(self, call: ToolCall, context: ToolContext) -> ToolResult:
        registration = self._tools.get(call.name)
        if registration is None:
            LOGGER.warning("Tool '%s' not found (call_id=%s)", call.name, call.id)
            return ToolResult.failure(f"Unknown tool: {call.name}")

        arguments = call.parsed_arguments()
        if arguments is None:
            LOGGER.warning("Tool %s received invalid arguments: %r", call.name, call.arguments[:200])
            return ToolResult.failure(f"Invalid arguments for {call.name}: expected a JSON object")

        LOGGER.debug("Executing tool %s (call_id=%s)", call.name, call.id)
        start_time = time.perf_counter()
        try:
            invocation = self._invoke(registration, arguments, context)
            if self._default_timeout is not None and self._default_timeout > 0:
                result = await asyncio.wait_for(invocation, timeout=self._default_timeout)
            else:
                result = await invocation
        except asyncio.TimeoutError:
            LOGGER.warning("Tool %s timed out after %.1fs", call.name, self._default_timeout)
            return ToolResult.failure(f"Tool {call.name} timed out after {self._default_timeout}s")
        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            LOGGER.warning("Tool %s failed after %.1fms: %s", call.name, duration_ms, exc)
            return ToolResult.failure(str(exc) or exc.__class__.__name__)

        duration_ms = (time.perf_counter() - start_time) * 1000
        LOGGER.debug("Tool %s completed in %.1fms", call.name, duration_ms)
        return ToolResult.ok(result)

    @staticmethod
    async def _invoke(registration: _Registration, arguments: Mapping[str, Any], context: ToolContext) -> Any:
        if registration.accepts_context:
            result = registration.handler(arguments, context)
        else:
            result = registration.handler(arguments)
        if inspect.isawaitable(result):
            result = await result
        return result


def _accepts_context(handler: ToolHandler) -> bool:
    try:
        signature = inspect.signature(handler)
    except (TypeError, ValueError):
        return False
    positional = [
        parameter
        for parameter in signature.parameters.values()
        if parameter.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    ]
    has_varargs = any(parameter.kind is inspect.Parameter.VAR_POSITIONAL for parameter in signature.parameters.values())
    return len(positional) >= 2 or has_varargs

"""Agent: the multi-round tool-calling loop.

The agent assembles the transcript, optionally grounds the question with a
forced semantic search, then alternates model calls and tool batches until the
model answers without requesting tools, the caller cancels, or the round
budget runs out. Blocking and streaming executions share the same transcript
handling; streaming additionally pipes deltas through the tag parser and
reports progress as :class:`StreamChunk` events.
"""

from __future__ import annotations

import dataclasses
import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol, Sequence

from .. import prompts
from .errors import ToolDispatchError
from .semantic_pipeline import SemanticRetrievalPipeline, run_auto_semantic_search, should_auto_search
from .stream_parser import StreamingTagParser
from .tool_call_parser import extract_tool_calls, has_tool_call_markup, strip_thinking
from .tools import ConfigAccessor, ModelClient, ToolCallExecutor, ToolCatalog
from .types import (
    AgentConfig,
    ChatType,
    ChunkCallback,
    ExecutionResult,
    Message,
    OwnerInfo,
    PromptConfig,
    StreamChunk,
    ToolCall,
    ToolContext,
    ToolResult,
    Transcript,
)
from .usage import UsageAccumulator

__all__ = ["Agent", "AgentTools", "PromptBuilder", "run_agent", "run_agent_stream"]

LOGGER = logging.getLogger(__name__)

# Tools whose ``limit`` argument is pinned to the context's message cap.
LIMITED_TOOLS = frozenset({"search_messages", "get_recent_messages", "get_conversation_between"})
# Tools that receive the context's time filter.
TIME_FILTERED_TOOLS = frozenset({"search_messages", "get_recent_messages"})

PromptBuilder = Callable[[ChatType, PromptConfig | None, OwnerInfo | None, str], str]
Emit = Callable[[StreamChunk], Awaitable[None]]


class AgentTools(ToolCatalog, ToolCallExecutor, Protocol):
    """A collaborator that is both the tool catalog and the tool executor."""


def _default_prompt_builder(
    chat_type: ChatType,
    prompt_config: PromptConfig | None,
    owner_info: OwnerInfo | None,
    locale: str,
) -> str:
    return prompts.build_system_prompt(chat_type, prompt_config, owner_info, locale)


def _coerce_history(history: Iterable[Message | Mapping[str, Any]]) -> list[Message]:
    return [item if isinstance(item, Message) else Message.from_chat_param(item) for item in history]


class Agent:
    """Drives one conversation turn over the chat-log tools.

    Args:
        client: Model transport.
        tools: Tool catalog and executor (see :class:`ToolRegistry`).
        context: Context forwarded to every tool batch.
        config: Round budget, sampling options and cancellation flag.
        history: Prior conversation messages placed between the system
            prompt and the new user message.
        chat_type: ``"group"`` or ``"private"``; selects prompt wording.
        prompt_config: Overrides for the editable parts of the system prompt.
        locale: ``"zh-CN"`` or ``"en-US"``.
        config_accessor: Active configuration read by the semantic pipeline.
        prompt_builder: Replacement for the default system-prompt builder.

    Example:
        >>> agent = Agent(client, registry, ToolContext(session_id="s1"))
        >>> result = await agent.execute("我们最近关系怎么样")
        >>> print(result.content)
    """

    def __init__(
        self,
        client: ModelClient,
        tools: AgentTools,
        context: ToolContext | None = None,
        config: AgentConfig | None = None,
        history: Iterable[Message | Mapping[str, Any]] = (),
        chat_type: ChatType = "group",
        prompt_config: PromptConfig | None = None,
        locale: str = prompts.DEFAULT_LOCALE,
        config_accessor: ConfigAccessor | None = None,
        prompt_builder: PromptBuilder | None = None,
    ) -> None:
        self._client = client
        self._tools = tools
        self._locale = locale
        self._context = dataclasses.replace(context or ToolContext(), locale=locale)
        self._config = config or AgentConfig()
        self._history = _coerce_history(history)
        self._chat_type: ChatType = chat_type
        self._prompt_config = prompt_config
        self._prompt_builder = prompt_builder or _default_prompt_builder
        self._pipeline = SemanticRetrievalPipeline(
            client,
            tools,
            config_accessor,
            context=self._context,
            locale=locale,
            abort_signal=self._config.abort_signal,
        )

        self._transcript = Transcript()
        self._usage = UsageAccumulator()
        self._tools_used: list[str] = []
        self._tool_rounds = 0
        self._parser: StreamingTagParser | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def context(self) -> ToolContext:
        return self._context

    @property
    def semantic_pipeline(self) -> SemanticRetrievalPipeline:
        return self._pipeline

    @property
    def transcript(self) -> Transcript:
        """Transcript of the most recent execution."""
        return self._transcript

    @property
    def usage(self) -> UsageAccumulator:
        return self._usage

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def execute(self, user_message: str) -> ExecutionResult:
        """Run one turn and return the final answer."""
        LOGGER.info("User question: %s", user_message)
        self._begin(user_message)
        if self._aborted():
            return self._result("")

        try:
            return await self._run_blocking(user_message)
        except Exception as exc:
            LOGGER.exception("Agent execution failed")
            return self._result("", error=str(exc) or exc.__class__.__name__)

    async def execute_stream(self, user_message: str, on_chunk: ChunkCallback) -> ExecutionResult:
        """Run one turn, reporting progress to ``on_chunk``.

        Exactly one terminal chunk (``done`` or ``error``) is delivered.
        """
        LOGGER.info("User question: %s", user_message)
        emit = _make_emitter(on_chunk)
        self._begin(user_message)
        if self._aborted():
            await emit(StreamChunk.done(self._usage.total))
            return self._result("")

        try:
            result = await self._run_stream(user_message, emit)
        except Exception as exc:
            LOGGER.exception("Agent streaming execution failed")
            error = str(exc) or exc.__class__.__name__
            await emit(StreamChunk.failed(error, self._usage.total))
            partial = self._parser.forwarded if self._parser is not None else ""
            return self._result(partial, error=error)

        await emit(StreamChunk.done(self._usage.total))
        return result

    # ------------------------------------------------------------------
    # Execution state
    # ------------------------------------------------------------------
    def _begin(self, user_message: str) -> None:
        system_prompt = self._prompt_builder(
            self._chat_type,
            self._prompt_config,
            self._context.owner_info,
            self._locale,
        )
        self._transcript = Transcript([Message.system(system_prompt), *self._history, Message.user(user_message)])
        self._usage.reset()
        self._tools_used = []
        self._tool_rounds = 0
        self._parser = None

    def _result(self, content: str, *, error: str | None = None) -> ExecutionResult:
        return ExecutionResult(
            content=content,
            tools_used=tuple(self._tools_used),
            tool_rounds=self._tool_rounds,
            total_usage=self._usage.total,
            error=error,
        )

    def _aborted(self) -> bool:
        signal = self._config.abort_signal
        return signal is not None and signal.is_set()

    # ------------------------------------------------------------------
    # Blocking mode
    # ------------------------------------------------------------------
    async def _run_blocking(self, user_message: str) -> ExecutionResult:
        tools = await self._prepare(user_message, emit=None)
        options = self._config.llm_options

        while self._tool_rounds < self._config.max_tool_rounds:
            if self._aborted():
                return self._result("")

            response = await self._client.chat(
                self._transcript.messages,
                tools=tools or None,
                temperature=options.temperature,
                max_tokens=options.max_tokens,
                abort_signal=self._config.abort_signal,
            )
            self._usage.add(response.usage)

            calls = self._resolve_calls(
                response.content,
                response.tool_calls if response.has_native_tool_calls else (),
            )
            if not calls:
                _, content = strip_thinking(response.content)
                LOGGER.info("Final answer: %s", content)
                return self._result(content)

            if self._aborted():
                return self._result("")
            await self._run_tool_round(calls, emit=None)

        LOGGER.warning("Reached max tool rounds (%d); forcing a final answer", self._config.max_tool_rounds)
        if self._aborted():
            return self._result("")

        self._transcript.append(Message.user(prompts.budget_exhausted_instruction(self._locale)))
        response = await self._client.chat(
            self._transcript.messages,
            temperature=options.temperature,
            max_tokens=options.max_tokens,
            abort_signal=self._config.abort_signal,
        )
        self._usage.add(response.usage)
        if response.tool_calls or has_tool_call_markup(response.content):
            LOGGER.warning("Ignoring tool calls requested after the round budget was exhausted")
        _, content = strip_thinking(response.content)
        LOGGER.info("Final answer: %s", content)
        return self._result(content)

    # ------------------------------------------------------------------
    # Streaming mode
    # ------------------------------------------------------------------
    async def _run_stream(self, user_message: str, emit: Emit) -> ExecutionResult:
        tools = await self._prepare(user_message, emit=emit)
        options = self._config.llm_options

        while self._tool_rounds < self._config.max_tool_rounds:
            if self._aborted():
                return self._result("")

            parser = self._parser = StreamingTagParser()
            native_calls: tuple[ToolCall, ...] = ()
            finish_reason: str | None = None

            async for delta in self._client.stream_chat(
                self._transcript.messages,
                tools=tools or None,
                temperature=options.temperature,
                max_tokens=options.max_tokens,
                abort_signal=self._config.abort_signal,
            ):
                if self._aborted():
                    return self._result(parser.forwarded)
                if delta.content:
                    visible = parser.feed(delta.content)
                    if visible:
                        await emit(StreamChunk.content_delta(visible))
                if delta.tool_calls is not None:
                    native_calls = delta.tool_calls
                if delta.usage is not None:
                    self._usage.add(delta.usage)
                if delta.is_finished:
                    finish_reason = delta.finish_reason

            tail = parser.finish()
            if tail:
                await emit(StreamChunk.content_delta(tail))

            native = native_calls if finish_reason == "tool_calls" else ()
            calls = self._resolve_calls(parser.buffer, native)
            if not calls:
                _, content = strip_thinking(parser.buffer)
                LOGGER.info("Final answer: %s", content)
                return self._result(content)

            if self._aborted():
                return self._result(parser.forwarded)
            for call in calls:
                await emit(StreamChunk.tool_start(call.name, self._tool_start_params(call)))
            await self._run_tool_round(calls, emit=emit)

        LOGGER.warning("Reached max tool rounds (%d); forcing a final answer", self._config.max_tool_rounds)
        if self._aborted():
            return self._result("")

        self._transcript.append(Message.user(prompts.budget_exhausted_instruction(self._locale)))
        parser = self._parser = StreamingTagParser()
        requested_tools = False
        async for delta in self._client.stream_chat(
            self._transcript.messages,
            temperature=options.temperature,
            max_tokens=options.max_tokens,
            abort_signal=self._config.abort_signal,
        ):
            if self._aborted():
                return self._result(parser.forwarded)
            if delta.content:
                visible = parser.feed(delta.content)
                if visible:
                    await emit(StreamChunk.content_delta(visible))
            if delta.tool_calls:
                requested_tools = True
            if delta.usage is not None:
                self._usage.add(delta.usage)

        tail = parser.finish()
        if tail:
            await emit(StreamChunk.content_delta(tail))
        if requested_tools or parser.has_tool_call_markup:
            LOGGER.warning("Ignoring tool calls requested after the round budget was exhausted")
        _, content = strip_thinking(parser.buffer)
        LOGGER.info("Final answer: %s", content)
        return self._result(content)

    def _tool_start_params(self, call: ToolCall) -> dict[str, Any] | None:
        params = call.parsed_arguments()
        if params is None:
            return None
        if self._context.max_messages_limit and call.name in LIMITED_TOOLS:
            params["limit"] = self._context.max_messages_limit
        if self._context.time_filter is not None and call.name in TIME_FILTERED_TOOLS:
            params["_timeFilter"] = self._context.time_filter.to_dict()
        return params

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------
    async def _prepare(self, user_message: str, *, emit: Emit | None) -> list[dict[str, Any]]:
        """Load the catalog and run the retrieval step that applies, if any."""
        tools = await self._tools.get_tool_definitions()
        if self._aborted():
            return tools

        ran_pipeline = await self._pipeline.run(
            user_message,
            tools,
            transcript=self._transcript,
            usage=self._usage,
            tools_used=self._tools_used,
            emit=emit,
        )
        if ran_pipeline or not self._config.auto_semantic_search or self._aborted():
            return tools

        if should_auto_search(user_message):
            evidence = await run_auto_semantic_search(
                user_message,
                tools,
                self._tools,
                self._context,
                locale=self._locale,
            )
            if evidence:
                self._transcript.insert_before_last_user(Message.system(evidence))
        return tools

    @staticmethod
    def _resolve_calls(content: str | None, native_calls: Sequence[ToolCall]) -> list[ToolCall]:
        """Native calls win; otherwise fall back to calls embedded in the text."""
        if native_calls:
            return list(native_calls)
        if not has_tool_call_markup(content):
            return []
        extracted = extract_tool_calls(content)
        if not extracted:
            LOGGER.warning("Tool-call markup present but no call could be parsed; treating text as the answer")
            return []
        return extracted

    async def _run_tool_round(self, calls: Sequence[ToolCall], *, emit: Emit | None) -> None:
        for call in calls:
            LOGGER.info("Tool call: %s %s", call.name, call.arguments)

        results = await self._dispatch(calls)
        error_prefix = prompts.tool_error_prefix(self._locale)
        contents: list[str] = []
        for call, result in zip(calls, results):
            self._tools_used.append(call.name)
            if emit is not None:
                await emit(StreamChunk.tool_finished(call.name, result.payload))
            if result.success:
                LOGGER.info("Tool result: %s", call.name)
                LOGGER.debug("Tool %s returned %r", call.name, result.result)
            else:
                LOGGER.warning("Tool failed: %s: %s", call.name, result.error)
            contents.append(result.to_message_content(error_prefix))

        self._transcript.append_tool_exchange(calls, contents)
        self._tool_rounds += 1

    async def _dispatch(self, calls: Sequence[ToolCall]) -> list[ToolResult]:
        """Run one batch, converting executor faults into per-call failures."""
        try:
            results = list(await self._tools.execute_tool_calls(calls, self._context))
        except Exception as exc:
            error = ToolDispatchError([call.name for call in calls], str(exc) or exc.__class__.__name__)
            LOGGER.exception("%s", error)
            return [ToolResult.failure(str(error)) for _ in calls]

        if len(results) != len(calls):
            LOGGER.error("Tool executor returned %d results for %d calls", len(results), len(calls))
            missing = ToolResult.failure("No result returned for this call")
            results = (results + [missing] * len(calls))[: len(calls)]
        return results


def _make_emitter(on_chunk: ChunkCallback) -> Emit:
    async def emit(chunk: StreamChunk) -> None:
        try:
            outcome = on_chunk(chunk)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            LOGGER.warning("Stream consumer raised while handling a %s chunk", chunk.type, exc_info=True)

    return emit


# -----------------------------------------------------------------------------
# Convenience Functions
# -----------------------------------------------------------------------------


async def run_agent(
    user_message: str,
    client: ModelClient,
    tools: AgentTools,
    context: ToolContext | None = None,
    config: AgentConfig | None = None,
    history: Iterable[Message | Mapping[str, Any]] = (),
    chat_type: ChatType = "group",
    **kwargs: Any,
) -> ExecutionResult:
    """Create an Agent and run one blocking execution."""
    agent = Agent(client, tools, context, config, history, chat_type, **kwargs)
    return await agent.execute(user_message)


async def run_agent_stream(
    user_message: str,
    client: ModelClient,
    tools: AgentTools,
    on_chunk: ChunkCallback,
    context: ToolContext | None = None,
    config: AgentConfig | None = None,
    history: Iterable[Message | Mapping[str, Any]] = (),
    chat_type: ChatType = "group",
    **kwargs: Any,
) -> ExecutionResult:
    """Create an Agent and run one streaming execution."""
    agent = Agent(client, tools, context, config, history, chat_type, **kwargs)
    return await agent.execute_stream(user_message, on_chunk)

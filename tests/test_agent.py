"""Tests for the multi-round agent orchestrator."""

from __future__ import annotations

import json
from typing import Any, Sequence

import pytest

from chatlog_agent.ai.orchestration import (
    Agent,
    AgentConfig,
    ChatResponse,
    StreamChunk,
    StreamDelta,
    TimeFilter,
    ToolCall,
    ToolContext,
    ToolResult,
    TransportError,
    run_agent,
    run_agent_stream,
)
from chatlog_agent.ai.orchestration.tools import StaticConfigAccessor
from chatlog_agent.ai.prompts import budget_exhausted_instruction

from tests.helpers import (
    AbortFlag,
    ChunkRecorder,
    FakeTools,
    ScriptedModelClient,
    native_call_response,
    native_call_stream,
    text_response,
    text_stream,
    usage,
)


def _prompt(chat_type: str, prompt_config: Any, owner_info: Any, locale: str) -> str:
    return f"SYSTEM {chat_type} {locale}"


def _agent(
    client: ScriptedModelClient,
    tools: FakeTools,
    *,
    context: ToolContext | None = None,
    config: AgentConfig | None = None,
    **kwargs: Any,
) -> Agent:
    kwargs.setdefault("prompt_builder", _prompt)
    return Agent(client, tools, context, config, **kwargs)


def _recent_call(call_id: str = "call_1", arguments: str = '{"limit": 10}') -> ToolCall:
    return ToolCall(id=call_id, name="get_recent_messages", arguments=arguments)


def _roles(messages: Sequence[Any]) -> list[str]:
    return [message.kind for message in messages]


# -----------------------------------------------------------------------------
# Blocking execution
# -----------------------------------------------------------------------------


class TestExecute:
    @pytest.mark.asyncio
    async def test_direct_answer_without_embedding_model(
        self, fake_tools: FakeTools, no_embedding_config: StaticConfigAccessor
    ) -> None:
        """A direct reply finishes in zero rounds and nothing is searched."""
        client = ScriptedModelClient([text_response("10月1号大家在聊国庆出游。")])
        agent = _agent(client, fake_tools, config=AgentConfig(max_tool_rounds=5), config_accessor=no_embedding_config)

        result = await agent.execute("10月1号的消息")

        assert result.success
        assert result.content == "10月1号大家在聊国庆出游。"
        assert result.tool_rounds == 0
        assert result.tools_used == ()
        assert result.total_usage == usage(10, 5)
        assert fake_tools.batches == []
        assert len(client.chat_calls) == 1
        first = client.chat_calls[0]
        assert _roles(first["messages"]) == ["system", "user"]
        assert first["messages"][0].content == "SYSTEM group zh-CN"
        assert first["tools"][0]["function"]["name"] == "get_recent_messages"

    @pytest.mark.asyncio
    async def test_thinking_is_stripped_from_answer(self, fake_tools: FakeTools) -> None:
        client = ScriptedModelClient([text_response("<think>reasoning</think>Here is the answer.")])

        result = await _agent(client, fake_tools).execute("hi")

        assert result.content == "Here is the answer."

    @pytest.mark.asyncio
    async def test_fallback_tool_call_is_dispatched(self, fake_tools: FakeTools) -> None:
        client = ScriptedModelClient(
            [
                text_response(
                    '<tool_call>{"name":"get_recent_messages","arguments":{"limit":10}}</tool_call>',
                    tokens=(30, 12),
                ),
                text_response("最近在聊旅行。", tokens=(50, 8)),
            ]
        )
        agent = _agent(client, fake_tools)

        result = await agent.execute("最近聊了什么")

        assert result.content == "最近在聊旅行。"
        assert result.tool_rounds == 1
        assert result.tools_used == ("get_recent_messages",)
        assert result.total_usage == usage(80, 20)

        call = fake_tools.dispatched[0]
        assert call.name == "get_recent_messages"
        assert call.source == "fallback"
        assert json.loads(call.arguments) == {"limit": 10}

        second = client.chat_calls[1]["messages"]
        assert _roles(second) == ["system", "user", "assistant_with_calls", "tool_result"]
        assert second[-1].tool_call_id == call.id
        agent.transcript.verify_tool_correlation()

    @pytest.mark.asyncio
    async def test_native_calls_win_over_markup(self, fake_tools: FakeTools) -> None:
        native = ChatResponse(
            content='<tool_call>{"name": "search_messages"}</tool_call>',
            tool_calls=(_recent_call(),),
            finish_reason="tool_calls",
            usage=usage(1, 1),
        )
        client = ScriptedModelClient([native, text_response("done")])

        result = await _agent(client, fake_tools).execute("q")

        assert result.tools_used == ("get_recent_messages",)
        assert fake_tools.dispatched[0].id == "call_1"

    @pytest.mark.asyncio
    async def test_native_calls_ignored_unless_finish_reason_is_tool_calls(self, fake_tools: FakeTools) -> None:
        response = ChatResponse(content="answer", tool_calls=(_recent_call(),), finish_reason="stop")
        client = ScriptedModelClient([response])

        result = await _agent(client, fake_tools).execute("q")

        assert result.content == "answer"
        assert fake_tools.batches == []

    @pytest.mark.asyncio
    async def test_tool_failure_is_reported_to_the_model(self) -> None:
        tools = FakeTools(results={"search_messages": ToolResult.failure("database locked")})
        client = ScriptedModelClient(
            [
                native_call_response(ToolCall(id="c1", name="search_messages", arguments='{"keywords": ["猫"]}')),
                text_response("查询失败了。"),
            ]
        )

        result = await _agent(client, tools).execute("谁提到过猫")

        assert result.success
        assert result.tools_used == ("search_messages",)
        assert client.chat_calls[1]["messages"][-1].content == "错误: database locked"

    @pytest.mark.asyncio
    async def test_english_locale_uses_english_error_prefix(self) -> None:
        tools = FakeTools(results={"search_messages": ToolResult.failure("database locked")})
        client = ScriptedModelClient(
            [native_call_response(ToolCall(id="c1", name="search_messages")), text_response("ok")]
        )

        await _agent(client, tools, locale="en-US").execute("who mentioned cats")

        assert client.chat_calls[0]["messages"][0].content == "SYSTEM group en-US"
        assert client.chat_calls[1]["messages"][-1].content == "Error: database locked"

    @pytest.mark.asyncio
    async def test_executor_exception_fails_every_call_in_the_batch(self) -> None:
        class _Exploding(FakeTools):
            async def execute_tool_calls(self, calls, context):  # type: ignore[override]
                raise RuntimeError("boom")

        tools = _Exploding()
        client = ScriptedModelClient(
            [
                native_call_response(_recent_call("a"), ToolCall(id="b", name="search_messages")),
                text_response("sorry"),
            ]
        )

        result = await _agent(client, tools).execute("q")

        assert result.content == "sorry"
        tool_messages = client.chat_calls[1]["messages"][-2:]
        assert [message.tool_call_id for message in tool_messages] == ["a", "b"]
        assert all(message.content.startswith("错误: ") and "boom" in message.content for message in tool_messages)

    @pytest.mark.asyncio
    async def test_context_is_passed_to_executor(self, fake_tools: FakeTools) -> None:
        context = ToolContext(session_id="s-1", max_messages_limit=200)
        client = ScriptedModelClient([native_call_response(_recent_call()), text_response("ok")])

        await _agent(client, fake_tools, context=context).execute("q")

        assert fake_tools.contexts[0].session_id == "s-1"
        assert fake_tools.contexts[0].max_messages_limit == 200

    @pytest.mark.asyncio
    async def test_history_sits_between_system_prompt_and_question(self, fake_tools: FakeTools) -> None:
        client = ScriptedModelClient([text_response("ok")])
        history = [{"role": "user", "content": "早"}, {"role": "assistant", "content": "早上好"}]

        await _agent(client, fake_tools, history=history).execute("今天聊了什么")

        messages = client.chat_calls[0]["messages"]
        assert [message.content for message in messages] == ["SYSTEM group zh-CN", "早", "早上好", "今天聊了什么"]

    @pytest.mark.asyncio
    async def test_budget_exhaustion_forces_final_answer(self, fake_tools: FakeTools) -> None:
        final = ChatResponse(
            content="<think>enough</think>根据已有信息，大家在聊旅行。",
            tool_calls=(_recent_call("r3"),),
            finish_reason="tool_calls",
            usage=usage(7, 3),
        )
        client = ScriptedModelClient(
            [native_call_response(_recent_call("r1")), native_call_response(_recent_call("r2")), final]
        )
        agent = _agent(client, fake_tools, config=AgentConfig(max_tool_rounds=2))

        result = await agent.execute("q")

        assert result.content == "根据已有信息，大家在聊旅行。"
        assert result.tool_rounds == 2
        assert result.total_usage == usage(27, 13)
        assert len(fake_tools.batches) == 2
        final_call = client.chat_calls[-1]
        assert final_call["tools"] is None
        assert final_call["messages"][-1].role == "user"
        assert final_call["messages"][-1].content == budget_exhausted_instruction("zh-CN")

    @pytest.mark.asyncio
    async def test_transport_error_is_reported_in_result(self, fake_tools: FakeTools) -> None:
        client = ScriptedModelClient([TransportError("upstream unavailable")])

        result = await _agent(client, fake_tools).execute("q")

        assert not result.success
        assert result.error == "upstream unavailable"
        assert result.content == ""

    @pytest.mark.asyncio
    async def test_abort_before_start_issues_no_calls(self, fake_tools: FakeTools, abort_flag: AbortFlag) -> None:
        abort_flag.set()
        client = ScriptedModelClient()

        result = await _agent(client, fake_tools, config=AgentConfig(abort_signal=abort_flag)).execute("q")

        assert result.content == ""
        assert result.success
        assert client.call_count == 0

    @pytest.mark.asyncio
    async def test_abort_during_tool_round_stops_the_loop(self, abort_flag: AbortFlag) -> None:
        def _set_abort(call: ToolCall) -> ToolResult:
            abort_flag.set()
            return ToolResult.ok([])

        tools = FakeTools(results={"get_recent_messages": _set_abort})
        client = ScriptedModelClient([native_call_response(_recent_call())])

        result = await _agent(client, tools, config=AgentConfig(abort_signal=abort_flag)).execute("q")

        assert result.content == ""
        assert result.tool_rounds == 1
        assert len(client.chat_calls) == 1
        assert len(tools.batches) == 1

    @pytest.mark.asyncio
    async def test_each_execution_starts_fresh(self, fake_tools: FakeTools) -> None:
        client = ScriptedModelClient(
            [native_call_response(_recent_call()), text_response("first"), text_response("second")]
        )
        agent = _agent(client, fake_tools)

        await agent.execute("one")
        result = await agent.execute("two")

        assert result.content == "second"
        assert result.tool_rounds == 0
        assert result.tools_used == ()
        assert result.total_usage == usage(10, 5)
        assert _roles(client.chat_calls[-1]["messages"]) == ["system", "user"]


# -----------------------------------------------------------------------------
# Retrieval before the loop
# -----------------------------------------------------------------------------


class TestRetrieval:
    @pytest.mark.asyncio
    async def test_forced_semantic_search_runs_once(
        self, semantic_tools: FakeTools, embedding_config: StaticConfigAccessor
    ) -> None:
        client = ScriptedModelClient(
            [
                text_response('{"query": "关系 相处 最近", "top_k": 80, "candidate_limit": 5}'),
                native_call_response(_recent_call()),
                text_response("你们最近相处得不错。"),
            ]
        )
        agent = _agent(client, semantic_tools, config_accessor=embedding_config)

        result = await agent.execute("我们最近关系怎么样")

        assert result.tools_used.count("semantic_search_messages") == 1
        assert result.tools_used == ("semantic_search_messages", "get_recent_messages")
        assert result.tool_rounds == 1
        assert result.total_usage == usage(30, 15)

        forced = semantic_tools.batches[0][0]
        arguments = json.loads(forced.arguments)
        assert forced.name == "semantic_search_messages"
        assert 1 <= arguments["top_k"] <= 50
        assert 20 <= arguments["candidate_limit"] <= 500
        assert (arguments["top_k"], arguments["candidate_limit"]) == (50, 20)

        transcript = agent.transcript
        evidence_index = next(
            index for index, message in enumerate(transcript) if message.content.startswith("【语义检索证据")
        )
        assert evidence_index == transcript.last_index_of("user") - 1
        transcript.verify_tool_correlation()

    @pytest.mark.asyncio
    async def test_auto_search_runs_without_embedding_model(self, no_embedding_config: StaticConfigAccessor) -> None:
        tools = FakeTools(
            names=("get_recent_messages", "semantic_search_messages"),
            results={
                "semantic_search_messages": ToolResult.ok(
                    {"query": "关系", "results": [{"score": 0.8, "message": "周末一起吃饭"}]}
                )
            },
        )
        client = ScriptedModelClient([text_response("不错。")])
        agent = _agent(client, tools, config_accessor=no_embedding_config)

        result = await agent.execute("我们最近关系怎么样")

        assert result.tools_used == ()
        assert len(client.chat_calls) == 1
        messages = client.chat_calls[0]["messages"]
        assert _roles(messages) == ["system", "system", "user"]
        assert messages[1].content.startswith("【语义检索结果】")

    @pytest.mark.asyncio
    async def test_auto_search_can_be_disabled(self, no_embedding_config: StaticConfigAccessor) -> None:
        tools = FakeTools(names=("semantic_search_messages",))
        client = ScriptedModelClient([text_response("ok")])
        config = AgentConfig(auto_semantic_search=False)

        await _agent(client, tools, config=config, config_accessor=no_embedding_config).execute("我们最近关系怎么样")

        assert tools.batches == []


# -----------------------------------------------------------------------------
# Streaming execution
# -----------------------------------------------------------------------------


class TestExecuteStream:
    @pytest.mark.asyncio
    async def test_streams_visible_text_only(self, fake_tools: FakeTools, recorder: ChunkRecorder) -> None:
        client = ScriptedModelClient(streams=[text_stream("<think>推", "理</think>你们", "最近在聊旅行。")])

        result = await _agent(client, fake_tools).execute_stream("q", recorder)

        assert result.content == "你们最近在聊旅行。"
        assert recorder.text == "你们最近在聊旅行。"
        assert [chunk.type for chunk in recorder.terminal] == ["done"]
        assert recorder.chunks[-1].usage == usage(10, 5)

    @pytest.mark.asyncio
    async def test_streamed_fallback_call_is_hidden_and_dispatched(
        self, fake_tools: FakeTools, recorder: ChunkRecorder
    ) -> None:
        client = ScriptedModelClient(
            streams=[
                text_stream("我查一下。<tool_", 'call>{"name": "get_recent_messages", "arguments": {"limit": 5}}', "</tool_call>"),
                text_stream("查到了。"),
            ]
        )

        result = await _agent(client, fake_tools).execute_stream("q", recorder)

        assert recorder.text == "我查一下。查到了。"
        assert result.content == "查到了。"
        assert result.tools_used == ("get_recent_messages",)
        assert [chunk.type for chunk in recorder.chunks] == [
            "content",
            "tool_start",
            "tool_result",
            "content",
            "done",
        ]

    @pytest.mark.asyncio
    async def test_tool_start_params_reflect_context(self, fake_tools: FakeTools, recorder: ChunkRecorder) -> None:
        context = ToolContext(max_messages_limit=100, time_filter=TimeFilter(start_ts=1, end_ts=2))
        client = ScriptedModelClient(
            streams=[native_call_stream(_recent_call(arguments='{"limit": 10}')), text_stream("ok")]
        )

        await _agent(client, fake_tools, context=context).execute_stream("q", recorder)

        start = recorder.of_type("tool_start")[0]
        assert start.tool_name == "get_recent_messages"
        assert start.tool_params == {"limit": 100, "_timeFilter": {"startTs": 1, "endTs": 2}}
        finished = recorder.of_type("tool_result")[0]
        assert finished.tool_result == {"tool": "get_recent_messages", "messages": []}

    @pytest.mark.asyncio
    async def test_stream_budget_exhaustion(self, fake_tools: FakeTools, recorder: ChunkRecorder) -> None:
        client = ScriptedModelClient(
            streams=[native_call_stream(_recent_call()), text_stream("最终", "回答", tokens=(20, 10))]
        )

        result = await _agent(client, fake_tools, config=AgentConfig(max_tool_rounds=1)).execute_stream("q", recorder)

        assert result.content == "最终回答"
        assert result.tool_rounds == 1
        assert result.total_usage == usage(30, 15)
        assert client.stream_calls[-1]["tools"] is None
        assert recorder.text == "最终回答"
        assert len(recorder.terminal) == 1

    @pytest.mark.asyncio
    async def test_transport_error_emits_error_chunk(self, fake_tools: FakeTools, recorder: ChunkRecorder) -> None:
        client = ScriptedModelClient(
            streams=[[StreamDelta(content="部分回答"), TransportError("connection reset")]]
        )

        result = await _agent(client, fake_tools).execute_stream("q", recorder)

        assert result.error == "connection reset"
        assert result.content == "部分回答"
        assert [chunk.type for chunk in recorder.terminal] == ["error"]
        assert recorder.terminal[0].error == "connection reset"
        assert recorder.of_type("done") == []

    @pytest.mark.asyncio
    async def test_cancellation_mid_stream(
        self, fake_tools: FakeTools, recorder: ChunkRecorder, abort_flag: AbortFlag
    ) -> None:
        client = ScriptedModelClient(
            streams=[
                [
                    StreamDelta(content="部分"),
                    abort_flag.set,
                    StreamDelta(content="不应出现"),
                    StreamDelta(tool_calls=(_recent_call(),), is_finished=True, finish_reason="tool_calls"),
                ]
            ]
        )
        agent = _agent(client, fake_tools, config=AgentConfig(abort_signal=abort_flag))

        result = await agent.execute_stream("q", recorder)

        assert result.content == "部分"
        assert recorder.text == "部分"
        assert fake_tools.batches == []
        assert client.call_count == 1
        assert [chunk.type for chunk in recorder.terminal] == ["done"]

    @pytest.mark.asyncio
    async def test_abort_before_start_emits_done(
        self, fake_tools: FakeTools, recorder: ChunkRecorder, abort_flag: AbortFlag
    ) -> None:
        abort_flag.set()
        client = ScriptedModelClient()

        result = await _agent(client, fake_tools, config=AgentConfig(abort_signal=abort_flag)).execute_stream(
            "q", recorder
        )

        assert result.content == ""
        assert [chunk.type for chunk in recorder.chunks] == ["done"]
        assert client.call_count == 0

    @pytest.mark.asyncio
    async def test_async_and_failing_consumers(self, fake_tools: FakeTools) -> None:
        seen: list[StreamChunk] = []

        async def consumer(chunk: StreamChunk) -> None:
            seen.append(chunk)
            if chunk.type == "content":
                raise RuntimeError("UI closed")

        client = ScriptedModelClient(streams=[text_stream("a", "b")])

        result = await _agent(client, fake_tools).execute_stream("q", consumer)

        assert result.content == "ab"
        assert [chunk.type for chunk in seen] == ["content", "content", "done"]

    @pytest.mark.asyncio
    async def test_forced_search_is_reported_to_stream(
        self,
        semantic_tools: FakeTools,
        embedding_config: StaticConfigAccessor,
        recorder: ChunkRecorder,
    ) -> None:
        client = ScriptedModelClient(
            responses=[text_response('{"query": "旅行"}')],
            streams=[text_stream("答案")],
        )

        result = await _agent(client, semantic_tools, config_accessor=embedding_config).execute_stream(
            "我们最近关系怎么样", recorder
        )

        assert result.tools_used == ("semantic_search_messages",)
        assert result.total_usage == usage(20, 10)
        assert [chunk.type for chunk in recorder.chunks] == ["tool_start", "tool_result", "content", "done"]
        assert recorder.chunks[0].tool_params == {"query": "旅行", "top_k": 5, "candidate_limit": 200}


class TestConvenienceFunctions:
    @pytest.mark.asyncio
    async def test_run_agent(self, fake_tools: FakeTools) -> None:
        client = ScriptedModelClient([text_response("ok")])

        result = await run_agent("q", client, fake_tools, prompt_builder=_prompt)

        assert result.content == "ok"

    @pytest.mark.asyncio
    async def test_run_agent_stream(self, fake_tools: FakeTools, recorder: ChunkRecorder) -> None:
        client = ScriptedModelClient(streams=[text_stream("o", "k")])

        result = await run_agent_stream("q", client, fake_tools, recorder, chat_type="private", prompt_builder=_prompt)

        assert result.content == "ok"
        assert client.stream_calls[0]["messages"][0].content == "SYSTEM private zh-CN"

"""Forced semantic retrieval ahead of the tool-calling loop.

When an embedding model is configured the agent does not wait for the model
to decide to search. The pipeline rewrites the question into a retrieval plan,
dispatches exactly one ``semantic_search_messages`` call and splices the
results into the transcript as an evidence block.

The legacy auto-search heuristic covers the case where no embedding model is
configured: it searches with the raw question when the question looks
analytical, without involving the model at all.
"""

from __future__ import annotations

import json
import logging
import math
import re
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Sequence

from .. import prompts
from .tools import ConfigAccessor, ModelClient, ToolCallExecutor
from .types import AbortSignal, Message, StreamChunk, ToolCall, ToolContext, ToolResult, Transcript
from .usage import UsageAccumulator

__all__ = [
    "SEMANTIC_SEARCH_TOOL",
    "RetrievalPlan",
    "SemanticRetrievalPipeline",
    "parse_retrieval_plan",
    "catalog_has_tool",
    "should_auto_search",
    "run_auto_semantic_search",
]

LOGGER = logging.getLogger(__name__)

SEMANTIC_SEARCH_TOOL = "semantic_search_messages"

DEFAULT_TOP_K = 5
DEFAULT_CANDIDATE_LIMIT = 200
TOP_K_RANGE = (1, 50)
CANDIDATE_LIMIT_RANGE = (20, 500)

REWRITE_TEMPERATURE = 0.2
REWRITE_MAX_TOKENS = 200

AUTO_SEARCH_TOP_K = 8
AUTO_SEARCH_CANDIDATE_LIMIT = 200
AUTO_SEARCH_MIN_LENGTH = 15
AUTO_SEARCH_TRIGGERS = (
    "关系",
    "相处",
    "进展",
    "总结",
    "分析",
    "洞察",
    "怎么",
    "为什么",
    "发生了什么",
    "线索",
    "类似",
    "有没有聊过",
    "提到过",
)
_EXPLICIT_TOOL_RE = re.compile(
    r"get_recent_messages|search_messages|get_conversation_between|semantic_search_messages",
    re.IGNORECASE,
)

Emit = Callable[[StreamChunk], Awaitable[None]]


# -----------------------------------------------------------------------------
# Retrieval Plan
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class RetrievalPlan:
    """Arguments for one semantic search call."""

    query: str
    top_k: float = DEFAULT_TOP_K
    candidate_limit: float = DEFAULT_CANDIDATE_LIMIT

    def clamped(self, max_messages_limit: int | None = None) -> RetrievalPlan:
        """Bound the numeric fields and cap the candidate pool by the message limit."""
        top_k = _clamp(self.top_k, DEFAULT_TOP_K, *TOP_K_RANGE)
        candidate_limit = _clamp(self.candidate_limit, DEFAULT_CANDIDATE_LIMIT, *CANDIDATE_LIMIT_RANGE)
        if max_messages_limit:
            candidate_limit = min(candidate_limit, max_messages_limit)
        return RetrievalPlan(query=self.query, top_k=top_k, candidate_limit=candidate_limit)

    def to_arguments(self) -> dict[str, Any]:
        return {"query": self.query, "top_k": self.top_k, "candidate_limit": self.candidate_limit}


def _clamp(value: float, default: int, lower: int, upper: int) -> int:
    if isinstance(value, float) and not math.isfinite(value):
        value = default
    return max(lower, min(upper, int(value)))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_retrieval_plan(raw: str | None, fallback_query: str) -> RetrievalPlan:
    """Read the first JSON object in ``raw`` as a retrieval plan.

    Fields that are missing or of the wrong type keep their defaults; the query
    defaults to ``fallback_query``.

    Raises:
        ValueError: If ``raw`` holds no decodable JSON object.
    """
    text = (raw or "").strip()
    start = text.find("{")
    if start == -1:
        raise ValueError("rewrite reply contains no JSON object")
    try:
        parsed, _ = json.JSONDecoder().raw_decode(text, start)
    except json.JSONDecodeError as exc:
        raise ValueError(f"rewrite reply is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValueError("rewrite reply is not a JSON object")

    query = parsed.get("query")
    top_k = parsed.get("top_k")
    candidate_limit = parsed.get("candidate_limit")
    return RetrievalPlan(
        query=query.strip() if isinstance(query, str) and query.strip() else fallback_query,
        top_k=top_k if _is_number(top_k) else DEFAULT_TOP_K,
        candidate_limit=candidate_limit if _is_number(candidate_limit) else DEFAULT_CANDIDATE_LIMIT,
    )


def catalog_has_tool(tool_definitions: Sequence[Mapping[str, Any]], name: str) -> bool:
    for definition in tool_definitions:
        function = definition.get("function") or {}
        if function.get("name") == name:
            return True
    return False


# -----------------------------------------------------------------------------
# Semantic Retrieval Pipeline
# -----------------------------------------------------------------------------


class SemanticRetrievalPipeline:
    """One-shot retrieval step run before the round loop.

    Args:
        client: Transport used for the isolated rewrite call.
        executor: Tool executor that runs the forced search.
        config_accessor: Source of the active ``embedding_model``.
        context: Tool context passed with the forced call.
        locale: Locale for the rewrite prompt and evidence block.
        abort_signal: Optional cancellation flag.
    """

    def __init__(
        self,
        client: ModelClient,
        executor: ToolCallExecutor,
        config_accessor: ConfigAccessor | None,
        *,
        context: ToolContext,
        locale: str = prompts.DEFAULT_LOCALE,
        abort_signal: AbortSignal | None = None,
    ) -> None:
        self._client = client
        self._executor = executor
        self._config_accessor = config_accessor
        self._context = context
        self._locale = locale
        self._abort_signal = abort_signal

    def _aborted(self) -> bool:
        return self._abort_signal is not None and self._abort_signal.is_set()

    def embedding_model(self) -> str | None:
        """The configured embedding model, or None when retrieval is disabled."""
        if self._config_accessor is None:
            return None
        try:
            settings = self._config_accessor.load()
        except Exception as exc:
            LOGGER.warning("Unable to read active configuration; semantic pipeline disabled: %s", exc)
            return None
        model = getattr(settings, "embedding_model", None)
        if not isinstance(model, str):
            return None
        return model.strip() or None

    async def run(
        self,
        user_message: str,
        tool_definitions: Sequence[Mapping[str, Any]],
        *,
        transcript: Transcript,
        usage: UsageAccumulator,
        tools_used: list[str],
        emit: Emit | None = None,
    ) -> bool:
        """Run the pipeline once; returns whether the forced search was dispatched."""
        embedding_model = self.embedding_model()
        LOGGER.info("Semantic pipeline check: enabled=%s embedding_model=%s", bool(embedding_model), embedding_model or "")
        if not embedding_model:
            return False
        if not catalog_has_tool(tool_definitions, SEMANTIC_SEARCH_TOOL):
            LOGGER.warning("Semantic pipeline skipped: tool %s not in catalog", SEMANTIC_SEARCH_TOOL)
            return False
        if self._aborted():
            return False

        plan = (await self._rewrite(user_message, usage)).clamped(self._context.max_messages_limit)
        LOGGER.info(
            "Semantic pipeline plan: query=%r top_k=%s candidate_limit=%s",
            plan.query,
            plan.top_k,
            plan.candidate_limit,
        )
        if self._aborted():
            return False

        arguments = plan.to_arguments()
        call = ToolCall(
            id=f"semantic-{uuid.uuid4()}",
            name=SEMANTIC_SEARCH_TOOL,
            arguments=json.dumps(arguments, ensure_ascii=False),
            source="forced",
        )
        if emit is not None:
            await emit(StreamChunk.tool_start(SEMANTIC_SEARCH_TOOL, arguments))

        result = await self._dispatch(call)

        if emit is not None:
            await emit(StreamChunk.tool_finished(SEMANTIC_SEARCH_TOOL, result.payload))

        transcript.append_tool_exchange(
            [call],
            [result.to_message_content(prompts.tool_error_prefix(self._locale))],
        )
        tools_used.append(SEMANTIC_SEARCH_TOOL)

        if result.success and result.result:
            evidence = prompts.format_evidence_block(
                SEMANTIC_SEARCH_TOOL,
                plan.query,
                plan.top_k,
                plan.candidate_limit,
                result.result,
                self._locale,
            )
            transcript.insert_before_last_user(Message.system(evidence))
            LOGGER.info("Semantic pipeline injected evidence (messages=%d)", len(transcript))
        elif not result.success:
            LOGGER.warning("Semantic search failed: %s", result.error)
        return True

    async def _rewrite(self, user_message: str, usage: UsageAccumulator) -> RetrievalPlan:
        system_text, user_text = prompts.rewrite_messages(user_message, self._locale)
        try:
            response = await self._client.chat(
                [Message.system(system_text), Message.user(user_text)],
                temperature=REWRITE_TEMPERATURE,
                max_tokens=REWRITE_MAX_TOKENS,
                abort_signal=self._abort_signal,
            )
        except Exception as exc:
            LOGGER.warning("Semantic pipeline rewrite failed, using the raw message: %s", exc)
            return RetrievalPlan(query=user_message)

        usage.add(response.usage)
        try:
            return parse_retrieval_plan(response.content, user_message)
        except ValueError as exc:
            LOGGER.warning("Semantic pipeline rewrite unparseable, using the raw message: %s", exc)
            return RetrievalPlan(query=user_message)

    async def _dispatch(self, call: ToolCall) -> ToolResult:
        try:
            results = await self._executor.execute_tool_calls([call], self._context)
        except Exception as exc:
            LOGGER.exception("Forced %s dispatch raised", call.name)
            return ToolResult.failure(str(exc) or exc.__class__.__name__)
        if not results:
            return ToolResult.failure(f"No result returned for {call.name}")
        return results[0]


# -----------------------------------------------------------------------------
# Legacy auto-search heuristic
# -----------------------------------------------------------------------------


def should_auto_search(user_message: str) -> bool:
    """Whether a question without an embedding model should still be searched."""
    text = (user_message or "").strip()
    if not text:
        return False
    if _EXPLICIT_TOOL_RE.search(text):
        return False
    if any(trigger in text for trigger in AUTO_SEARCH_TRIGGERS):
        return True
    return len(text) >= AUTO_SEARCH_MIN_LENGTH


async def run_auto_semantic_search(
    user_message: str,
    tool_definitions: Sequence[Mapping[str, Any]],
    executor: ToolCallExecutor,
    context: ToolContext,
    *,
    locale: str = prompts.DEFAULT_LOCALE,
) -> str | None:
    """Search with the raw question and format the hits as evidence text.

    Returns None when the tool is missing, the search fails or finds nothing.
    Never raises.
    """
    if not catalog_has_tool(tool_definitions, SEMANTIC_SEARCH_TOOL):
        return None
    call = ToolCall(
        id=f"auto-{uuid.uuid4()}",
        name=SEMANTIC_SEARCH_TOOL,
        arguments=json.dumps(
            {"query": user_message, "top_k": AUTO_SEARCH_TOP_K, "candidate_limit": AUTO_SEARCH_CANDIDATE_LIMIT},
            ensure_ascii=False,
        ),
        source="forced",
    )
    try:
        results = await executor.execute_tool_calls([call], context)
        first = results[0] if results else None
        if first is None or not first.success:
            return None
        data = first.result if isinstance(first.result, Mapping) else {}
        items = data.get("results") or []
        if not isinstance(items, list) or not items:
            return None
        query = data.get("query") or user_message
        return prompts.format_auto_search_evidence(
            str(query),
            [item for item in items if isinstance(item, Mapping)],
            locale,
        )
    except Exception as exc:
        LOGGER.warning("Auto semantic search failed: %s", exc)
        return None

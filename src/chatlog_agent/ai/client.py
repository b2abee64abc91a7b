"""Async model client built around OpenAI-compatible endpoints."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, Iterable, List, Mapping, Sequence

import httpx
from openai import AsyncOpenAI, APIConnectionError, APIError, APIStatusError, RateLimitError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .orchestration.errors import TransportError
from .orchestration.types import AbortSignal, ChatResponse, Message, StreamDelta, TokenUsage, ToolCall

if TYPE_CHECKING:  # pragma: no cover
    from ..services.settings import Settings

__all__ = ["AIClient", "ClientSettings"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> ClientSettings:
        return cls(
            base_url=settings.base_url,
            api_key=settings.api_key,
            model=settings.model,
            organization=settings.organization,
            request_timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            retry_min_seconds=settings.retry_min_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            default_headers=dict(settings.default_headers) or None,
            metadata=dict(settings.metadata) or None,
            debug_logging=settings.debug_logging,
        )


@dataclass(slots=True)
class _ToolCallBuilder:
    """Accumulates one streamed tool call from its index-addressed fragments."""

    index: int
    id: str = ""
    name: str = ""
    arguments: List[str] = field(default_factory=list)

    def update(self, fragment: Any) -> None:
        if getattr(fragment, "id", None):
            self.id = fragment.id
        function = getattr(fragment, "function", None)
        if function is None:
            return
        if getattr(function, "name", None):
            self.name = function.name
        if getattr(function, "arguments", None):
            self.arguments.append(function.arguments)

    def build(self) -> ToolCall:
        return ToolCall(
            id=self.id or f"call_{self.index}",
            name=self.name,
            arguments="".join(self.arguments) or "{}",
        )


class AIClient:
    """Async client providing blocking and streaming chat with retry semantics.

    Failures that survive the retry policy are raised as ``TransportError``.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def chat(
        self,
        messages: Iterable[Message | Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        abort_signal: AbortSignal | None = None,
        metadata: Mapping[str, str] | None = None,
        **extra_params: Any,
    ) -> ChatResponse:
        """Run one chat completion and return the normalized response.

        A signal that is already set short-circuits the request and yields an
        empty response with ``finish_reason="cancelled"``.
        """
        payload = self._build_chat_payload(
            messages=self._coerce_messages(messages),
            tools=tools,
            temperature=temperature,
            max_tokens=max_tokens,
            metadata=metadata,
            extra_params=extra_params,
        )
        if abort_signal is not None and abort_signal.is_set():
            return ChatResponse(finish_reason="cancelled")

        LOGGER.debug(
            "Starting chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        response = await self._create(payload)
        choices = getattr(response, "choices", None) or []
        usage = TokenUsage.from_mapping(getattr(response, "usage", None))
        if not choices:
            return ChatResponse(usage=usage)

        choice = choices[0]
        message = getattr(choice, "message", None)
        raw_calls = getattr(message, "tool_calls", None) or ()
        return ChatResponse(
            content=getattr(message, "content", None) or "",
            tool_calls=tuple(self._normalize_tool_call(call) for call in raw_calls),
            finish_reason=getattr(choice, "finish_reason", None),
            usage=usage,
        )

    async def stream_chat(
        self,
        messages: Iterable[Message | Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        abort_signal: AbortSignal | None = None,
        metadata: Mapping[str, str] | None = None,
        **extra_params: Any,
    ) -> AsyncIterator[StreamDelta]:
        """Stream chat completions for the provided messages.

        Content and tool-call fragments are yielded as they arrive. The finished
        delta is held until the provider closes the stream so the trailing
        usage chunk can be attached to it.
        """
        payload = self._build_chat_payload(
            messages=self._coerce_messages(messages),
            tools=tools,
            temperature=temperature,
            max_tokens=max_tokens,
            metadata=metadata,
            extra_params={**extra_params, "stream": True, "stream_options": {"include_usage": True}},
        )
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        if abort_signal is not None and abort_signal.is_set():
            yield StreamDelta(is_finished=True, finish_reason="cancelled")
            return

        stream = await self._create(payload)
        builders: Dict[int, _ToolCallBuilder] = {}
        finish_reason: str | None = None
        usage: TokenUsage | None = None
        try:
            async for chunk in stream:
                if abort_signal is not None and abort_signal.is_set():
                    LOGGER.debug("Stream cancelled by abort signal")
                    finish_reason = "cancelled"
                    break
                if getattr(chunk, "usage", None) is not None:
                    usage = TokenUsage.from_mapping(chunk.usage)
                for choice in getattr(chunk, "choices", None) or ():
                    delta = getattr(choice, "delta", None)
                    text = getattr(delta, "content", None)
                    fragments = getattr(delta, "tool_calls", None) or ()
                    for fragment in fragments:
                        index = getattr(fragment, "index", None)
                        if index is None:
                            index = len(builders)
                        builders.setdefault(index, _ToolCallBuilder(index=index)).update(fragment)
                    if getattr(choice, "finish_reason", None):
                        finish_reason = choice.finish_reason
                    if text or fragments:
                        yield StreamDelta(
                            content=text or None,
                            tool_calls=self._snapshot(builders) if fragments else None,
                        )
        except (APIError, httpx.HTTPError) as exc:
            raise TransportError(f"Streamed chat completion failed: {exc}", cause=exc) from exc
        finally:
            await self._close_stream(stream)

        yield StreamDelta(
            tool_calls=self._snapshot(builders) if builders else None,
            usage=usage,
            is_finished=True,
            finish_reason=finish_reason,
        )

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(
                (
                    APIError,
                    APIStatusError,
                    APIConnectionError,
                    RateLimitError,
                    httpx.TimeoutException,
                )
            ),
        )

    async def _create(self, payload: Mapping[str, Any]) -> Any:
        try:
            async for attempt in self._retrying():
                with attempt:
                    return await self._client.chat.completions.create(**payload)
        except (APIError, httpx.HTTPError) as exc:
            raise TransportError(f"Chat completion failed: {exc}", cause=exc) from exc
        raise TransportError("Chat completion returned no response")

    def _coerce_messages(self, messages: Iterable[Message | Mapping[str, Any]]) -> List[Dict[str, Any]]:
        normalized: List[Dict[str, Any]] = []
        for message in messages:
            if isinstance(message, Message):
                normalized.append(message.to_chat_param())
            else:
                try:
                    normalized.append(dict(message))
                except TypeError as exc:
                    raise TypeError("Messages must be Message instances or mapping-like objects") from exc
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _build_chat_payload(
        self,
        *,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None,
        temperature: float | None,
        max_tokens: int | None,
        metadata: Mapping[str, str] | None,
        extra_params: Mapping[str, Any],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": list(messages),
        }

        merged_metadata = self._merge_metadata(metadata)
        if merged_metadata:
            payload["metadata"] = merged_metadata
        if tools:
            payload["tools"] = [dict(tool) for tool in tools]
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if extra_params:
            payload.update(extra_params)

        return payload

    def _merge_metadata(self, runtime_metadata: Mapping[str, str] | None) -> Dict[str, str] | None:
        combined: Dict[str, str] = {}
        if self._settings.metadata:
            combined.update(self._settings.metadata)
        if runtime_metadata:
            combined.update(runtime_metadata)
        return combined or None

    @staticmethod
    def _normalize_tool_call(raw: Any) -> ToolCall:
        function = getattr(raw, "function", None)
        return ToolCall(
            id=getattr(raw, "id", None) or "",
            name=getattr(function, "name", None) or "",
            arguments=getattr(function, "arguments", None) or "{}",
        )

    @staticmethod
    def _snapshot(builders: Mapping[int, _ToolCallBuilder]) -> tuple[ToolCall, ...]:
        return tuple(builders[index].build() for index in sorted(builders))

    @staticmethod
    async def _close_stream(stream: Any) -> None:
        close = getattr(stream, "close", None)
        if close is None:
            return
        try:
            result = close()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            LOGGER.debug("Closing chat stream failed: %s", exc)

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:
            LOGGER.debug("AI client close failed to start: %s", exc)
            return
        if inspect.isawaitable(result):
            await result

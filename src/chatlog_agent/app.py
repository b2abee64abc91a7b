"""Command-line entry point for the chat-log agent."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO

from .ai.client import AIClient, ClientSettings
from .ai.orchestration.agent import Agent
from .ai.orchestration.tools import ConfigAccessor, StaticConfigAccessor, ToolRegistry
from .ai.orchestration.types import AgentConfig, ChatOptions, ExecutionResult, StreamChunk, ToolContext
from .services.settings import Settings, SettingsStore, coerce_setting
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_LOGGER = logging.getLogger(__name__)


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure logging for the CLI; the console only shows warnings unless debugging."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, console=debug, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def build_agent(
    settings: Settings,
    *,
    client: AIClient,
    registry: ToolRegistry,
    config_accessor: ConfigAccessor | None = None,
    chat_type: str = "group",
    locale: str | None = None,
    max_rounds: int | None = None,
) -> Agent:
    """Wire an Agent from settings, a transport and a tool registry.

    The retrieval pipeline reads ``settings`` as loaded, CLI overrides included,
    unless another ``config_accessor`` is given.
    """

    config = AgentConfig(
        max_tool_rounds=max_rounds if max_rounds is not None else settings.max_tool_rounds,
        llm_options=ChatOptions(temperature=settings.temperature, max_tokens=settings.max_tokens),
    )
    return Agent(
        client,
        registry,
        ToolContext(),
        config,
        chat_type=chat_type,  # type: ignore[arg-type]
        locale=locale or settings.locale,
        config_accessor=config_accessor or StaticConfigAccessor(settings),
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the `chatlog-agent` console script."""

    args = _parse_cli_args(argv)
    debug = args.debug or _env_flag("CHATLOG_AGENT_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings or os.environ.get("CHATLOG_AGENT_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2

    settings = load_settings(resolved_path, store=store, overrides=cli_overrides or None)
    if settings.debug_logging and not debug:
        configure_logging(True, force=True)
        debug = True

    client_settings = ClientSettings.from_settings(settings)
    client_settings.debug_logging = client_settings.debug_logging or debug
    client = AIClient(client_settings)
    agent = build_agent(
        settings,
        client=client,
        registry=ToolRegistry(),
        chat_type=args.chat_type,
        locale=args.locale,
        max_rounds=args.max_rounds,
    )

    try:
        result = asyncio.run(_run(agent, client, args.question, stream=args.stream))
    except KeyboardInterrupt:
        _LOGGER.info("Interrupted by user.")
        return 130

    _print_usage(result)
    return 0 if result.success else 1


async def _run(agent: Agent, client: AIClient, question: str, *, stream: bool) -> ExecutionResult:
    try:
        if not stream:
            result = await agent.execute(question)
            if result.content:
                print(result.content)
            return result
        return await agent.execute_stream(question, _print_chunk)
    finally:
        await client.aclose()


def _print_chunk(chunk: StreamChunk, stream: TextIO | None = None) -> None:
    destination = stream or sys.stdout
    if chunk.type == "content" and chunk.content:
        destination.write(chunk.content)
        destination.flush()
    elif chunk.type == "tool_start":
        params = json.dumps(chunk.tool_params or {}, ensure_ascii=False)
        print(f"[tool] {chunk.tool_name} {params}", file=sys.stderr)
    elif chunk.type == "done":
        destination.write("\n")
    elif chunk.type == "error":
        print(f"[error] {chunk.error}", file=sys.stderr)


def _print_usage(result: ExecutionResult) -> None:
    usage = result.total_usage
    tools = ", ".join(result.tools_used) or "-"
    print(
        f"rounds={result.tool_rounds} tools={tools} "
        f"tokens={usage.total_tokens} (prompt={usage.prompt_tokens}, completion={usage.completion_tokens})",
        file=sys.stderr,
    )
    if result.error:
        print(f"error: {result.error}", file=sys.stderr)


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="chatlog-agent",
        description="Ask a question about your chat history.",
    )
    parser.add_argument("question", help="The question to answer.")
    parser.add_argument("--stream", action="store_true", help="Stream the answer as it is generated.")
    parser.add_argument("--locale", choices=("zh-CN", "en-US"), default=None, help="Prompt language.")
    parser.add_argument(
        "--chat-type",
        choices=("group", "private"),
        default="group",
        help="Kind of conversation being analysed.",
    )
    parser.add_argument("--max-rounds", type=int, default=None, metavar="N", help="Tool round budget.")
    parser.add_argument(
        "--settings",
        metavar="PATH",
        help="Override the default ~/.chatlog_agent/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings (repeatable).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging on the console.")
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for entry in items:
        key, separator, raw_value = entry.partition("=")
        if not separator:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        overrides[key] = coerce_setting(key, raw_value)
    return overrides


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())

"""Shared pytest fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from chatlog_agent.ai.orchestration.tools import StaticConfigAccessor
from chatlog_agent.services.settings import Settings

from tests.helpers import AbortFlag, ChunkRecorder, FakeTools


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep developer environment variables and log files out of the tests."""
    for name in (
        "CHATLOG_AGENT_API_KEY",
        "CHATLOG_AGENT_BASE_URL",
        "CHATLOG_AGENT_MODEL",
        "CHATLOG_AGENT_EMBEDDING_MODEL",
        "CHATLOG_AGENT_ORGANIZATION",
        "CHATLOG_AGENT_LOCALE",
        "CHATLOG_AGENT_DEBUG_LOGGING",
        "CHATLOG_AGENT_REQUEST_TIMEOUT",
        "CHATLOG_AGENT_TEMPERATURE",
        "CHATLOG_AGENT_MAX_TOKENS",
        "CHATLOG_AGENT_MAX_TOOL_ROUNDS",
        "CHATLOG_AGENT_MAX_RETRIES",
        "CHATLOG_AGENT_DEBUG",
        "CHATLOG_AGENT_SETTINGS_PATH",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CHATLOG_AGENT_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def fake_tools() -> FakeTools:
    return FakeTools()


@pytest.fixture
def semantic_tools() -> FakeTools:
    return FakeTools(names=("get_recent_messages", "search_messages", "semantic_search_messages"))


@pytest.fixture
def embedding_config() -> StaticConfigAccessor:
    return StaticConfigAccessor(Settings(embedding_model="text-embedding-3-small"))


@pytest.fixture
def no_embedding_config() -> StaticConfigAccessor:
    return StaticConfigAccessor(Settings(embedding_model=""))


@pytest.fixture
def abort_flag() -> AbortFlag:
    return AbortFlag()


@pytest.fixture
def recorder() -> ChunkRecorder:
    return ChunkRecorder()

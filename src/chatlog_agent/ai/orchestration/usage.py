"""Running token usage for one agent execution."""

from __future__ import annotations

from typing import Any

from .types import TokenUsage

__all__ = ["UsageAccumulator"]


class UsageAccumulator:
    """Sums the usage of every model call issued during an execution."""

    def __init__(self) -> None:
        self._total = TokenUsage()
        self._calls = 0

    @property
    def total(self) -> TokenUsage:
        return self._total

    @property
    def call_count(self) -> int:
        """Number of usage records folded into the total."""
        return self._calls

    def add(self, usage: TokenUsage | Any | None) -> None:
        """Add ``usage`` to the total; a missing record is a no-op."""
        record = TokenUsage.from_mapping(usage)
        if record is None:
            return
        self._total = self._total + record
        self._calls += 1

    def reset(self) -> None:
        self._total = TokenUsage()
        self._calls = 0

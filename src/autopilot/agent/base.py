"""Reasoning agent protocol."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class InvokeOptions:
    """Per-call options for a reasoning agent invocation."""

    json: bool = False
    cwd: Path | None = None
    system_prompt: str | None = None
    tools: list[str] = field(default_factory=list)
    model: str | None = None


class ReasoningAgent(Protocol):
    """Opaque prompt-in, text-out capability."""

    async def invoke(self, message: str, options: InvokeOptions | None = None) -> str:
        """Return the agent's textual answer to ``message``."""

"""Domain models for spans, actions, the pending queue and traces."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from autopilot.storage.common import from_iso


class SpanStatus(str, Enum):
    """Span lifecycle states."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"


class StepStatus(str, Enum):
    """Status of one step inside a trace projection."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"


class ProcessorStatus(str, Enum):
    """Per-action-type processor state reported to observers."""

    IDLE = "idle"
    PROCESSING = "processing"
    ERROR = "error"


@dataclass(slots=True)
class Span:
    """Immutable record of a step execution, merged with its outcome when finalized."""

    id: str
    step: str
    parent: str | None
    timestamp: datetime
    summary: str
    meta: dict[str, Any] = field(default_factory=dict)
    status: SpanStatus = SpanStatus.RUNNING
    completed_at: datetime | None = None

    @property
    def finalized(self) -> bool:
        return self.status != SpanStatus.RUNNING


@dataclass(slots=True)
class Action:
    """Immutable decision made during a span."""

    id: str
    action: str
    span_id: str
    timestamp: datetime
    meta: dict[str, Any] = field(default_factory=dict)
    reasoning: str | None = None


@dataclass(slots=True)
class PendingAction:
    """Queue entry pointing to an Action that still needs a step to process it."""

    trace_id: str
    action_id: str
    span_id: str
    action: str
    summary: str
    created_at: datetime
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskMapping:
    """Link between a workflow action and the project task it launched."""

    task_id: int
    branch_name: str
    trace_id: str | None = None
    workflow_span_id: str | None = None


@dataclass(slots=True)
class AutopilotLogEntry:
    """One line of the flat audit log."""

    ts: datetime
    trace_id: str
    span_id: str
    action_id: str
    step: str
    action: str
    summary: str

    def to_dict(self) -> dict[str, str]:
        return {
            "ts": self.ts.isoformat(),
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "action_id": self.action_id,
            "step": self.step,
            "action": self.action,
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AutopilotLogEntry:
        return cls(
            ts=from_iso(str(payload["ts"])),
            trace_id=str(payload.get("trace_id", "")),
            span_id=str(payload.get("span_id", "")),
            action_id=str(payload.get("action_id", "")),
            step=str(payload.get("step", "")),
            action=str(payload.get("action", "")),
            summary=str(payload.get("summary", "")),
        )


@dataclass(slots=True)
class ActionStep:
    """One step of a trace as shown to observers."""

    action_id: str
    action: str
    status: StepStatus
    timestamp: datetime
    reasoning: str | None = None
    span_id: str | None = None
    terminal: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_id": self.action_id,
            "action": self.action,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "reasoning": self.reasoning,
            "span_id": self.span_id,
            "terminal": self.terminal,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ActionStep:
        return cls(
            action_id=str(payload["action_id"]),
            action=str(payload["action"]),
            status=StepStatus(payload["status"]),
            timestamp=from_iso(str(payload["timestamp"])),
            reasoning=payload.get("reasoning"),
            span_id=payload.get("span_id"),
            terminal=bool(payload.get("terminal", False)),
        )


@dataclass(slots=True)
class ActionTrace:
    """Observer-facing projection of one causal chain of steps."""

    trace_id: str
    summary: str
    created_at: datetime
    steps: list[ActionStep] = field(default_factory=list)
    retry_count: int = 0

    def find_step(self, action_id: str) -> ActionStep | None:
        for step in self.steps:
            if step.action_id == action_id:
                return step
        return None

    def has_running_step(self, action: str) -> bool:
        return any(
            step.action == action and step.status == StepStatus.RUNNING for step in self.steps
        )

    def copy(self) -> ActionTrace:
        return ActionTrace(
            trace_id=self.trace_id,
            summary=self.summary,
            created_at=self.created_at,
            steps=[ActionStep.from_dict(step.to_dict()) for step in self.steps],
            retry_count=self.retry_count,
        )

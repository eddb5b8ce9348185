"""Step protocol: configuration, results, contexts and observer callbacks."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from autopilot.models import ActionStep, ActionTrace, PendingAction, ProcessorStatus, StepStatus

if TYPE_CHECKING:
    from autopilot.agent.base import ReasoningAgent
    from autopilot.config import Settings
    from autopilot.git import GitClient
    from autopilot.project import Project
    from autopilot.store import AutopilotStore

DedupKey = Literal["trace_id"]


@dataclass(slots=True, frozen=True)
class StepConfig:
    """Routing key and concurrency policy of a step."""

    action_type: str
    max_parallel: int = 1
    dedup_by: DedupKey | None = None


@dataclass(slots=True)
class EnqueuedAction:
    action_id: str
    action_type: str
    summary: str


@dataclass(slots=True)
class StepUpdate:
    """Direct overwrite of another step's displayed status."""

    action_id: str
    status: StepStatus
    reasoning: str | None = None


@dataclass(slots=True)
class StepTraceMutations:
    step_updates: list[StepUpdate] = field(default_factory=list)
    retry_count: int | None = None


@dataclass(slots=True)
class StepResult:
    """Outcome of one ``Step.process`` call.

    ``status=None`` means completed. ``StepStatus.PENDING`` means "not ready
    yet": the queue entry stays and the trace step is not failed.
    """

    span_id: str | None
    terminal: bool = False
    enqueued_actions: list[EnqueuedAction] = field(default_factory=list)
    reasoning: str | None = None
    status: StepStatus | None = None
    trace_mutations: StepTraceMutations | None = None

    @classmethod
    def pending(cls, reasoning: str | None = None) -> StepResult:
        return cls(span_id=None, reasoning=reasoning, status=StepStatus.PENDING)

    @property
    def is_pending(self) -> bool:
        return self.status == StepStatus.PENDING


@dataclass(slots=True)
class TraceUpdate:
    """Monitor-driven change to one trace."""

    trace_id: str
    step_updates: list[StepUpdate] = field(default_factory=list)
    new_steps: list[ActionStep] = field(default_factory=list)
    retry_count: int | None = None


@dataclass(slots=True)
class TraceMutations:
    updates: list[TraceUpdate] = field(default_factory=list)


@dataclass(slots=True)
class StepDependencies:
    """Capabilities handed to every step invocation."""

    agent: ReasoningAgent
    git: GitClient
    project: Project
    settings: Settings
    project_path: Path


@dataclass(slots=True)
class StepContext:
    store: AutopilotStore
    trace: ActionTrace
    deps: StepDependencies

    @property
    def agent(self) -> ReasoningAgent:
        return self.deps.agent

    @property
    def git(self) -> GitClient:
        return self.deps.git

    @property
    def project(self) -> Project:
        return self.deps.project

    @property
    def settings(self) -> Settings:
        return self.deps.settings

    @property
    def project_path(self) -> Path:
        return self.deps.project_path


@dataclass(slots=True)
class MonitorContext:
    store: AutopilotStore
    traces: list[ActionTrace]
    deps: StepDependencies

    @property
    def agent(self) -> ReasoningAgent:
        return self.deps.agent

    @property
    def git(self) -> GitClient:
        return self.deps.git

    @property
    def project(self) -> Project:
        return self.deps.project

    @property
    def settings(self) -> Settings:
        return self.deps.settings

    @property
    def project_path(self) -> Path:
        return self.deps.project_path


class Step(ABC):
    """Unit of work bound to one action type.

    ``process`` must tolerate being called again for the same queue entry
    after a crash that happened before the entry was removed.
    """

    config: StepConfig

    @abstractmethod
    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        """Handle one queue entry."""

    def monitor(self, ctx: MonitorContext) -> TraceMutations | None:  # noqa: ARG002
        """Reconcile external state on every tick; may enqueue into the store."""

        return None


class OrchestratorCallbacks:
    """Observer hooks; the default implementation ignores everything."""

    def on_traces_updated(self, traces: list[ActionTrace]) -> None:
        """Called after trace state changed and was persisted."""

    def on_status_changed(
        self,
        action_type: str,
        status: ProcessorStatus,
        processed_count: int,
    ) -> None:
        """Called when a step type starts or finishes a batch."""

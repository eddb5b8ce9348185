"""Autopilot steps and the orchestrator that routes queued actions to them."""

from autopilot.steps.committer import CommitterStep
from autopilot.steps.coordinator import CoordinatorStep
from autopilot.steps.noop import NoopStep
from autopilot.steps.orchestrator import StepOrchestrator
from autopilot.steps.planner import PlannerStep
from autopilot.steps.pusher import PusherStep
from autopilot.steps.resolver import ResolverStep
from autopilot.steps.types import Step
from autopilot.steps.workflow import WorkflowStep


def default_steps() -> list[Step]:
    """Every built-in step, one per action type."""

    return [
        CoordinatorStep(),
        PlannerStep(),
        WorkflowStep(),
        CommitterStep(),
        ResolverStep(),
        PusherStep(),
        NoopStep(),
    ]


__all__ = [
    "CommitterStep",
    "CoordinatorStep",
    "NoopStep",
    "PlannerStep",
    "PusherStep",
    "ResolverStep",
    "StepOrchestrator",
    "WorkflowStep",
    "default_steps",
]

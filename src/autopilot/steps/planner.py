"""Planner step: fan a directive out into workflow tasks with resolved dependencies."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from autopilot.agent.base import InvokeOptions
from autopilot.errors import PlanValidationError
from autopilot.json_response import parse_json_response
from autopilot.models import Action, PendingAction, Span
from autopilot.provenance import ActionWriter, SpanWriter, enqueue_action, new_id
from autopilot.steps.helpers import (
    SOURCE_ACTION_KEY,
    find_finished_span,
    json_block,
    resume_from_span,
    truncate,
)
from autopilot.steps.prompts import PLAN_PROMPT
from autopilot.steps.types import EnqueuedAction, Step, StepConfig, StepContext, StepResult

logger = logging.getLogger(__name__)

VALID_WORKFLOWS = frozenset({"swe", "code-review", "bug-finder", "security-analyst"})
READ_ONLY_TOOLS = ["Read", "Glob", "Grep"]
WORKFLOW_ACTION = "workflow"
_REASONING_DESCRIPTION_CHARS = 200


@dataclass(slots=True)
class PlanTask:
    title: str
    description: str
    workflow: str
    acceptance_criteria: list[str] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def depends_on(self) -> str | None:
        value = self.context.get("depends_on")
        return str(value) if value else None


@dataclass(slots=True)
class PlanResult:
    analysis: str
    tasks: list[PlanTask]
    execution_order: str
    reasoning: str


def parse_plan(payload: dict[str, Any]) -> PlanResult:
    """Validate agent output; empty plans and unknown workflows are rejected."""

    raw_tasks = payload.get("tasks") or []
    if not isinstance(raw_tasks, list) or not raw_tasks:
        raise PlanValidationError("Plan produced no tasks")

    tasks: list[PlanTask] = []
    for raw in raw_tasks:
        if not isinstance(raw, dict):
            raise PlanValidationError(f"Plan task is not an object: {raw!r}")
        workflow = str(raw.get("workflow", ""))
        if workflow not in VALID_WORKFLOWS:
            raise PlanValidationError(f"Invalid workflow type: {workflow}")
        context = raw.get("context") or {}
        criteria = raw.get("acceptance_criteria") or []
        if isinstance(criteria, str):
            criteria = [criteria]
        tasks.append(
            PlanTask(
                title=str(raw.get("title", "")).strip(),
                description=str(raw.get("description", "")),
                workflow=workflow,
                acceptance_criteria=[str(item) for item in criteria],
                context=dict(context) if isinstance(context, dict) else {},
            ),
        )
    return PlanResult(
        analysis=str(payload.get("analysis", "")),
        tasks=tasks,
        execution_order=str(payload.get("execution_order", "")),
        reasoning=str(payload.get("reasoning", "")),
    )


def resolve_dependencies(tasks: list[PlanTask]) -> list[tuple[PlanTask, str, str | None]]:
    """Assign action ids, then map each ``depends_on`` title to its action id.

    Ids are synthesized for every task before any dependency is looked up, so
    a task may depend on one listed after it. Unknown titles resolve to None.
    """

    title_to_action_id: dict[str, str] = {}
    assigned: list[tuple[PlanTask, str]] = []
    for task in tasks:
        action_id = new_id("action")
        title_to_action_id.setdefault(task.title, action_id)
        assigned.append((task, action_id))

    resolved: list[tuple[PlanTask, str, str | None]] = []
    for task, action_id in assigned:
        depends_on = task.depends_on
        dependency_id = title_to_action_id.get(depends_on) if depends_on else None
        if dependency_id == action_id:
            dependency_id = None
        resolved.append((task, action_id, dependency_id))
    return resolved


def build_plan_message(directive: dict[str, Any], spans: list[Span]) -> str:
    parts = ["## Plan Directive\n", json_block(directive), "\n## Spans\n"]
    for span in spans:
        parts.append(f"### Span: {span.step} ({span.id})\n")
        parts.append(f"- **timestamp**: {span.timestamp.isoformat()}")
        parts.append(f"- **summary**: {span.summary}")
        parts.append(f"- **parent**: {span.parent or 'null'}\n")
        parts.append(json_block(span.meta))
        parts.append("")
    return "\n".join(parts)


class PlannerStep(Step):
    config = StepConfig(action_type="plan", max_parallel=2)

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        store = ctx.store
        finished = find_finished_span(store, pending, "plan")
        if finished is not None:
            logger.info("Plan for %s already recorded in span %s", pending.action_id, finished.id)
            return resume_from_span(store, pending, finished, step="plan")

        span = SpanWriter(
            store,
            step="plan",
            parent=pending.span_id,
            summary=f"plan: {pending.summary}",
            meta={SOURCE_ACTION_KEY: pending.action_id},
        )
        spans = store.get_span_trace(pending.span_id)
        try:
            response = await ctx.agent.invoke(
                build_plan_message(pending.meta, spans),
                InvokeOptions(
                    json=True,
                    cwd=ctx.project_path,
                    system_prompt=PLAN_PROMPT,
                    tools=list(READ_ONLY_TOOLS),
                ),
            )
            plan = parse_plan(parse_json_response(response))
        except Exception as error:
            span.fail(f"plan: {error}", {"error": str(error)})
            raise

        writer = ActionWriter(store, span.id)
        written: list[tuple[PlanTask, Action]] = []
        for task, action_id, dependency_id in resolve_dependencies(plan.tasks):
            description = truncate(task.description, _REASONING_DESCRIPTION_CHARS)
            action = writer.write(
                WORKFLOW_ACTION,
                action_id=action_id,
                reasoning=f"{task.title}: {description}",
                meta={
                    "workflow": task.workflow,
                    "title": task.title,
                    "description": task.description,
                    "acceptance_criteria": task.acceptance_criteria,
                    "context": task.context,
                    "depends_on_action_id": dependency_id,
                },
            )
            written.append((task, action))

        span.complete(
            f"plan: {pending.summary}",
            {
                "analysis": plan.analysis,
                "task_count": len(plan.tasks),
                "execution_order": plan.execution_order,
            },
        )

        enqueued: list[EnqueuedAction] = []
        for task, action in written:
            summary = f"{task.workflow}: {task.title}"
            enqueue_action(
                store,
                trace_id=pending.trace_id,
                action=action,
                summary=summary,
                step="plan",
            )
            enqueued.append(
                EnqueuedAction(action_id=action.id, action_type=WORKFLOW_ACTION, summary=summary),
            )

        return StepResult(
            span_id=span.id,
            terminal=False,
            enqueued_actions=enqueued,
            reasoning=f"{len(plan.tasks)} task(s), {plan.execution_order}",
        )

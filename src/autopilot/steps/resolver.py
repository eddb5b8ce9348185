"""Resolver step: decide whether a trace waits, pushes, retries or fails."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from autopilot.agent.base import InvokeOptions
from autopilot.errors import TaskNotFoundError
from autopilot.json_response import parse_json_response
from autopilot.models import (
    ActionStep,
    ActionTrace,
    AutopilotLogEntry,
    PendingAction,
    Span,
    StepStatus,
)
from autopilot.provenance import ActionWriter, SpanWriter, enqueue_action
from autopilot.steps.helpers import json_block, spans_payload
from autopilot.steps.prompts import RESOLVE_PROMPT
from autopilot.steps.types import (
    EnqueuedAction,
    Step,
    StepConfig,
    StepContext,
    StepResult,
    StepTraceMutations,
    StepUpdate,
)
from autopilot.storage.common import utc_now

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
PUSH_ACTION = "push"
WORKFLOW_ACTION = "workflow"
_CONTROL_ACTIONS = frozenset({"commit", "resolve", "push"})
_DEFAULT_ITERATE_INSTRUCTIONS = "Retry the task, addressing the errors from the previous attempt."


@dataclass(slots=True)
class Decision:
    decision: str
    reason: str
    iterate_instructions: str | None = None


def _failed_steps(trace: ActionTrace) -> list[ActionStep]:
    return [
        step
        for step in trace.steps
        if step.status == StepStatus.FAILED and step.action not in ("resolve", "push")
    ]


def quick_decision(trace: ActionTrace) -> Decision | None:
    """Deterministic decisions that need no reasoning agent.

    Steps in ``error`` state were superseded by a retry and are ignored.
    """

    steps = trace.steps
    active = (StepStatus.PENDING, StepStatus.RUNNING)
    if any(step.action not in _CONTROL_ACTIONS and step.status in active for step in steps):
        return Decision("wait", "workflow steps still running or pending")
    if any(step.action == "commit" and step.status in active for step in steps):
        return Decision("wait", "commit steps still active")

    commits = [
        step for step in steps if step.action == "commit" and step.status != StepStatus.ERROR
    ]
    failed = _failed_steps(trace)
    if commits and all(step.status == StepStatus.COMPLETED for step in commits) and not failed:
        return Decision("push", "all commits completed")
    if failed and trace.retry_count >= MAX_RETRIES:
        return Decision("fail", f"max retries ({MAX_RETRIES}) exceeded")
    return None


def build_resolve_message(
    trace: ActionTrace,
    failed_details: list[dict[str, Any]],
    spans: list[Span],
) -> str:
    payload = {
        "trace_summary": trace.summary,
        "retry_count": trace.retry_count,
        "max_retries": MAX_RETRIES,
        "steps": [
            {"action": step.action, "status": step.status.value, "reasoning": step.reasoning}
            for step in trace.steps
        ],
        "failed_steps": failed_details,
        "spans": spans_payload(spans),
    }
    return json_block(payload)


class ResolverStep(Step):
    config = StepConfig(action_type="resolve", max_parallel=3, dedup_by="trace_id")

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        trace = ctx.trace
        commit_error = pending.meta.get("commit_error")
        if commit_error:
            message = commit_error.get("message", "unknown error")
            span = SpanWriter(
                ctx.store,
                step="resolve",
                parent=pending.span_id,
                meta={
                    "decision": "noop",
                    "reason": f"git commit failed: {message}",
                    "commit_error": commit_error,
                },
            )
            span.fail(f"resolve: commit error on trace: {trace.summary}")
            self._log(ctx, pending, span.id, "noop", f"commit failed: {message} (noop)")
            return StepResult(
                span_id=span.id,
                terminal=True,
                reasoning=f"fail: git commit failed: {message}",
                status=StepStatus.FAILED,
            )

        decision = quick_decision(trace)
        if decision is None:
            decision = await self._ask_agent(pending, ctx)

        if decision.decision == "wait":
            self._log(ctx, pending, pending.span_id, "wait", f"wait: {decision.reason}")
            return StepResult(
                span_id=pending.span_id,
                terminal=True,
                reasoning=f"wait: {decision.reason}",
            )
        if decision.decision == "push":
            return self._push(pending, ctx, decision)
        if decision.decision == "iterate":
            return self._iterate(pending, ctx, decision)
        return self._fail(pending, ctx, decision)

    async def _ask_agent(self, pending: PendingAction, ctx: StepContext) -> Decision:
        trace = ctx.trace
        details: list[dict[str, Any]] = []
        for step in _failed_steps(trace):
            detail: dict[str, Any] = {
                "action": step.action,
                "reasoning": step.reasoning or "unknown error",
            }
            mapping = ctx.store.get_task_mapping(step.action_id)
            if mapping is not None:
                try:
                    task = ctx.project.get_task(mapping.task_id)
                except TaskNotFoundError:
                    task = None
                if task is not None:
                    detail.update(
                        task_title=task.title,
                        task_description=task.description,
                        task_status=task.status.value,
                        error=task.error,
                    )
            if "committed" in pending.meta:
                detail["committed"] = pending.meta["committed"]
            if pending.meta.get("task_status"):
                detail["task_status"] = pending.meta["task_status"]
            details.append(detail)

        response = await ctx.agent.invoke(
            build_resolve_message(trace, details, ctx.store.get_span_trace(pending.span_id)),
            InvokeOptions(json=True, cwd=ctx.project_path, system_prompt=RESOLVE_PROMPT),
        )
        result = parse_json_response(response)
        decision = result.get("decision")
        instructions = result.get("iterate_instructions") or _DEFAULT_ITERATE_INSTRUCTIONS
        if decision == "fail":
            return Decision("fail", str(result.get("fail_reason") or result.get("reasoning", "")))
        if decision != "iterate":
            return Decision(
                "iterate",
                f"unexpected decision {decision!r}, defaulting to iterate",
                instructions,
            )
        return Decision("iterate", str(result.get("reasoning", "")), instructions)

    def _push(self, pending: PendingAction, ctx: StepContext, decision: Decision) -> StepResult:
        trace = ctx.trace
        span = SpanWriter(
            ctx.store,
            step="resolve",
            parent=pending.span_id,
            meta={"decision": "push", "reason": decision.reason},
        )
        action = ActionWriter(ctx.store, span.id).write(
            PUSH_ACTION,
            reasoning=f"Push trace: {trace.summary}",
            meta={**pending.meta, "decision": "push"},
        )
        span.complete(f"resolve: trace ready to push: {trace.summary}")
        enqueue_action(
            ctx.store,
            trace_id=pending.trace_id,
            action=action,
            summary=f"push: {trace.summary}",
            step="resolve",
        )
        return StepResult(
            span_id=span.id,
            enqueued_actions=[
                EnqueuedAction(
                    action_id=action.id,
                    action_type=PUSH_ACTION,
                    summary=decision.reason,
                ),
            ],
            reasoning=f"push: {decision.reason}",
        )

    def _iterate(self, pending: PendingAction, ctx: StepContext, decision: Decision) -> StepResult:
        """Queue a fresh workflow for the failed task and retire the failed steps."""

        trace = ctx.trace
        failed = _failed_steps(trace)
        failed_workflow = next(
            (step for step in failed if step.action not in _CONTROL_ACTIONS),
            None,
        )
        source_action_id = failed_workflow.action_id if failed_workflow else None
        if source_action_id is None:
            failed_commit = next((step for step in failed if step.action == "commit"), None)
            if failed_commit is not None:
                source_action_id = pending.meta.get("source_action_id")
        mapping = ctx.store.get_task_mapping(source_action_id) if source_action_id else None
        if mapping is None:
            reason = "cannot iterate, no task mapping"
            self._log(ctx, pending, pending.span_id, "fail", reason)
            return StepResult(
                span_id=pending.span_id,
                terminal=True,
                reasoning="fail: no task mapping for failed step",
                status=StepStatus.FAILED,
            )
        try:
            task = ctx.project.get_task(mapping.task_id)
        except TaskNotFoundError:
            self._log(ctx, pending, pending.span_id, "fail", f"task #{mapping.task_id} not found")
            return StepResult(
                span_id=pending.span_id,
                terminal=True,
                reasoning=f"fail: task #{mapping.task_id} not found",
                status=StepStatus.FAILED,
            )

        retry_count = trace.retry_count + 1
        error_context = (failed_workflow.reasoning if failed_workflow else None) or "unknown error"
        description = decision.iterate_instructions or (
            f"Previous attempt failed: {error_context}\n\n"
            "Please retry the task, addressing the failure."
        )
        source_action = ctx.store.read_action(source_action_id or "")
        source_meta = source_action.meta if source_action is not None else {}
        workflow = pending.meta.get("workflow") or source_meta.get("workflow") or "swe"

        span = SpanWriter(
            ctx.store,
            step="resolve",
            parent=pending.span_id,
            meta={
                "decision": "iterate",
                "reason": decision.reason,
                "task_id": mapping.task_id,
                "retry_count": retry_count,
            },
        )
        action = ActionWriter(ctx.store, span.id).write(
            WORKFLOW_ACTION,
            reasoning=f"{workflow}: {task.title} (retry #{retry_count})",
            meta={
                "workflow": workflow,
                "title": task.title,
                "description": description,
                "acceptance_criteria": source_meta.get("acceptance_criteria", []),
                "context": {**source_meta.get("context", {}), "depends_on": None},
                "depends_on_action_id": None,
                "retry_of": source_action_id,
            },
        )
        span.complete(f"resolve: iterating task #{mapping.task_id}: {decision.reason}")
        summary = f"{workflow}: {task.title}"
        enqueue_action(
            ctx.store,
            trace_id=pending.trace_id,
            action=action,
            summary=summary,
            step="resolve",
        )
        superseded = [
            StepUpdate(
                action_id=step.action_id,
                status=StepStatus.ERROR,
                reasoning=f"superseded by retry #{retry_count}",
            )
            for step in failed
        ]
        return StepResult(
            span_id=span.id,
            enqueued_actions=[
                EnqueuedAction(
                    action_id=action.id,
                    action_type=WORKFLOW_ACTION,
                    summary=f"retry #{retry_count}: {task.title}",
                ),
            ],
            reasoning=f"iterate: {decision.reason}",
            trace_mutations=StepTraceMutations(step_updates=superseded, retry_count=retry_count),
        )

    def _fail(self, pending: PendingAction, ctx: StepContext, decision: Decision) -> StepResult:
        trace = ctx.trace
        span = SpanWriter(
            ctx.store,
            step="resolve",
            parent=pending.span_id,
            meta={"decision": "fail", "reason": decision.reason},
        )
        span.fail(f"resolve: trace failed: {trace.summary}")
        updates = [
            StepUpdate(
                action_id=step.action_id,
                status=StepStatus.FAILED,
                reasoning=f"trace failed: {decision.reason}",
            )
            for step in trace.steps
            if step.status == StepStatus.PENDING and step.action_id != pending.action_id
        ]
        self._log(ctx, pending, span.id, "fail", f"failed: {decision.reason}")
        return StepResult(
            span_id=span.id,
            terminal=True,
            reasoning=f"fail: {decision.reason}",
            trace_mutations=StepTraceMutations(step_updates=updates),
        )

    def _log(
        self,
        ctx: StepContext,
        pending: PendingAction,
        span_id: str,
        action: str,
        detail: str,
    ) -> None:
        ctx.store.append_log(
            AutopilotLogEntry(
                ts=utc_now(),
                trace_id=pending.trace_id,
                span_id=span_id,
                action_id=pending.action_id,
                step="resolve",
                action=action,
                summary=f"trace: {ctx.trace.summary}: {detail}",
            ),
        )

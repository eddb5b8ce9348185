"""Pusher step: push every branch the trace produced, then close the trace."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from autopilot.errors import GitCommandError, TaskNotFoundError
from autopilot.models import ActionTrace, PendingAction, StepStatus
from autopilot.provenance import ActionWriter, SpanWriter, enqueue_action
from autopilot.steps.helpers import SOURCE_ACTION_KEY
from autopilot.steps.types import EnqueuedAction, Step, StepConfig, StepContext, StepResult
from autopilot.store import AutopilotStore

logger = logging.getLogger(__name__)

NOOP_ACTION = "noop"


@dataclass(slots=True)
class BranchInfo:
    task_id: int
    branch_name: str


def collect_branches(
    store: AutopilotStore,
    trace: ActionTrace,
    meta: dict[str, Any],
) -> list[BranchInfo]:
    """Branches of the trace's workflow tasks, skipping attempts superseded by a retry."""

    seen: set[str] = set()
    branches: list[BranchInfo] = []
    for step in trace.steps:
        if step.action != "workflow" or step.status == StepStatus.ERROR:
            continue
        mapping = store.get_task_mapping(step.action_id)
        if mapping is None or mapping.branch_name in seen:
            continue
        seen.add(mapping.branch_name)
        branches.append(BranchInfo(task_id=mapping.task_id, branch_name=mapping.branch_name))

    if not branches and meta.get(SOURCE_ACTION_KEY):
        mapping = store.get_task_mapping(meta[SOURCE_ACTION_KEY])
        if mapping is not None:
            branches.append(BranchInfo(task_id=mapping.task_id, branch_name=mapping.branch_name))
    return branches


class PusherStep(Step):
    config = StepConfig(action_type="push", max_parallel=2, dedup_by="trace_id")

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        store = ctx.store
        trace = ctx.trace
        meta = dict(pending.meta)

        branches = collect_branches(store, trace, meta)
        if not branches:
            span = SpanWriter(
                store,
                step="push",
                parent=pending.span_id,
                meta={"error": "no branches found"},
            )
            span.fail("push: no branches found to push")
            return StepResult(
                span_id=span.id,
                terminal=True,
                reasoning="no branches found to push",
                status=StepStatus.FAILED,
            )

        pushed: list[str] = []
        push_error: dict[str, Any] | None = None
        for branch in branches:
            try:
                await ctx.git.push(branch.branch_name, cwd=self._cwd(ctx, branch))
            except GitCommandError as error:
                logger.warning("Push of %s failed: %s", branch.branch_name, error)
                push_error = {"branch_name": branch.branch_name, **error.to_meta()}
                break
            pushed.append(branch.branch_name)

        span_meta: dict[str, Any] = {
            "pushed": push_error is None,
            "branches_pushed": pushed,
        }
        if push_error is not None:
            span_meta["push_error"] = push_error
        span = SpanWriter(store, step="push", parent=pending.span_id, meta=span_meta)

        noop_meta = {**meta, "pushed": push_error is None, "branches_pushed": pushed}
        if push_error is not None:
            reasoning = f"push failed: {push_error['message']}"
            noop_summary = f"push failed: {trace.summary}"
        else:
            reasoning = f"pushed {', '.join(pushed)}"
            noop_summary = f"done: {trace.summary}"
        action = ActionWriter(store, span.id).write(
            NOOP_ACTION,
            reasoning=reasoning,
            meta=noop_meta,
        )
        if push_error is not None:
            span.error(f"push: failed: {push_error['message']}")
        else:
            span.complete(f"push: {', '.join(pushed)}")

        enqueue_action(
            store,
            trace_id=pending.trace_id,
            action=action,
            summary=noop_summary,
            step="push",
        )
        return StepResult(
            span_id=span.id,
            enqueued_actions=[
                EnqueuedAction(action_id=action.id, action_type=NOOP_ACTION, summary=trace.summary),
            ],
            reasoning=reasoning,
            status=StepStatus.ERROR if push_error is not None else StepStatus.COMPLETED,
        )

    def _cwd(self, ctx: StepContext, branch: BranchInfo) -> Path:
        try:
            task = ctx.project.get_task(branch.task_id)
        except TaskNotFoundError:
            return ctx.project_path
        return task.worktree_path or ctx.project_path

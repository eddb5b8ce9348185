"""Workflow step: launch project tasks and watch them until they finish."""

from __future__ import annotations

import logging
from typing import Any

from autopilot.errors import GitCommandError, TaskNotFoundError
from autopilot.models import ActionStep, ActionTrace, PendingAction, SpanStatus, StepStatus, TaskMapping
from autopilot.project import Task, TaskStatus
from autopilot.provenance import ActionWriter, SpanWriter, enqueue_action
from autopilot.steps.helpers import SOURCE_ACTION_KEY
from autopilot.steps.types import (
    MonitorContext,
    Step,
    StepConfig,
    StepContext,
    StepResult,
    StepUpdate,
    TraceMutations,
    TraceUpdate,
)
from autopilot.storage.common import utc_now

logger = logging.getLogger(__name__)

COMMIT_ACTION = "commit"


def branch_name_for(task_id: int) -> str:
    return f"autopilot/task-{task_id}"


class WorkflowStep(Step):
    """Start one project task per queue entry; ``monitor`` forwards finished tasks to commit."""

    config = StepConfig(action_type="workflow", max_parallel=3)

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        store = ctx.store
        project = ctx.project
        meta = pending.meta

        existing = store.get_task_mapping(pending.action_id)
        if existing is not None:
            logger.info("Workflow %s already launched task %s", pending.action_id, existing.task_id)
            return StepResult(
                span_id=existing.workflow_span_id,
                reasoning=f"task #{existing.task_id} on {existing.branch_name}",
                status=StepStatus.RUNNING,
            )

        running = sum(
            1 for task in project.list_tasks() if task.refresh_status() == TaskStatus.RUNNING
        )
        if running >= ctx.settings.runner.max_running_tasks:
            return StepResult.pending(f"{running} task(s) already running")

        base_branch: str | None = None
        dependency_id = meta.get("depends_on_action_id")
        if dependency_id:
            dependency = store.get_task_mapping(dependency_id)
            if dependency is None:
                return StepResult.pending("waiting for dependency to start")
            try:
                dependency_task = project.get_task(dependency.task_id)
            except TaskNotFoundError:
                return StepResult.pending("waiting for dependency task")
            status = dependency_task.refresh_status()
            if status == TaskStatus.FAILED:
                return StepResult(
                    span_id=None,
                    terminal=True,
                    reasoning="dependency failed",
                    status=StepStatus.FAILED,
                )
            if status != TaskStatus.COMPLETED:
                return StepResult.pending("waiting for dependency to complete")
            base_branch = dependency.branch_name

        title = meta.get("title") or pending.summary
        description = meta.get("description") or pending.summary
        workflow = meta.get("workflow") or "swe"
        if base_branch is None:
            base_branch = await ctx.git.current_branch(ctx.project_path)

        task = project.create_task(
            title=title,
            description=description,
            workflow=workflow,
            meta={
                "acceptance_criteria": meta.get("acceptance_criteria") or [],
                SOURCE_ACTION_KEY: pending.action_id,
            },
        )
        worktree_path = project.workspace_path(task.id)
        branch_name = branch_name_for(task.id)

        launch_error: str | None = None
        try:
            await ctx.git.create_worktree(worktree_path, branch_name, base_branch)
            task.set_workspace(worktree_path, branch_name)
            project.start_task(task)
        except (GitCommandError, OSError) as error:
            launch_error = str(error)
            logger.warning("Failed to launch task %s: %s", task.id, error)
            task.mark_failed(launch_error)

        span_meta: dict[str, Any] = {
            "task_id": task.id,
            "branch_name": branch_name,
            "worktree_path": str(worktree_path),
            "workflow": workflow,
            "title": title,
            "base_branch": base_branch,
        }
        if launch_error is not None:
            span_meta["launch_error"] = launch_error
        span = SpanWriter(
            store,
            step="workflow",
            parent=pending.span_id,
            summary=f"workflow: task #{task.id} on {branch_name}",
            meta=span_meta,
        )
        store.set_task_mapping(
            pending.action_id,
            TaskMapping(
                task_id=task.id,
                branch_name=branch_name,
                trace_id=pending.trace_id,
                workflow_span_id=span.id,
            ),
        )
        return StepResult(
            span_id=span.id,
            reasoning=f"task #{task.id} on {branch_name}",
            status=StepStatus.RUNNING,
        )

    def monitor(self, ctx: MonitorContext) -> TraceMutations | None:
        store = ctx.store
        traces = {trace.trace_id: trace for trace in ctx.traces}
        updates: list[TraceUpdate] = []

        for action_id, mapping in store.get_all_task_mappings().items():
            if mapping.trace_id is None or mapping.workflow_span_id is None:
                continue
            trace = traces.get(mapping.trace_id)
            if trace is None:
                continue
            step = trace.find_step(action_id)
            if step is None or step.status != StepStatus.RUNNING:
                continue
            try:
                task = ctx.project.get_task(mapping.task_id)
            except TaskNotFoundError:
                continue
            status = task.refresh_status()
            if status not in (TaskStatus.COMPLETED, TaskStatus.FAILED):
                continue
            updates.append(self._forward_to_commit(ctx, trace, action_id, mapping, task))

        if not updates:
            return None
        return TraceMutations(updates=updates)

    def _forward_to_commit(
        self,
        ctx: MonitorContext,
        trace: ActionTrace,
        action_id: str,
        mapping: TaskMapping,
        task: Task,
    ) -> TraceUpdate:
        store = ctx.store
        workflow_span_id = mapping.workflow_span_id or ""
        failed = task.status == TaskStatus.FAILED
        error = task.error or "unknown error"

        workflow_span = store.read_span(workflow_span_id)
        if workflow_span is not None and not workflow_span.finalized:
            if failed:
                store.finalize_span(
                    workflow_span_id,
                    status=SpanStatus.FAILED,
                    summary=f"workflow: task #{task.id} failed: {error}",
                    meta={"error": error},
                )
            else:
                store.finalize_span(
                    workflow_span_id,
                    status=SpanStatus.COMPLETED,
                    summary=f"workflow: task #{task.id} completed on {mapping.branch_name}",
                )

        source_action = store.read_action(action_id)
        source_meta = source_action.meta if source_action is not None else {}
        commit_meta = {
            SOURCE_ACTION_KEY: action_id,
            "task_id": task.id,
            "workflow": task.workflow,
            "title": task.title,
            "description": source_meta.get("description", task.description),
            "acceptance_criteria": source_meta.get("acceptance_criteria", []),
            "branch_name": mapping.branch_name,
            "task_status": TaskStatus.FAILED.value if failed else TaskStatus.COMPLETED.value,
        }

        intents = store.find_child_spans(workflow_span_id, step=COMMIT_ACTION)
        actions = store.list_actions_for_span(intents[0].id) if intents else []
        if actions:
            commit_action = actions[0]
        else:
            intent = SpanWriter(
                store,
                step=COMMIT_ACTION,
                parent=workflow_span_id,
                summary=f"commit: {task.title}",
                meta=commit_meta,
            )
            commit_action = ActionWriter(store, intent.id).write(
                COMMIT_ACTION,
                reasoning=f"Commit task #{task.id}: {task.title}",
                meta=commit_meta,
            )
            intent.complete(f"commit: {task.title}")
        queued = {entry.action_id for entry in store.get_pending(COMMIT_ACTION)}
        if commit_action.id not in queued:
            enqueue_action(
                store,
                trace_id=trace.trace_id,
                action=commit_action,
                summary=f"commit: {task.title}",
                step="workflow",
            )

        reasoning = error if failed else f"task #{task.id} on {mapping.branch_name}"
        new_step_reasoning = f"{task.title} (failed: {error})" if failed else task.title
        return TraceUpdate(
            trace_id=trace.trace_id,
            step_updates=[
                StepUpdate(
                    action_id=action_id,
                    status=StepStatus.FAILED if failed else StepStatus.COMPLETED,
                    reasoning=reasoning,
                ),
            ],
            new_steps=[
                ActionStep(
                    action_id=commit_action.id,
                    action=COMMIT_ACTION,
                    status=StepStatus.PENDING,
                    timestamp=utc_now(),
                    reasoning=new_step_reasoning,
                ),
            ],
        )

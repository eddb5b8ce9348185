"""Committer step: commit a finished task's worktree, always forwarding to resolve."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from autopilot.agent.base import InvokeOptions
from autopilot.errors import GitCommandError, MissingTaskMappingError
from autopilot.json_response import parse_json_response
from autopilot.models import PendingAction, StepStatus
from autopilot.project import Task, TaskStatus, read_iteration_summaries
from autopilot.provenance import ActionWriter, SpanWriter, enqueue_action
from autopilot.steps.helpers import SOURCE_ACTION_KEY, find_finished_span, resume_from_span
from autopilot.steps.prompts import COMMIT_PROMPT
from autopilot.steps.types import EnqueuedAction, Step, StepConfig, StepContext, StepResult

logger = logging.getLogger(__name__)

RESOLVE_ACTION = "resolve"


def build_commit_message_request(
    task: Task,
    *,
    branch_name: str,
    summaries: list[str],
    recent_commits: list[str],
) -> str:
    lines = [
        "## Task",
        "",
        f"**Title**: {task.title}",
        "",
        f"**Description**: {task.description}",
        "",
        f"**Branch**: {branch_name}",
        "",
    ]
    if summaries:
        lines.extend(["## Iteration Summaries", ""])
        lines.extend(f"- {summary}" for summary in summaries)
        lines.append("")
    if recent_commits:
        lines.extend(["## Recent Commits (for style reference)", ""])
        lines.extend(f"- {commit}" for commit in recent_commits)
        lines.append("")
    return "\n".join(lines)


def with_attribution(message: str, trailer: str) -> str:
    if not trailer or trailer in message:
        return message
    return f"{message.rstrip()}\n\n{trailer}"


class CommitterStep(Step):
    config = StepConfig(action_type="commit", max_parallel=3)

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        store = ctx.store
        meta = dict(pending.meta)
        source_action_id = meta.get(SOURCE_ACTION_KEY)
        mapping = store.get_task_mapping(source_action_id) if source_action_id else None
        if mapping is None:
            raise MissingTaskMappingError(
                f"No task mapping found for source action {source_action_id}",
            )

        finished = find_finished_span(store, pending, "commit")
        if finished is not None:
            logger.info("Commit for %s already recorded in span %s", pending.action_id, finished.id)
            return resume_from_span(store, pending, finished, step="commit")

        task = ctx.project.get_task(mapping.task_id)
        title = meta.get("title") or task.title
        span = SpanWriter(
            store,
            step="commit",
            parent=pending.span_id,
            summary=f"commit: {title}",
            meta={
                SOURCE_ACTION_KEY: pending.action_id,
                "task_id": mapping.task_id,
                "branch_name": mapping.branch_name,
            },
        )
        writer = ActionWriter(store, span.id)

        forwarded_status = str(meta.get("task_status") or "").lower()
        if forwarded_status == TaskStatus.FAILED.value or task.status == TaskStatus.FAILED:
            error = task.error or "unknown error"
            action = writer.write(
                RESOLVE_ACTION,
                reasoning=f"Resolve task #{mapping.task_id}: {title} (failed)",
                meta={**meta, "committed": False, "task_status": TaskStatus.FAILED.value},
            )
            span.fail(
                f"commit: task #{mapping.task_id} failed, skipping commit",
                {
                    "task_id": mapping.task_id,
                    "branch_name": mapping.branch_name,
                    "committed": False,
                    "commit_sha": None,
                    "task_status": TaskStatus.FAILED.value,
                    "error": error,
                },
            )
            summary = f"resolve: {title}"
            enqueue_action(
                store,
                trace_id=pending.trace_id,
                action=action,
                summary=summary,
                step="commit",
            )
            return StepResult(
                span_id=span.id,
                enqueued_actions=[
                    EnqueuedAction(action_id=action.id, action_type=RESOLVE_ACTION, summary=summary),
                ],
                reasoning=f"task #{mapping.task_id} failed, skipping commit",
                status=StepStatus.FAILED,
            )

        cwd = task.worktree_path or ctx.project_path
        committed = False
        commit_sha: str | None = None
        commit_message: str | None = None
        commit_error: dict[str, Any] | None = None
        try:
            if await ctx.git.has_uncommitted_changes(cwd):
                commit_message = await self._commit_message(
                    ctx,
                    task,
                    cwd=cwd,
                    branch_name=mapping.branch_name,
                )
                await ctx.git.add_and_commit(commit_message, cwd)
                commit_sha = await ctx.git.commit_hash(cwd)
                committed = True
        except GitCommandError as error:
            logger.warning("Commit failed for task %s: %s", mapping.task_id, error)
            commit_error = error.to_meta()

        resolve_meta: dict[str, Any] = {
            **meta,
            "committed": committed,
            "commit_sha": commit_sha,
            "task_status": TaskStatus.COMPLETED.value,
        }
        if commit_error is not None:
            resolve_meta["commit_error"] = commit_error
            label = f"commit failed: {commit_error['message']}"
        elif committed:
            label = "committed"
        else:
            label = "no changes"

        action = writer.write(
            RESOLVE_ACTION,
            reasoning=f"Resolve task #{mapping.task_id}: {title} ({label})",
            meta=resolve_meta,
        )
        outcome_meta: dict[str, Any] = {
            "committed": committed,
            "commit_sha": commit_sha,
            "commit_message": commit_message,
            "task_status": TaskStatus.COMPLETED.value,
        }
        if commit_error is not None:
            outcome_meta["commit_error"] = commit_error
            span.error(f"commit: task #{mapping.task_id}: {label}", outcome_meta)
        else:
            span.complete(f"commit: task #{mapping.task_id}: {label}", outcome_meta)

        summary = f"resolve: {title}"
        enqueue_action(
            store,
            trace_id=pending.trace_id,
            action=action,
            summary=summary,
            step="commit",
        )
        if commit_error is not None:
            reasoning = f"task #{mapping.task_id} {label}"
        elif committed:
            reasoning = f"task #{mapping.task_id} committed on {mapping.branch_name}"
        else:
            reasoning = f"task #{mapping.task_id} no changes"
        return StepResult(
            span_id=span.id,
            enqueued_actions=[
                EnqueuedAction(action_id=action.id, action_type=RESOLVE_ACTION, summary=summary),
            ],
            reasoning=reasoning,
            status=StepStatus.ERROR if commit_error is not None else None,
        )

    async def _commit_message(
        self,
        ctx: StepContext,
        task: Task,
        *,
        cwd: Path,
        branch_name: str,
    ) -> str:
        """Ask the agent for a message; fall back to the task title."""

        settings = ctx.settings.autopilot
        message = ""
        try:
            request = build_commit_message_request(
                task,
                branch_name=branch_name,
                summaries=read_iteration_summaries(task),
                recent_commits=await ctx.git.recent_commits(cwd=cwd),
            )
            response = await ctx.agent.invoke(
                request,
                InvokeOptions(json=True, cwd=cwd, system_prompt=COMMIT_PROMPT),
            )
            message = str(parse_json_response(response).get("commit_message") or "").strip()
        except Exception as error:  # noqa: BLE001
            logger.warning("Commit message generation failed for task %s: %s", task.id, error)
        if not message:
            message = task.title
        if settings.attribution:
            message = with_attribution(message, settings.attribution_trailer)
        return message

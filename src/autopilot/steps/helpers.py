"""Shared building blocks for concrete steps."""

from __future__ import annotations

import json
from typing import Any

from autopilot.models import Action, PendingAction, Span, SpanStatus, StepStatus
from autopilot.provenance import enqueue_action
from autopilot.steps.types import EnqueuedAction, StepResult
from autopilot.store import AutopilotStore

SOURCE_ACTION_KEY = "source_action_id"

_SPAN_TO_STEP_STATUS = {
    SpanStatus.COMPLETED: StepStatus.COMPLETED,
    SpanStatus.FAILED: StepStatus.FAILED,
    SpanStatus.ERROR: StepStatus.ERROR,
}


def json_block(payload: Any) -> str:
    return "```json\n" + json.dumps(payload, indent=2, ensure_ascii=False, default=str) + "\n```"


def spans_payload(spans: list[Span]) -> list[dict[str, Any]]:
    return [
        {
            "id": span.id,
            "step": span.step,
            "status": span.status.value,
            "timestamp": span.timestamp.isoformat(),
            "summary": span.summary,
            "parent": span.parent,
            "meta": span.meta,
        }
        for span in spans
    ]


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "…"


def find_finished_span(store: AutopilotStore, pending: PendingAction, step: str) -> Span | None:
    """Span a previous attempt at ``pending`` already finalized, if any."""

    for span in store.find_child_spans(pending.span_id, step=step):
        if span.finalized and span.meta.get(SOURCE_ACTION_KEY) == pending.action_id:
            return span
    return None


def resume_from_span(
    store: AutopilotStore,
    pending: PendingAction,
    span: Span,
    *,
    step: str,
) -> StepResult:
    """Rebuild the result of an attempt that finished before its queue entry was removed.

    Follow-up actions recorded under the span are re-queued when missing;
    they cannot have been processed yet because the queue entry that
    produced them is still present.
    """

    queued = {entry.action_id for entry in store.get_pending()}
    enqueued: list[EnqueuedAction] = []
    for action in store.list_actions_for_span(span.id):
        summary = _action_summary(action)
        if action.id not in queued:
            enqueue_action(
                store,
                trace_id=pending.trace_id,
                action=action,
                summary=summary,
                step=step,
            )
        enqueued.append(
            EnqueuedAction(action_id=action.id, action_type=action.action, summary=summary),
        )
    return StepResult(
        span_id=span.id,
        terminal=not enqueued,
        enqueued_actions=enqueued,
        reasoning=f"resumed: {span.summary}",
        status=_SPAN_TO_STEP_STATUS.get(span.status, StepStatus.COMPLETED),
    )


def _action_summary(action: Action) -> str:
    title = action.meta.get("title")
    if title:
        return f"{action.action}: {title}"
    return action.reasoning or action.action

"""Trace projection helpers and restart recovery."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from autopilot.models import ActionStep, ActionTrace, PendingAction, StepStatus
from autopilot.storage.common import utc_now

if TYPE_CHECKING:
    from autopilot.steps.types import StepUpdate, TraceUpdate
    from autopilot.store import AutopilotStore

logger = logging.getLogger(__name__)


def get_or_create_trace(traces: dict[str, ActionTrace], entry: PendingAction) -> ActionTrace:
    trace = traces.get(entry.trace_id)
    if trace is None:
        trace = ActionTrace(
            trace_id=entry.trace_id,
            summary=entry.summary,
            created_at=entry.created_at,
        )
        traces[entry.trace_id] = trace
    return trace


def get_or_create_step(
    trace: ActionTrace,
    *,
    action_id: str,
    action: str,
    status: StepStatus,
    reasoning: str | None = None,
) -> ActionStep:
    """Find the step for ``action_id`` or append a new one; existing steps are reused."""

    step = trace.find_step(action_id)
    if step is None:
        step = ActionStep(
            action_id=action_id,
            action=action,
            status=status,
            timestamp=utc_now(),
            reasoning=reasoning,
        )
        trace.steps.append(step)
    return step


def apply_step_updates(trace: ActionTrace, updates: list[StepUpdate]) -> bool:
    changed = False
    for update in updates:
        step = trace.find_step(update.action_id)
        if step is None:
            continue
        step.status = update.status
        if update.reasoning:
            step.reasoning = update.reasoning
        changed = True
    return changed


def apply_trace_update(trace: ActionTrace, update: TraceUpdate) -> bool:
    changed = apply_step_updates(trace, update.step_updates)
    for new_step in update.new_steps:
        if trace.find_step(new_step.action_id) is None:
            trace.steps.append(new_step)
            changed = True
    if update.retry_count is not None and update.retry_count != trace.retry_count:
        trace.retry_count = update.retry_count
        changed = True
    return changed


def rebuild_traces(store: AutopilotStore) -> dict[str, ActionTrace]:
    """Reconstruct the trace map after a restart.

    Starts from persisted traces, then makes sure every queued entry has a
    pending step and every in-flight workflow mapping has a running step.
    """

    traces = {trace.trace_id: trace for trace in store.load_traces()}

    for entry in store.get_pending():
        trace = get_or_create_trace(traces, entry)
        step = get_or_create_step(
            trace,
            action_id=entry.action_id,
            action=entry.action,
            status=StepStatus.PENDING,
            reasoning=entry.summary,
        )
        step.status = StepStatus.PENDING

    for action_id, mapping in store.get_all_task_mappings().items():
        if mapping.trace_id is None or mapping.workflow_span_id is None:
            continue
        span = store.read_span(mapping.workflow_span_id)
        if span is None or span.finalized:
            continue
        trace = traces.get(mapping.trace_id)
        if trace is None:
            trace = ActionTrace(
                trace_id=mapping.trace_id,
                summary=span.summary,
                created_at=span.timestamp,
            )
            traces[mapping.trace_id] = trace
        step = get_or_create_step(
            trace,
            action_id=action_id,
            action="workflow",
            status=StepStatus.RUNNING,
        )
        step.status = StepStatus.RUNNING
        step.span_id = mapping.workflow_span_id

    logger.debug("Rebuilt %d traces from store", len(traces))
    return traces

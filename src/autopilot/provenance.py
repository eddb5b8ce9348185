"""Writers for the append-only span/action provenance records."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from autopilot.errors import SpanAlreadyFinalizedError
from autopilot.models import Action, AutopilotLogEntry, PendingAction, Span, SpanStatus
from autopilot.storage.common import utc_now

if TYPE_CHECKING:
    from autopilot.store import AutopilotStore

logger = logging.getLogger(__name__)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:16]}"


class SpanWriter:
    """Open a span on construction and finalize it exactly once."""

    def __init__(
        self,
        store: AutopilotStore,
        *,
        step: str,
        parent: str | None,
        summary: str = "",
        meta: dict[str, Any] | None = None,
    ) -> None:
        self._store = store
        self.span = Span(
            id=new_id("span"),
            step=step,
            parent=parent,
            timestamp=utc_now(),
            summary=summary or f"{step} started",
            meta=dict(meta or {}),
        )
        self._finalized = False
        store.write_span(self.span)

    @property
    def id(self) -> str:
        return self.span.id

    def complete(self, summary: str, meta: dict[str, Any] | None = None) -> None:
        self._finalize(SpanStatus.COMPLETED, summary, meta)

    def fail(self, summary: str, meta: dict[str, Any] | None = None) -> None:
        self._finalize(SpanStatus.FAILED, summary, meta)

    def error(self, summary: str, meta: dict[str, Any] | None = None) -> None:
        self._finalize(SpanStatus.ERROR, summary, meta)

    def _finalize(self, status: SpanStatus, summary: str, meta: dict[str, Any] | None) -> None:
        if self._finalized:
            raise SpanAlreadyFinalizedError(f"Span {self.id} is already finalized")
        self._finalized = True
        self._store.finalize_span(self.id, status=status, summary=summary, meta=meta)
        self.span.status = status
        self.span.summary = summary
        self.span.meta.update(meta or {})


class ActionWriter:
    """Record decisions made during one span."""

    def __init__(self, store: AutopilotStore, span_id: str) -> None:
        self._store = store
        self.span_id = span_id

    def write(
        self,
        action_type: str,
        *,
        meta: dict[str, Any] | None = None,
        reasoning: str | None = None,
        action_id: str | None = None,
    ) -> Action:
        action = Action(
            id=action_id or new_id("action"),
            action=action_type,
            span_id=self.span_id,
            timestamp=utc_now(),
            meta=dict(meta or {}),
            reasoning=reasoning,
        )
        self._store.write_action(action)
        return action


def enqueue_action(
    store: AutopilotStore,
    *,
    trace_id: str,
    action: Action,
    summary: str,
    step: str,
) -> PendingAction:
    """Queue a previously written action and note it in the audit log."""

    entry = PendingAction(
        trace_id=trace_id,
        action_id=action.id,
        span_id=action.span_id,
        action=action.action,
        summary=summary,
        created_at=utc_now(),
        meta=dict(action.meta),
    )
    if not store.add_pending(entry):
        logger.debug("Action %s already queued", action.id)
    store.append_log(
        AutopilotLogEntry(
            ts=entry.created_at,
            trace_id=trace_id,
            span_id=action.span_id,
            action_id=action.id,
            step=step,
            action=action.action,
            summary=summary,
        ),
    )
    return entry

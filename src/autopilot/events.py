"""Event intake: turn external events into root spans and queued coordinate actions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from autopilot.models import Span, SpanStatus
from autopilot.provenance import ActionWriter, enqueue_action, new_id
from autopilot.storage.common import utc_now
from autopilot.store import AutopilotStore

logger = logging.getLogger(__name__)

COORDINATE_ACTION = "coordinate"


@dataclass(slots=True)
class ExternalEvent:
    id: str
    type: str
    summary: str
    meta: dict[str, Any] = field(default_factory=dict)


class EventIntake:
    """Producer side of the queue; each new event starts its own trace."""

    def __init__(self, store: AutopilotStore) -> None:
        self.store = store

    def ingest(self, events: list[ExternalEvent]) -> list[str]:
        """Queue unseen events and return the trace ids created, in input order."""

        trace_ids: list[str] = []
        accepted: list[str] = []
        for event in events:
            if event.id in accepted or self.store.is_event_processed(event.id):
                logger.debug("Skipping already processed event %s", event.id)
                continue
            trace_ids.append(self._ingest_one(event))
            accepted.append(event.id)
        if accepted:
            self.store.mark_events_processed(accepted)
            logger.info("Ingested %d event(s)", len(accepted))
        return trace_ids

    def _ingest_one(self, event: ExternalEvent) -> str:
        now = utc_now()
        span_meta = {"event_id": event.id, "type": event.type, **event.meta}
        span = Span(
            id=new_id("span"),
            step="event",
            parent=None,
            timestamp=now,
            summary=f"{event.type}: {event.summary}",
            meta=span_meta,
            status=SpanStatus.COMPLETED,
            completed_at=now,
        )
        self.store.write_span(span)
        action = ActionWriter(self.store, span.id).write(
            COORDINATE_ACTION,
            reasoning=f"New {event.type} event",
            meta=span_meta,
        )
        trace_id = new_id("trace")
        enqueue_action(
            self.store,
            trace_id=trace_id,
            action=action,
            summary=f"{event.type}: {event.summary}",
            step="event",
        )
        return trace_id

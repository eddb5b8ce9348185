"""Durable queue and provenance store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlmodel import Session, col, select

from autopilot.errors import SpanAlreadyFinalizedError
from autopilot.models import (
    Action,
    ActionStep,
    ActionTrace,
    AutopilotLogEntry,
    PendingAction,
    Span,
    SpanStatus,
    TaskMapping,
)
from autopilot.storage.alembic_runner import upgrade_head
from autopilot.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_object,
    to_utc,
    utc_now,
)
from autopilot.storage.sqlmodel_models import (
    ActionRow,
    ActionTraceRow,
    PendingActionRow,
    ProcessedEventRow,
    SpanOutcomeRow,
    SpanRow,
    TaskMappingRow,
)

logger = logging.getLogger(__name__)

DEFAULT_CURSOR_MAX_IDS = 200
DEFAULT_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_LOG_MAX_ROTATED = 3


class AutopilotStore:
    """Persistence facade for spans, actions, the pending queue and traces.

    Every mutating call commits its own transaction, so one record is the unit
    of durability. The audit log is a JSONL file next to the database.
    """

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        log_path: Path | None = None,
        busy_timeout_ms: int = 5000,
        cursor_max_ids: int = DEFAULT_CURSOR_MAX_IDS,
        log_max_bytes: int = DEFAULT_LOG_MAX_BYTES,
        log_max_rotated: int = DEFAULT_LOG_MAX_ROTATED,
    ) -> None:
        self.db_path = db_path
        self.log_path = log_path or db_path.parent / "log.jsonl"
        self.cursor_max_ids = cursor_max_ids
        self.log_max_bytes = log_max_bytes
        self.log_max_rotated = log_max_rotated
        self._busy_timeout_ms = busy_timeout_ms
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Pending queue

    def add_pending(self, entry: PendingAction) -> bool:
        """Enqueue an entry; returns False when the action id is already queued."""

        with Session(self.engine) as session:
            existing = session.exec(
                select(PendingActionRow).where(PendingActionRow.action_id == entry.action_id),
            ).one_or_none()
            if existing is not None:
                return False
            session.add(
                PendingActionRow(
                    action_id=entry.action_id,
                    trace_id=entry.trace_id,
                    span_id=entry.span_id,
                    action_type=entry.action,
                    summary=entry.summary,
                    meta_json=dump_json(entry.meta),
                    created_at=_to_db_datetime(entry.created_at),
                ),
            )
            session.commit()
            return True

    def get_pending(self, action_type: str | None = None) -> list[PendingAction]:
        """Snapshot of queued entries in insertion order."""

        with Session(self.engine) as session:
            statement = select(PendingActionRow).order_by(col(PendingActionRow.seq).asc())
            if action_type is not None:
                statement = statement.where(PendingActionRow.action_type == action_type)
            rows = session.exec(statement).all()
            return [_to_pending(row) for row in rows]

    def remove_pending(self, action_id: str) -> bool:
        """Drop a queue entry; removing a missing entry is a no-op."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(PendingActionRow).where(col(PendingActionRow.action_id) == action_id),
            )
            session.commit()
            return bool(result.rowcount)

    # Spans

    def write_span(self, span: Span) -> None:
        """Persist the opening record of a span. Re-writing an existing id is ignored."""

        with Session(self.engine) as session:
            if session.get(SpanRow, span.id) is not None:
                logger.debug("Span %s already written", span.id)
                return
            session.add(
                SpanRow(
                    span_id=span.id,
                    step=span.step,
                    parent_id=span.parent,
                    summary=span.summary,
                    meta_json=dump_json(span.meta),
                    created_at=_to_db_datetime(span.timestamp),
                ),
            )
            if span.finalized:
                session.flush()
                session.add(
                    SpanOutcomeRow(
                        span_id=span.id,
                        status=span.status.value,
                        summary=span.summary,
                        meta_json=dump_json({}),
                        completed_at=_to_db_datetime(span.completed_at or span.timestamp),
                    ),
                )
            session.commit()

    def finalize_span(  # noqa: PLR0913
        self,
        span_id: str,
        *,
        status: SpanStatus,
        summary: str,
        meta: dict[str, Any] | None = None,
        completed_at: datetime | None = None,
    ) -> None:
        """Record the immutable outcome of a span."""

        if status == SpanStatus.RUNNING:
            raise ValueError("A span outcome must be terminal")
        with Session(self.engine) as session:
            if session.get(SpanOutcomeRow, span_id) is not None:
                raise SpanAlreadyFinalizedError(f"Span {span_id} is already finalized")
            session.add(
                SpanOutcomeRow(
                    span_id=span_id,
                    status=status.value,
                    summary=summary,
                    meta_json=dump_json(meta or {}),
                    completed_at=_to_db_datetime(completed_at or utc_now()),
                ),
            )
            session.commit()

    def read_span(self, span_id: str) -> Span | None:
        with Session(self.engine) as session:
            row = session.get(SpanRow, span_id)
            if row is None:
                return None
            return _to_span(row, session.get(SpanOutcomeRow, span_id))

    def get_span_trace(self, span_id: str) -> list[Span]:
        """Causal chain of spans, root first.

        Walks parent links and stops at a missing span or a cycle.
        """

        chain: list[Span] = []
        seen: set[str] = set()
        current: str | None = span_id
        while current is not None and current not in seen:
            seen.add(current)
            span = self.read_span(current)
            if span is None:
                break
            chain.append(span)
            current = span.parent
        chain.reverse()
        return chain

    def find_child_spans(self, parent_id: str, *, step: str | None = None) -> list[Span]:
        with Session(self.engine) as session:
            statement = (
                select(SpanRow)
                .where(SpanRow.parent_id == parent_id)
                .order_by(col(SpanRow.created_at).asc())
            )
            if step is not None:
                statement = statement.where(SpanRow.step == step)
            rows = session.exec(statement).all()
            return [_to_span(row, session.get(SpanOutcomeRow, row.span_id)) for row in rows]

    # Actions

    def write_action(self, action: Action) -> None:
        with Session(self.engine) as session:
            if session.get(ActionRow, action.id) is not None:
                logger.debug("Action %s already written", action.id)
                return
            session.add(
                ActionRow(
                    action_id=action.id,
                    action_type=action.action,
                    span_id=action.span_id,
                    reasoning=action.reasoning,
                    meta_json=dump_json(action.meta),
                    created_at=_to_db_datetime(action.timestamp),
                ),
            )
            session.commit()

    def read_action(self, action_id: str) -> Action | None:
        with Session(self.engine) as session:
            row = session.get(ActionRow, action_id)
            return _to_action(row) if row is not None else None

    def list_actions_for_span(self, span_id: str) -> list[Action]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ActionRow)
                .where(ActionRow.span_id == span_id)
                .order_by(col(ActionRow.created_at).asc()),
            ).all()
            return [_to_action(row) for row in rows]

    # Task mappings

    def set_task_mapping(self, action_id: str, mapping: TaskMapping) -> None:
        with Session(self.engine) as session:
            row = session.get(TaskMappingRow, action_id)
            if row is None:
                row = TaskMappingRow(
                    action_id=action_id,
                    task_id=mapping.task_id,
                    branch_name=mapping.branch_name,
                    updated_at=_to_db_datetime(utc_now()),
                )
            row.task_id = mapping.task_id
            row.branch_name = mapping.branch_name
            row.trace_id = mapping.trace_id
            row.workflow_span_id = mapping.workflow_span_id
            row.updated_at = _to_db_datetime(utc_now())
            session.add(row)
            session.commit()

    def get_task_mapping(self, action_id: str) -> TaskMapping | None:
        with Session(self.engine) as session:
            row = session.get(TaskMappingRow, action_id)
            return _to_mapping(row) if row is not None else None

    def get_all_task_mappings(self) -> dict[str, TaskMapping]:
        with Session(self.engine) as session:
            rows = session.exec(select(TaskMappingRow)).all()
            return {row.action_id: _to_mapping(row) for row in rows}

    # Event cursor

    def is_event_processed(self, event_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(ProcessedEventRow).where(ProcessedEventRow.event_id == event_id),
            ).one_or_none()
            return row is not None

    def mark_events_processed(self, event_ids: Iterable[str]) -> None:
        """Remember event ids, keeping only the most recent ``cursor_max_ids``."""

        now = _to_db_datetime(utc_now())
        with Session(self.engine) as session:
            for event_id in event_ids:
                existing = session.exec(
                    select(ProcessedEventRow).where(ProcessedEventRow.event_id == event_id),
                ).one_or_none()
                if existing is None:
                    session.add(ProcessedEventRow(event_id=event_id, processed_at=now))
            session.flush()
            keep = session.exec(
                select(ProcessedEventRow.seq)
                .order_by(col(ProcessedEventRow.seq).desc())
                .limit(self.cursor_max_ids),
            ).all()
            if keep:
                session.exec(
                    sa_delete(ProcessedEventRow).where(col(ProcessedEventRow.seq) < min(keep)),
                )
            session.commit()

    def processed_event_ids(self) -> list[str]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ProcessedEventRow).order_by(col(ProcessedEventRow.seq).asc()),
            ).all()
            return [row.event_id for row in rows]

    # Audit log

    def append_log(self, entry: AutopilotLogEntry) -> None:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        if self.log_path.exists() and self.log_path.stat().st_size >= self.log_max_bytes:
            self._rotate_log()
        with self.log_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")

    def read_logs(self, max_entries: int = 500) -> list[AutopilotLogEntry]:
        """Newest entries in chronological order, skipping malformed lines."""

        collected: list[AutopilotLogEntry] = []
        for path in self._log_files_newest_first():
            lines = path.read_text(encoding="utf-8").splitlines()
            for line in reversed(lines):
                if len(collected) >= max_entries:
                    break
                entry = _parse_log_line(line)
                if entry is not None:
                    collected.append(entry)
            if len(collected) >= max_entries:
                break
        collected.reverse()
        return collected

    def _rotated_log_path(self, index: int) -> Path:
        return self.log_path.with_name(f"{self.log_path.stem}.{index}{self.log_path.suffix}")

    def _rotate_log(self) -> None:
        oldest = self._rotated_log_path(self.log_max_rotated)
        if oldest.exists():
            oldest.unlink()
        for index in range(self.log_max_rotated - 1, 0, -1):
            source = self._rotated_log_path(index)
            if source.exists():
                source.rename(self._rotated_log_path(index + 1))
        if self.log_max_rotated > 0:
            self.log_path.rename(self._rotated_log_path(1))
        else:
            self.log_path.unlink()
        logger.info("Rotated audit log %s", self.log_path)

    def _log_files_newest_first(self) -> list[Path]:
        candidates = [self.log_path] + [
            self._rotated_log_path(index) for index in range(1, self.log_max_rotated + 1)
        ]
        return [path for path in candidates if path.exists()]

    # Traces

    def save_trace(self, trace: ActionTrace) -> None:
        now = _to_db_datetime(utc_now())
        steps_json = json.dumps([step.to_dict() for step in trace.steps], ensure_ascii=False)
        with Session(self.engine) as session:
            row = session.get(ActionTraceRow, trace.trace_id)
            if row is None:
                row = ActionTraceRow(
                    trace_id=trace.trace_id,
                    created_at=_to_db_datetime(trace.created_at),
                    updated_at=now,
                )
            row.summary = trace.summary
            row.retry_count = trace.retry_count
            row.steps_json = steps_json
            row.updated_at = now
            session.add(row)
            session.commit()

    def load_traces(self) -> list[ActionTrace]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ActionTraceRow).order_by(col(ActionTraceRow.created_at).asc()),
            ).all()
            return [_to_trace(row) for row in rows]

    def delete_trace(self, trace_id: str) -> None:
        with Session(self.engine) as session:
            session.exec(sa_delete(ActionTraceRow).where(col(ActionTraceRow.trace_id) == trace_id))
            session.commit()


def _parse_log_line(line: str) -> AutopilotLogEntry | None:
    if not line.strip():
        return None
    try:
        payload = json.loads(line)
        return AutopilotLogEntry.from_dict(payload)
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        return None


def _to_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _to_span(row: SpanRow, outcome: SpanOutcomeRow | None) -> Span:
    meta = load_json_object(row.meta_json)
    span = Span(
        id=row.span_id,
        step=row.step,
        parent=row.parent_id,
        timestamp=to_utc(row.created_at),
        summary=row.summary,
        meta=meta,
    )
    if outcome is not None:
        span.status = SpanStatus(outcome.status)
        span.summary = outcome.summary
        span.meta = {**meta, **load_json_object(outcome.meta_json)}
        span.completed_at = to_utc(outcome.completed_at)
    return span


def _to_action(row: ActionRow) -> Action:
    return Action(
        id=row.action_id,
        action=row.action_type,
        span_id=row.span_id,
        timestamp=to_utc(row.created_at),
        meta=load_json_object(row.meta_json),
        reasoning=row.reasoning,
    )


def _to_pending(row: PendingActionRow) -> PendingAction:
    return PendingAction(
        trace_id=row.trace_id,
        action_id=row.action_id,
        span_id=row.span_id,
        action=row.action_type,
        summary=row.summary,
        created_at=to_utc(row.created_at),
        meta=load_json_object(row.meta_json),
    )


def _to_mapping(row: TaskMappingRow) -> TaskMapping:
    return TaskMapping(
        task_id=row.task_id,
        branch_name=row.branch_name,
        trace_id=row.trace_id,
        workflow_span_id=row.workflow_span_id,
    )


def _to_trace(row: ActionTraceRow) -> ActionTrace:
    raw_steps = json.loads(row.steps_json or "[]")
    return ActionTrace(
        trace_id=row.trace_id,
        summary=row.summary,
        created_at=to_utc(row.created_at),
        steps=[ActionStep.from_dict(item) for item in raw_steps],
        retry_count=row.retry_count,
    )

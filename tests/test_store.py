from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from fakes import make_pending

from autopilot.errors import SpanAlreadyFinalizedError
from autopilot.models import (
    Action,
    ActionStep,
    ActionTrace,
    AutopilotLogEntry,
    Span,
    SpanStatus,
    StepStatus,
    TaskMapping,
)
from autopilot.provenance import ActionWriter, SpanWriter
from autopilot.storage.common import utc_now
from autopilot.store import AutopilotStore

pytestmark = [
    allure.epic("Autopilot"),
    allure.feature("Store"),
]


def _root_span(store: AutopilotStore, step: str = "event") -> SpanWriter:
    span = SpanWriter(store, step=step, parent=None, summary=f"{step} root")
    span.complete(f"{step} root")
    return span


def _queued(store: AutopilotStore, *, action: str = "plan", trace_id: str = "trace-1"):
    span = _root_span(store)
    written = ActionWriter(store, span.id).write(action, meta={"title": "x"})
    entry = make_pending(
        action=action,
        span_id=span.id,
        action_id=written.id,
        trace_id=trace_id,
        meta={"title": "x"},
    )
    return entry


def test_pending_queue_keeps_insertion_order_and_is_idempotent(store: AutopilotStore) -> None:
    first = _queued(store, action="plan")
    second = _queued(store, action="workflow")
    third = _queued(store, action="plan")

    assert store.add_pending(first) is True
    assert store.add_pending(second) is True
    assert store.add_pending(third) is True
    assert store.add_pending(first) is False

    assert [entry.action_id for entry in store.get_pending()] == [
        first.action_id,
        second.action_id,
        third.action_id,
    ]
    assert [entry.action_id for entry in store.get_pending("plan")] == [
        first.action_id,
        third.action_id,
    ]
    assert store.get_pending("plan")[0].meta == {"title": "x"}

    assert store.remove_pending(second.action_id) is True
    assert store.remove_pending(second.action_id) is False
    assert [entry.action for entry in store.get_pending()] == ["plan", "plan"]


def test_span_outcome_is_written_once_and_merged_on_read(store: AutopilotStore) -> None:
    span = SpanWriter(store, step="plan", parent=None, summary="plan started", meta={"a": 1})

    opened = store.read_span(span.id)
    assert opened is not None
    assert opened.status == SpanStatus.RUNNING
    assert opened.finalized is False

    span.complete("plan done", {"task_count": 2})
    closed = store.read_span(span.id)
    assert closed is not None
    assert closed.status == SpanStatus.COMPLETED
    assert closed.summary == "plan done"
    assert closed.meta == {"a": 1, "task_count": 2}
    assert closed.completed_at is not None

    with pytest.raises(SpanAlreadyFinalizedError):
        store.finalize_span(span.id, status=SpanStatus.FAILED, summary="again")
    with pytest.raises(SpanAlreadyFinalizedError):
        span.fail("again")


def test_finalize_rejects_running_status(store: AutopilotStore) -> None:
    span = SpanWriter(store, step="plan", parent=None)

    with pytest.raises(ValueError, match="terminal"):
        store.finalize_span(span.id, status=SpanStatus.RUNNING, summary="nope")


def test_write_span_ignores_existing_id(store: AutopilotStore) -> None:
    span = SpanWriter(store, step="plan", parent=None, summary="first")
    store.write_span(
        Span(id=span.id, step="other", parent=None, timestamp=utc_now(), summary="second"),
    )

    stored = store.read_span(span.id)
    assert stored is not None
    assert stored.step == "plan"
    assert stored.summary == "first"


def test_span_trace_walks_parents_root_first(store: AutopilotStore) -> None:
    root = _root_span(store)
    middle = SpanWriter(store, step="coordinate", parent=root.id)
    leaf = SpanWriter(store, step="plan", parent=middle.id)

    chain = store.get_span_trace(leaf.id)

    assert [span.id for span in chain] == [root.id, middle.id, leaf.id]
    assert store.get_span_trace("span-missing") == []


def test_span_trace_stops_on_cycle(store: AutopilotStore) -> None:
    now = utc_now()
    store.write_span(Span(id="span-a", step="a", parent="span-b", timestamp=now, summary="a"))
    store.write_span(Span(id="span-b", step="b", parent="span-a", timestamp=now, summary="b"))

    chain = store.get_span_trace("span-a")

    assert [span.id for span in chain] == ["span-b", "span-a"]


def test_child_spans_and_actions_are_listed_by_parent(store: AutopilotStore) -> None:
    root = _root_span(store)
    plan = SpanWriter(store, step="plan", parent=root.id)
    SpanWriter(store, step="noop", parent=root.id)
    writer = ActionWriter(store, plan.id)
    first = writer.write("workflow", meta={"title": "one"}, reasoning="r1")
    second = writer.write("workflow", meta={"title": "two"})

    assert [span.id for span in store.find_child_spans(root.id, step="plan")] == [plan.id]
    assert len(store.find_child_spans(root.id)) == 2
    assert [action.id for action in store.list_actions_for_span(plan.id)] == [first.id, second.id]

    loaded = store.read_action(first.id)
    assert isinstance(loaded, Action)
    assert loaded.meta == {"title": "one"}
    assert loaded.reasoning == "r1"
    assert store.read_action("action-missing") is None


def test_task_mapping_upsert(store: AutopilotStore) -> None:
    store.set_task_mapping("action-1", TaskMapping(task_id=1, branch_name="autopilot/task-1"))
    store.set_task_mapping(
        "action-1",
        TaskMapping(
            task_id=1,
            branch_name="autopilot/task-1",
            trace_id="trace-1",
            workflow_span_id="span-1",
        ),
    )

    mapping = store.get_task_mapping("action-1")
    assert mapping == TaskMapping(
        task_id=1,
        branch_name="autopilot/task-1",
        trace_id="trace-1",
        workflow_span_id="span-1",
    )
    assert store.get_task_mapping("action-2") is None
    assert list(store.get_all_task_mappings()) == ["action-1"]


def test_processed_event_cursor_is_trimmed_to_newest_ids(tmp_path: Path) -> None:
    store = AutopilotStore(tmp_path / "cursor.db", cursor_max_ids=3)
    store.init_schema()
    try:
        store.mark_events_processed(["e1", "e2"])
        store.mark_events_processed(["e2", "e3", "e4"])

        assert store.processed_event_ids() == ["e2", "e3", "e4"]
        assert store.is_event_processed("e4") is True
        assert store.is_event_processed("e1") is False
    finally:
        store.close()


def test_audit_log_rotates_and_reads_back_in_order(tmp_path: Path) -> None:
    store = AutopilotStore(tmp_path / "log.db", log_max_bytes=400, log_max_rotated=2)
    store.init_schema()
    try:
        for index in range(12):
            store.append_log(
                AutopilotLogEntry(
                    ts=utc_now(),
                    trace_id="trace-1",
                    span_id="span-1",
                    action_id=f"action-{index}",
                    step="plan",
                    action="workflow",
                    summary=f"entry {index}",
                ),
            )

        assert (tmp_path / "log.1.jsonl").exists()
        assert not (tmp_path / "log.3.jsonl").exists()
        entries = store.read_logs(max_entries=3)
        assert [entry.action_id for entry in entries] == ["action-9", "action-10", "action-11"]
    finally:
        store.close()


def test_read_logs_skips_malformed_lines(store: AutopilotStore) -> None:
    entry = AutopilotLogEntry(
        ts=utc_now(),
        trace_id="trace-1",
        span_id="span-1",
        action_id="action-1",
        step="event",
        action="coordinate",
        summary="hello",
    )
    store.append_log(entry)
    with store.log_path.open("a", encoding="utf-8") as handle:
        handle.write("not json\n")
        handle.write(json.dumps({"unexpected": True}) + "\n")

    entries = store.read_logs()

    assert [item.summary for item in entries] == ["hello"]


def test_traces_round_trip(store: AutopilotStore) -> None:
    trace = ActionTrace(
        trace_id="trace-1",
        summary="issue: fix bug",
        created_at=utc_now(),
        steps=[
            ActionStep(
                action_id="action-1",
                action="coordinate",
                status=StepStatus.COMPLETED,
                timestamp=utc_now(),
                reasoning="plan (0.9)",
                span_id="span-1",
            ),
        ],
        retry_count=1,
    )
    store.save_trace(trace)
    trace.steps[0].status = StepStatus.FAILED
    store.save_trace(trace)

    loaded = store.load_traces()
    assert len(loaded) == 1
    assert loaded[0].retry_count == 1
    assert loaded[0].steps[0].status == StepStatus.FAILED
    assert loaded[0].steps[0].span_id == "span-1"

    store.delete_trace("trace-1")
    assert store.load_traces() == []

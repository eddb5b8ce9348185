from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from autopilot.git import Git
from autopilot.models import (
    ActionStep,
    ActionTrace,
    PendingAction,
    ProcessorStatus,
    StepStatus,
)
from autopilot.provenance import ActionWriter, SpanWriter, enqueue_action
from autopilot.steps.orchestrator import StepOrchestrator
from autopilot.steps.types import (
    EnqueuedAction,
    MonitorContext,
    OrchestratorCallbacks,
    Step,
    StepConfig,
    StepContext,
    StepDependencies,
    StepResult,
    StepUpdate,
    TraceMutations,
    TraceUpdate,
)
from autopilot.storage.common import utc_now
from autopilot.store import AutopilotStore
from autopilot.traces import rebuild_traces

pytestmark = [
    allure.epic("Autopilot"),
    allure.feature("Step Orchestrator"),
]


class ForwardStep(Step):
    """Record calls and forward each entry to ``forward_to`` (``fan_out`` copies)."""

    def __init__(  # noqa: PLR0913
        self,
        action_type: str,
        *,
        forward_to: str | None = None,
        fan_out: int = 1,
        max_parallel: int = 5,
        dedup_by: str | None = None,
        delay: float = 0.0,
    ) -> None:
        self.config = StepConfig(
            action_type=action_type,
            max_parallel=max_parallel,
            dedup_by=dedup_by,  # type: ignore[arg-type]
        )
        self.forward_to = forward_to
        self.fan_out = fan_out
        self.delay = delay
        self.seen: list[str] = []
        self.traces_seen: list[ActionTrace] = []
        self.active = 0
        self.max_active = 0

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        self.seen.append(pending.action_id)
        self.traces_seen.append(ctx.trace)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1

        span = SpanWriter(ctx.store, step=self.config.action_type, parent=pending.span_id)
        enqueued: list[EnqueuedAction] = []
        actions = []
        if self.forward_to:
            writer = ActionWriter(ctx.store, span.id)
            actions = [writer.write(self.forward_to) for _ in range(self.fan_out)]
        span.complete(f"{self.config.action_type} done")
        for action in actions:
            enqueue_action(
                ctx.store,
                trace_id=pending.trace_id,
                action=action,
                summary=f"{action.action}: next",
                step=self.config.action_type,
            )
            enqueued.append(
                EnqueuedAction(action_id=action.id, action_type=action.action, summary="next"),
            )
        return StepResult(span_id=span.id, terminal=not enqueued, enqueued_actions=enqueued)


class FailingStep(Step):
    config = StepConfig(action_type="explode", max_parallel=3)

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        raise RuntimeError(f"boom {pending.summary}")


class WaitingStep(Step):
    config = StepConfig(action_type="wait", max_parallel=3)

    def __init__(self) -> None:
        self.calls = 0

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        self.calls += 1
        return StepResult.pending("not ready yet")


class RecordingCallbacks(OrchestratorCallbacks):
    def __init__(self) -> None:
        self.statuses: list[tuple[str, ProcessorStatus, int]] = []
        self.trace_updates = 0

    def on_traces_updated(self, traces: list[ActionTrace]) -> None:
        self.trace_updates += 1

    def on_status_changed(
        self,
        action_type: str,
        status: ProcessorStatus,
        processed_count: int,
    ) -> None:
        self.statuses.append((action_type, status, processed_count))


def _seed(
    store: AutopilotStore,
    action: str,
    *,
    trace_id: str = "trace-1",
    summary: str = "seed",
) -> PendingAction:
    root = SpanWriter(store, step="event", parent=None, summary="event")
    written = ActionWriter(store, root.id).write(action)
    root.complete("event")
    return enqueue_action(store, trace_id=trace_id, action=written, summary=summary, step="event")


def _orchestrator(
    store: AutopilotStore,
    make_deps: Callable[..., StepDependencies],
    *steps: Step,
    callbacks: OrchestratorCallbacks | None = None,
) -> StepOrchestrator:
    return StepOrchestrator(
        store=store,
        steps=list(steps),
        deps=make_deps(),
        callbacks=callbacks,
        fallback_interval_seconds=60,
    )


async def _start_and_stop(orchestrator: StepOrchestrator) -> None:
    await orchestrator.start()
    await orchestrator.stop()


def test_single_drain_cascades_through_every_hop(store, make_deps) -> None:
    coordinate = ForwardStep("coordinate", forward_to="plan")
    plan = ForwardStep("plan", forward_to="job", fan_out=3)
    job = ForwardStep("job", max_parallel=3)
    seeded = _seed(store, "coordinate")
    orchestrator = _orchestrator(store, make_deps, coordinate, plan, job)

    asyncio.run(orchestrator.drain())

    assert store.get_pending() == []
    assert len(job.seen) == 3
    (trace,) = orchestrator.traces()
    assert [step.action for step in trace.steps] == [
        "coordinate",
        "plan",
        "job",
        "job",
        "job",
    ]
    assert all(step.status == StepStatus.COMPLETED for step in trace.steps)
    assert trace.find_step(seeded.action_id).terminal is False
    assert all(step.terminal for step in trace.steps if step.action == "job")
    assert orchestrator.processed_count("job") == 3
    assert [stored.trace_id for stored in store.load_traces()] == ["trace-1"]


def test_pending_result_keeps_entry_queued(store, make_deps) -> None:
    waiting = WaitingStep()
    seeded = _seed(store, "wait")
    orchestrator = _orchestrator(store, make_deps, waiting)

    asyncio.run(orchestrator.drain())

    assert [entry.action_id for entry in store.get_pending()] == [seeded.action_id]
    (trace,) = orchestrator.traces()
    assert trace.find_step(seeded.action_id).status == StepStatus.PENDING
    assert orchestrator.processed_count("wait") == 0
    assert waiting.calls == 1

    asyncio.run(orchestrator.drain())
    assert waiting.calls == 2


def test_step_exception_removes_entry_and_fails_trace_step(store, make_deps) -> None:
    callbacks = RecordingCallbacks()
    healthy = ForwardStep("job")
    broken = _seed(store, "explode", trace_id="trace-1", summary="first")
    fine = _seed(store, "job", trace_id="trace-2")
    orchestrator = _orchestrator(store, make_deps, FailingStep(), healthy, callbacks=callbacks)

    asyncio.run(orchestrator.drain())

    assert store.get_pending() == []
    assert healthy.seen == [fine.action_id]
    traces = {trace.trace_id: trace for trace in orchestrator.traces()}
    failed = traces["trace-1"].find_step(broken.action_id)
    assert failed.status == StepStatus.FAILED
    assert failed.reasoning == "boom first"
    assert ("explode", ProcessorStatus.PROCESSING, 0) in callbacks.statuses
    assert ("explode", ProcessorStatus.ERROR, 0) in callbacks.statuses
    assert ("job", ProcessorStatus.IDLE, 1) in callbacks.statuses
    assert callbacks.trace_updates > 0


def test_dedup_by_trace_processes_oldest_and_drops_the_rest(store, make_deps) -> None:
    resolve = ForwardStep("resolve", max_parallel=3, dedup_by="trace_id")
    first = _seed(store, "resolve", trace_id="trace-1")
    duplicate = _seed(store, "resolve", trace_id="trace-1")
    other = _seed(store, "resolve", trace_id="trace-2")
    orchestrator = _orchestrator(store, make_deps, resolve)

    asyncio.run(_start_and_stop(orchestrator))

    assert resolve.seen == [first.action_id, other.action_id]
    assert store.get_pending() == []
    traces = {trace.trace_id: trace for trace in orchestrator.traces()}
    dropped = traces["trace-1"].find_step(duplicate.action_id)
    assert dropped.status == StepStatus.COMPLETED
    assert "Superseded" in (dropped.reasoning or "")
    assert orchestrator.processed_count("resolve") == 2


def test_max_parallel_bounds_a_single_drain_pass(store, make_deps) -> None:
    job = ForwardStep("job", max_parallel=2, delay=0.01)
    seeded = [_seed(store, "job", trace_id=f"trace-{index}") for index in range(5)]
    orchestrator = _orchestrator(store, make_deps, job)

    asyncio.run(orchestrator.drain())

    assert job.seen == [entry.action_id for entry in seeded[:2]]
    assert job.max_active == 2
    assert len(store.get_pending()) == 3

    asyncio.run(orchestrator.drain())
    asyncio.run(orchestrator.drain())

    assert len(job.seen) == 5
    assert job.max_active == 2
    assert store.get_pending() == []


def test_unregistered_action_types_stay_queued(store, make_deps) -> None:
    seeded = _seed(store, "unknown")
    orchestrator = _orchestrator(store, make_deps, ForwardStep("job"))

    asyncio.run(orchestrator.drain())

    assert [entry.action_id for entry in store.get_pending()] == [seeded.action_id]


def test_concurrent_drain_requests_coalesce_into_one_follow_up(store, make_deps) -> None:
    job = ForwardStep("job", delay=0.01)
    _seed(store, "job", trace_id="trace-1")
    orchestrator = _orchestrator(store, make_deps, job)

    async def scenario() -> None:
        first = asyncio.create_task(orchestrator.drain())
        await asyncio.sleep(0)
        _seed(store, "job", trace_id="trace-2")
        await orchestrator.drain()
        await orchestrator.drain()
        await first

    asyncio.run(scenario())

    assert len(job.seen) == 2
    assert store.get_pending() == []


def test_steps_receive_a_copy_of_their_trace(store, make_deps) -> None:
    job = ForwardStep("job")
    seeded = _seed(store, "job")
    orchestrator = _orchestrator(store, make_deps, job)

    asyncio.run(orchestrator.drain())

    (seen,) = job.traces_seen
    assert seen.find_step(seeded.action_id).status == StepStatus.RUNNING
    seen.steps.clear()
    (trace,) = orchestrator.traces()
    assert trace.find_step(seeded.action_id) is not None


class MonitoringStep(ForwardStep):
    def __init__(self) -> None:
        super().__init__("watch")
        self.monitor_calls = 0

    def monitor(self, ctx: MonitorContext) -> TraceMutations | None:
        self.monitor_calls += 1
        updates: list[TraceUpdate] = []
        for trace in ctx.traces:
            step = trace.find_step("action-external")
            if step is not None and step.status == StepStatus.RUNNING:
                updates.append(
                    TraceUpdate(
                        trace_id=trace.trace_id,
                        step_updates=[
                            StepUpdate(
                                action_id="action-external",
                                status=StepStatus.COMPLETED,
                                reasoning="finished outside",
                            ),
                        ],
                        new_steps=[
                            ActionStep(
                                action_id="action-follow-up",
                                action="commit",
                                status=StepStatus.PENDING,
                                timestamp=utc_now(),
                            ),
                        ],
                        retry_count=2,
                    ),
                )
        return TraceMutations(updates=updates) if updates else None


def test_tick_applies_monitor_mutations(store, make_deps) -> None:
    store.save_trace(
        ActionTrace(
            trace_id="trace-1",
            summary="external work",
            created_at=utc_now(),
            steps=[
                ActionStep(
                    action_id="action-external",
                    action="workflow",
                    status=StepStatus.RUNNING,
                    timestamp=utc_now(),
                ),
            ],
        ),
    )
    watcher = MonitoringStep()
    orchestrator = _orchestrator(store, make_deps, watcher)

    async def scenario() -> None:
        await orchestrator.start()
        await orchestrator.tick()
        await orchestrator.stop()

    asyncio.run(scenario())

    (trace,) = orchestrator.traces()
    assert trace.find_step("action-external").status == StepStatus.COMPLETED
    assert trace.find_step("action-follow-up").status == StepStatus.PENDING
    assert trace.retry_count == 2
    assert watcher.monitor_calls >= 2
    (persisted,) = store.load_traces()
    assert persisted.retry_count == 2


def test_start_rebuilds_traces_from_store(store, make_deps) -> None:
    seeded = _seed(store, "wait", summary="queued before restart")
    orchestrator = _orchestrator(store, make_deps, WaitingStep())

    asyncio.run(_start_and_stop(orchestrator))

    (trace,) = orchestrator.traces()
    assert trace.summary == "queued before restart"
    assert trace.find_step(seeded.action_id).status == StepStatus.PENDING
    assert store.get_pending()[0].action_id == seeded.action_id


def test_fallback_timer_ticks_until_stopped(store, make_deps) -> None:
    job = ForwardStep("job")
    orchestrator = StepOrchestrator(
        store=store,
        steps=[job],
        deps=make_deps(),
        fallback_interval_seconds=0.01,
    )

    async def scenario() -> None:
        await orchestrator.start()
        _seed(store, "job")
        for _ in range(100):
            if job.seen:
                break
            await asyncio.sleep(0.01)
        await orchestrator.stop()

    asyncio.run(scenario())

    assert len(job.seen) == 1
    assert store.get_pending() == []


def test_request_drain_schedules_background_drain(store, make_deps) -> None:
    job = ForwardStep("job")
    orchestrator = _orchestrator(store, make_deps, job)

    async def scenario() -> None:
        _seed(store, "job")
        orchestrator.request_drain()
        for _ in range(100):
            if job.seen:
                break
            await asyncio.sleep(0.01)

    asyncio.run(scenario())

    assert len(job.seen) == 1


def test_duplicate_action_types_are_rejected(store, make_deps) -> None:
    with pytest.raises(ValueError, match="Duplicate step"):
        _orchestrator(store, make_deps, ForwardStep("job"), ForwardStep("job"))


class BrokenMonitorStep(ForwardStep):
    def __init__(self) -> None:
        super().__init__("watch")

    def monitor(self, ctx: MonitorContext) -> TraceMutations | None:
        raise RuntimeError("corrupt task.json")


def test_raising_monitor_does_not_stop_the_drain(store, make_deps, caplog) -> None:
    job = ForwardStep("job")
    seeded = _seed(store, "job")
    orchestrator = _orchestrator(store, make_deps, BrokenMonitorStep(), job)

    with caplog.at_level(logging.ERROR, logger="autopilot.steps.orchestrator"):
        asyncio.run(orchestrator.drain())

    assert job.seen == [seeded.action_id]
    assert store.get_pending() == []
    assert "Monitor of step watch failed" in caplog.text


def test_replayed_entry_after_restart_keeps_a_single_trace_step(store, make_deps) -> None:
    job = ForwardStep("job")
    seeded = _seed(store, "job")
    asyncio.run(_orchestrator(store, make_deps, job).drain())
    assert store.get_pending() == []

    # crash between persisting the trace and removing the queue entry
    store.add_pending(seeded)
    recovered = rebuild_traces(store)
    replayed = recovered["trace-1"].find_step(seeded.action_id)
    assert replayed.status == StepStatus.PENDING

    restarted = _orchestrator(store, make_deps, job)
    asyncio.run(_start_and_stop(restarted))

    assert job.seen == [seeded.action_id, seeded.action_id]
    assert store.get_pending() == []
    (trace,) = restarted.traces()
    matching = [step for step in trace.steps if step.action_id == seeded.action_id]
    assert len(matching) == 1
    assert matching[0].status == StepStatus.COMPLETED
    (persisted,) = store.load_traces()
    assert [step.action_id for step in persisted.steps] == [seeded.action_id]


def test_trace_is_persisted_before_queue_entry_is_removed(store, make_deps, monkeypatch) -> None:
    job = ForwardStep("job")
    seeded = _seed(store, "job")
    orchestrator = _orchestrator(store, make_deps, job)
    persisted_at_removal: list[StepStatus] = []
    remove_pending = store.remove_pending

    def _remove(action_id: str) -> bool:
        (trace,) = store.load_traces()
        persisted_at_removal.append(trace.find_step(action_id).status)
        return remove_pending(action_id)

    monkeypatch.setattr(store, "remove_pending", _remove)
    asyncio.run(orchestrator.drain())

    assert persisted_at_removal == [StepStatus.COMPLETED]
    assert store.get_pending() == []
    assert job.seen == [seeded.action_id]


def test_status_transitions_are_logged_at_info(store, make_deps, caplog) -> None:
    _seed(store, "job")
    orchestrator = _orchestrator(store, make_deps, ForwardStep("job"))

    with caplog.at_level(logging.INFO, logger="autopilot.steps.orchestrator"):
        asyncio.run(orchestrator.drain())

    messages = [
        record.getMessage() for record in caplog.records if record.levelno == logging.INFO
    ]
    assert "Step job is processing" in messages
    assert "Step job is idle" in messages


class BranchStep(Step):
    config = StepConfig(action_type="branch")

    def __init__(self) -> None:
        self.branches: list[str] = []

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        self.branches.append(await ctx.git.current_branch())
        return StepResult(span_id=None, terminal=True)


class TimedStep(Step):
    config = StepConfig(action_type="timed")

    def __init__(self) -> None:
        self.elapsed: list[float] = []

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        started = time.monotonic()
        await asyncio.sleep(0.05)
        self.elapsed.append(time.monotonic() - started)
        return StepResult(span_id=None, terminal=True)


def test_slow_git_call_does_not_stall_other_steps(store, make_deps, tmp_path: Path) -> None:
    script = tmp_path / "slow-git"
    script.write_text("#!/bin/sh\nsleep 1\necho main\n", encoding="utf-8")
    script.chmod(0o755)
    deps = make_deps()
    deps.git = Git(tmp_path, executable=str(script), timeout_seconds=10)
    branch, timed = BranchStep(), TimedStep()
    _seed(store, "branch", trace_id="trace-1")
    _seed(store, "timed", trace_id="trace-2")
    orchestrator = StepOrchestrator(store=store, steps=[branch, timed], deps=deps)

    asyncio.run(orchestrator.drain())

    assert branch.branches == ["main"]
    (elapsed,) = timed.elapsed
    assert elapsed < 0.5
    assert store.get_pending() == []

"""Cooperative scheduler that drains the pending queue through registered steps."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass

from autopilot.models import ActionTrace, PendingAction, ProcessorStatus, StepStatus
from autopilot.steps.types import (
    MonitorContext,
    OrchestratorCallbacks,
    Step,
    StepContext,
    StepDependencies,
    StepResult,
)
from autopilot.store import AutopilotStore
from autopilot.traces import (
    apply_step_updates,
    apply_trace_update,
    get_or_create_step,
    get_or_create_trace,
    rebuild_traces,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _BatchItem:
    step: Step
    entry: PendingAction


class StepOrchestrator:
    """Route queued entries to steps, cascading until the queue is quiescent.

    Two triggers feed ``drain()``: explicit ``request_drain()`` calls after
    something was enqueued, and a fallback timer that runs monitors and
    drains every ``fallback_interval_seconds``. Concurrent drain requests
    coalesce into a single follow-up pass.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: AutopilotStore,
        steps: Iterable[Step],
        deps: StepDependencies,
        callbacks: OrchestratorCallbacks | None = None,
        fallback_interval_seconds: float = 30.0,
    ) -> None:
        self.store = store
        self.deps = deps
        self.callbacks = callbacks or OrchestratorCallbacks()
        self.fallback_interval_seconds = fallback_interval_seconds
        self._steps: dict[str, Step] = {}
        for step in steps:
            if step.config.action_type in self._steps:
                raise ValueError(f"Duplicate step for action type {step.config.action_type!r}")
            self._steps[step.config.action_type] = step
        self._traces: dict[str, ActionTrace] = {}
        self._in_flight: dict[str, set[str]] = defaultdict(set)
        self._processed: dict[str, int] = defaultdict(int)
        self._draining = False
        self._drain_requested = False
        self._timer_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()

    @property
    def action_types(self) -> list[str]:
        return list(self._steps)

    def traces(self) -> list[ActionTrace]:
        """Snapshot copies of all traces, oldest first."""

        ordered = sorted(self._traces.values(), key=lambda trace: trace.created_at)
        return [trace.copy() for trace in ordered]

    def processed_count(self, action_type: str) -> int:
        return self._processed[action_type]

    async def start(self) -> None:
        """Recover traces, drain once, then arm the fallback timer."""

        self._traces = rebuild_traces(self.store)
        self.callbacks.on_traces_updated(self.traces())
        await self.drain()
        if self._timer_task is None:
            self._timer_task = asyncio.create_task(self._fallback_loop())

    async def stop(self) -> None:
        """Cancel the fallback timer; in-flight step calls are left to finish."""

        timer, self._timer_task = self._timer_task, None
        if timer is None:
            return
        timer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await timer

    async def tick(self) -> None:
        self._run_monitors()
        await self.drain()

    def request_drain(self) -> None:
        """Schedule an immediate drain on the running loop."""

        task = asyncio.get_running_loop().create_task(self.drain())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        if self._draining:
            self._drain_requested = True
            return
        while True:
            self._draining = True
            try:
                await self._drain_until_quiescent()
            finally:
                self._draining = False
            if not self._drain_requested:
                return
            self._drain_requested = False

    async def _fallback_loop(self) -> None:
        while True:
            await asyncio.sleep(self.fallback_interval_seconds)
            try:
                await self.tick()
            except Exception:
                logger.exception("Autopilot tick failed")

    async def _drain_until_quiescent(self) -> None:
        had_enqueued_actions = True
        while had_enqueued_actions:
            had_enqueued_actions = False
            self._run_monitors()

            pending = self.store.get_pending()
            if not pending:
                return
            batch = self._build_batch(pending)
            if not batch:
                return

            affected: list[str] = []
            for item in batch:
                action_type = item.step.config.action_type
                self._in_flight[action_type].add(item.entry.action_id)
                if action_type not in affected:
                    affected.append(action_type)
            for action_type in affected:
                self._emit_status(action_type, ProcessorStatus.PROCESSING)
            logger.debug("Dispatching %d queued entries: %s", len(batch), ", ".join(affected))

            outcomes = await asyncio.gather(
                *(self._process_one(item) for item in batch),
                return_exceptions=True,
            )

            failed_types: set[str] = set()
            for item, outcome in zip(batch, outcomes, strict=True):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    failed_types.add(item.step.config.action_type)
                elif outcome.enqueued_actions:
                    had_enqueued_actions = True
            for action_type in affected:
                status = (
                    ProcessorStatus.ERROR if action_type in failed_types else ProcessorStatus.IDLE
                )
                self._emit_status(action_type, status)

    def _build_batch(self, pending: list[PendingAction]) -> list[_BatchItem]:
        grouped: dict[str, list[PendingAction]] = defaultdict(list)
        for entry in pending:
            grouped[entry.action].append(entry)

        batch: list[_BatchItem] = []
        for action_type, entries in grouped.items():
            step = self._steps.get(action_type)
            if step is None:
                continue
            in_flight = self._in_flight[action_type]
            eligible = [entry for entry in entries if entry.action_id not in in_flight]
            if step.config.dedup_by == "trace_id":
                eligible = self._dedup_by_trace(eligible)
            available = step.config.max_parallel - len(in_flight)
            if available <= 0:
                continue
            batch.extend(_BatchItem(step=step, entry=entry) for entry in eligible[:available])
        return batch

    def _dedup_by_trace(self, entries: list[PendingAction]) -> list[PendingAction]:
        """Keep the oldest entry per trace; the rest are dropped from the queue unprocessed."""

        seen: set[str] = set()
        kept: list[PendingAction] = []
        for entry in entries:
            if entry.trace_id in seen:
                self.store.remove_pending(entry.action_id)
                trace = self._traces.get(entry.trace_id)
                step = trace.find_step(entry.action_id) if trace is not None else None
                if trace is not None and step is not None:
                    step.status = StepStatus.COMPLETED
                    step.reasoning = "Superseded by an earlier queued entry of the same trace"
                    self._persist_trace(trace)
                logger.info("Dropped duplicate %s entry %s", entry.action, entry.action_id)
                continue
            seen.add(entry.trace_id)
            kept.append(entry)
        return kept

    async def _process_one(self, item: _BatchItem) -> StepResult:
        step, entry = item.step, item.entry
        action_type = step.config.action_type
        try:
            trace = get_or_create_trace(self._traces, entry)
            action_step = get_or_create_step(
                trace,
                action_id=entry.action_id,
                action=action_type,
                status=StepStatus.RUNNING,
            )
            action_step.status = StepStatus.RUNNING
            self._persist_trace(trace)

            ctx = StepContext(store=self.store, trace=trace.copy(), deps=self.deps)
            result = await step.process(entry, ctx)
            self._apply_result(trace, entry, result)
            return result
        except Exception as error:
            logger.exception("Step %s failed for action %s", action_type, entry.action_id)
            trace = self._traces.get(entry.trace_id)
            failed_step = trace.find_step(entry.action_id) if trace is not None else None
            if trace is not None and failed_step is not None:
                failed_step.status = StepStatus.FAILED
                failed_step.reasoning = str(error) or type(error).__name__
                self._persist_trace(trace)
            self.store.remove_pending(entry.action_id)
            raise
        finally:
            self._in_flight[action_type].discard(entry.action_id)

    def _apply_result(self, trace: ActionTrace, entry: PendingAction, result: StepResult) -> None:
        action_step = get_or_create_step(
            trace,
            action_id=entry.action_id,
            action=entry.action,
            status=StepStatus.RUNNING,
        )
        if result.is_pending:
            action_step.status = StepStatus.PENDING
            self._persist_trace(trace)
            return

        action_step.status = result.status or StepStatus.COMPLETED
        action_step.reasoning = result.reasoning
        if result.span_id:
            action_step.span_id = result.span_id
        if result.terminal:
            action_step.terminal = True

        for enqueued in result.enqueued_actions:
            get_or_create_step(
                trace,
                action_id=enqueued.action_id,
                action=enqueued.action_type,
                status=StepStatus.PENDING,
                reasoning=enqueued.summary,
            )

        if result.trace_mutations is not None:
            apply_step_updates(trace, result.trace_mutations.step_updates)
            if result.trace_mutations.retry_count is not None:
                trace.retry_count = result.trace_mutations.retry_count

        self._processed[entry.action] += 1
        self._persist_trace(trace)
        self.store.remove_pending(entry.action_id)

    def _run_monitors(self) -> None:
        for step in self._steps.values():
            ctx = MonitorContext(store=self.store, traces=self.traces(), deps=self.deps)
            try:
                mutations = step.monitor(ctx)
            except Exception:
                logger.exception("Monitor of step %s failed", step.config.action_type)
                continue
            if mutations is None:
                continue
            for update in mutations.updates:
                trace = self._traces.get(update.trace_id)
                if trace is None:
                    continue
                if apply_trace_update(trace, update):
                    self._persist_trace(trace)

    def _persist_trace(self, trace: ActionTrace) -> None:
        self.store.save_trace(trace)
        self.callbacks.on_traces_updated(self.traces())

    def _emit_status(self, action_type: str, status: ProcessorStatus) -> None:
        logger.info("Step %s is %s", action_type, status.value)
        self.callbacks.on_status_changed(action_type, status, self._processed[action_type])

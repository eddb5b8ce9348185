"""Controllers for autopilot CLI commands."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from autopilot.agent import CliReasoningAgent
from autopilot.config import Settings
from autopilot.events import EventIntake, ExternalEvent
from autopilot.git import Git
from autopilot.models import ActionTrace, ProcessorStatus
from autopilot.project import LocalProject
from autopilot.steps import StepOrchestrator, default_steps
from autopilot.steps.types import OrchestratorCallbacks, StepDependencies
from autopilot.store import AutopilotStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunCommand:
    """CLI input for the orchestrator loop."""

    db_path: Path | None
    project_path: Path | None
    once: bool


@dataclass(slots=True)
class EventCommand:
    """CLI input for ingesting one external event."""

    db_path: Path | None
    event_id: str
    event_type: str
    summary: str
    meta_json: str | None


@dataclass(slots=True)
class PendingCommand:
    db_path: Path | None


@dataclass(slots=True)
class TracesCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class SpanTraceCommand:
    db_path: Path | None
    span_id: str


@dataclass(slots=True)
class LogsCommand:
    db_path: Path | None
    limit: int


class _LoggingCallbacks(OrchestratorCallbacks):
    """Report processor state changes through process logging."""

    def on_status_changed(
        self,
        action_type: str,
        status: ProcessorStatus,
        processed_count: int,
    ) -> None:
        logger.info("Step %s is %s (processed=%d)", action_type, status.value, processed_count)


class AutopilotCliController:
    """Coordinates orchestrator runs, event intake and inspection commands."""

    def run(self, command: RunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, project_path=command.project_path)
        settings.validate()
        with _store(settings) as store:
            orchestrator = StepOrchestrator(
                store=store,
                steps=default_steps(),
                deps=_dependencies(settings),
                callbacks=_LoggingCallbacks(),
                fallback_interval_seconds=settings.autopilot.fallback_interval_seconds,
            )
            if command.once:
                asyncio.run(_run_once(orchestrator))
            else:
                try:
                    asyncio.run(_run_forever(orchestrator))
                except KeyboardInterrupt:
                    logger.info("Autopilot interrupted")
            traces = orchestrator.traces()
            pending = store.get_pending()

        processed = sum(orchestrator.processed_count(name) for name in orchestrator.action_types)
        return [
            "Autopilot summary: "
            f"processed={processed} pending={len(pending)} traces={len(traces)}",
        ]

    def ingest_event(self, command: EventCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        meta = _parse_meta(command.meta_json)
        with _store(settings) as store:
            trace_ids = EventIntake(store).ingest(
                [
                    ExternalEvent(
                        id=command.event_id,
                        type=command.event_type,
                        summary=command.summary,
                        meta=meta,
                    ),
                ],
            )
        if not trace_ids:
            return [f"Event {command.event_id} was already processed."]
        return [f"Event queued: event_id={command.event_id} trace_id={trace_ids[0]}"]

    def pending(self, command: PendingCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            entries = store.get_pending()
        if not entries:
            return ["Queue is empty."]
        return [
            f"{entry.created_at.isoformat()} {entry.action:<10} {entry.action_id} "
            f"trace={entry.trace_id} {entry.summary}"
            for entry in entries
        ]

    def traces(self, command: TracesCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            traces = sorted(store.load_traces(), key=lambda trace: trace.created_at)
        if not traces:
            return ["No traces."]
        lines: list[str] = []
        for trace in traces[-command.limit :]:
            lines.extend(_render_trace(trace))
        return lines

    def span_trace(self, command: SpanTraceCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            spans = store.get_span_trace(command.span_id)
        if not spans:
            raise ValueError(f"Span not found: {command.span_id}")
        return [
            f"{'  ' * depth}{span.step} [{span.status.value}] {span.id}: {span.summary}"
            for depth, span in enumerate(spans)
        ]

    def logs(self, command: LogsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            entries = store.read_logs(max_entries=command.limit)
        if not entries:
            return ["Log is empty."]
        return [
            f"{entry.ts.isoformat()} {entry.step}->{entry.action} trace={entry.trace_id} "
            f"{entry.summary}"
            for entry in entries
        ]


async def _run_once(orchestrator: StepOrchestrator) -> None:
    await orchestrator.start()
    try:
        await orchestrator.tick()
    finally:
        await orchestrator.stop()


async def _run_forever(orchestrator: StepOrchestrator) -> None:
    await orchestrator.start()
    try:
        await asyncio.Event().wait()
    finally:
        await orchestrator.stop()


def _render_trace(trace: ActionTrace) -> list[str]:
    header = f"{trace.trace_id} retries={trace.retry_count} {trace.summary}"
    steps = [
        f"  {step.action:<10} {step.status.value:<9} {step.reasoning or ''}".rstrip()
        for step in trace.steps
    ]
    return [header, *steps]


def _parse_meta(meta_json: str | None) -> dict[str, Any]:
    if not meta_json:
        return {}
    try:
        payload = json.loads(meta_json)
    except json.JSONDecodeError as error:
        raise ValueError(f"--meta-json is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ValueError("--meta-json must be a JSON object.")
    return payload


def _dependencies(settings: Settings) -> StepDependencies:
    project_path = settings.project_path.resolve()
    return StepDependencies(
        agent=CliReasoningAgent(
            command_template=settings.agent.command_template,
            timeout_seconds=settings.agent.timeout_seconds,
            default_model=settings.agent.model,
        ),
        git=Git(project_path, timeout_seconds=settings.autopilot.git_timeout_seconds),
        project=LocalProject(
            settings.data_dir,
            command_template=settings.runner.command_template,
        ),
        settings=settings,
        project_path=project_path,
    )


@contextmanager
def _store(settings: Settings) -> Iterator[AutopilotStore]:
    store = AutopilotStore(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        cursor_max_ids=settings.autopilot.cursor_max_ids,
        log_max_bytes=settings.autopilot.log_max_bytes,
        log_max_rotated=settings.autopilot.log_max_rotated,
    )
    store.init_schema()
    try:
        yield store
    finally:
        store.close()

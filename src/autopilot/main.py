"""CLI entrypoint for the autopilot engine."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from autopilot import __version__
from autopilot.controllers import (
    AutopilotCliController,
    EventCommand,
    LogsCommand,
    PendingCommand,
    RunCommand,
    SpanTraceCommand,
    TracesCommand,
)

click.rich_click.USE_MARKDOWN = True
CommandT = TypeVar("CommandT")
CONTROLLER = AutopilotCliController()


@click.group()
@click.version_option(version=__version__, prog_name="autopilot")
def autopilot() -> None:
    """Autopilot action orchestration engine."""


@autopilot.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--project-path",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Git repository the pilot works on.",
)
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run one monitor-and-drain tick, or keep running until interrupted.",
)
@click.option("--verbose", is_flag=True, default=False, help="Log progress to stderr.")
def run(db_path: Path | None, project_path: Path | None, once: bool, verbose: bool) -> None:
    """Start the orchestrator and process the pending queue."""

    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    _emit_lines(
        _call(
            CONTROLLER.run,
            RunCommand(db_path=db_path, project_path=project_path, once=once),
        ),
    )


@autopilot.command("event")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--id", "event_id", required=True, help="Unique event id from the producer.")
@click.option("--type", "event_type", required=True, help="Event type, for example issue.")
@click.option("--summary", required=True, help="One-line event summary.")
@click.option("--meta-json", default=None, help="Event metadata as a JSON object.")
def event(
    db_path: Path | None,
    event_id: str,
    event_type: str,
    summary: str,
    meta_json: str | None,
) -> None:
    """Ingest one external event and queue it for coordination."""

    _emit_lines(
        _call(
            CONTROLLER.ingest_event,
            EventCommand(
                db_path=db_path,
                event_id=event_id,
                event_type=event_type,
                summary=summary,
                meta_json=meta_json,
            ),
        ),
    )


@autopilot.command("pending")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def pending(db_path: Path | None) -> None:
    """List queued actions, oldest first."""

    _emit_lines(CONTROLLER.pending(PendingCommand(db_path=db_path)))


@autopilot.command("traces")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=20,
    show_default=True,
    help="Number of most recent traces.",
)
def traces(db_path: Path | None, limit: int) -> None:
    """Show traces with their step statuses."""

    _emit_lines(CONTROLLER.traces(TracesCommand(db_path=db_path, limit=limit)))


@autopilot.command("span-trace")
@click.argument("span_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def span_trace(span_id: str, db_path: Path | None) -> None:
    """Print the causal chain of a span, root first."""

    _emit_lines(_call(CONTROLLER.span_trace, SpanTraceCommand(db_path=db_path, span_id=span_id)))


@autopilot.command("logs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=50,
    show_default=True,
    help="Number of most recent log entries.",
)
def logs(db_path: Path | None, limit: int) -> None:
    """Print the audit log."""

    _emit_lines(CONTROLLER.logs(LogsCommand(db_path=db_path, limit=limit)))


def _call(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    autopilot()

"""Runtime configuration for the autopilot engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_ATTRIBUTION_TRAILER = "Co-authored-by: autopilot <autopilot@localhost>"
DEFAULT_AGENT_COMMAND_TEMPLATE = "claude -p {prompt} --output-format text"


@dataclass(slots=True)
class AutopilotSettings:
    """Scheduler, store retention and commit policy settings."""

    fallback_interval_seconds: float = 30.0
    cursor_max_ids: int = 200
    log_max_bytes: int = 5 * 1024 * 1024
    log_max_rotated: int = 3
    attribution: bool = True
    attribution_trailer: str = DEFAULT_ATTRIBUTION_TRAILER
    git_timeout_seconds: float = 300.0


@dataclass(slots=True)
class AgentSettings:
    """External reasoning agent CLI settings."""

    command_template: str = DEFAULT_AGENT_COMMAND_TEMPLATE
    timeout_seconds: int = 600
    model: str = ""


@dataclass(slots=True)
class RunnerSettings:
    """Project task runner settings."""

    command_template: str = ""
    max_running_tasks: int = 3


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".autopilot/autopilot.db")
    data_dir: Path = Path(".autopilot")
    project_path: Path = Path(".")
    sqlite_busy_timeout_ms: int = 5000
    autopilot: AutopilotSettings = field(default_factory=AutopilotSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    runner: RunnerSettings = field(default_factory=RunnerSettings)

    @classmethod
    def from_env(
        cls,
        db_path: Path | None = None,
        project_path: Path | None = None,
    ) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        data_dir = Path(os.getenv("AUTOPILOT_DATA_DIR", ".autopilot"))
        return cls(
            db_path=db_path
            or Path(os.getenv("AUTOPILOT_DB_PATH", str(data_dir / "autopilot.db"))),
            data_dir=data_dir,
            project_path=project_path or Path(os.getenv("AUTOPILOT_PROJECT_PATH", ".")),
            sqlite_busy_timeout_ms=int(os.getenv("AUTOPILOT_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            autopilot=AutopilotSettings(
                fallback_interval_seconds=float(
                    os.getenv("AUTOPILOT_FALLBACK_INTERVAL_SECONDS", "30"),
                ),
                cursor_max_ids=int(os.getenv("AUTOPILOT_CURSOR_MAX_IDS", "200")),
                log_max_bytes=int(os.getenv("AUTOPILOT_LOG_MAX_BYTES", str(5 * 1024 * 1024))),
                log_max_rotated=int(os.getenv("AUTOPILOT_LOG_MAX_ROTATED", "3")),
                attribution=_env_bool("AUTOPILOT_ATTRIBUTION", default=True),
                attribution_trailer=os.getenv(
                    "AUTOPILOT_ATTRIBUTION_TRAILER",
                    DEFAULT_ATTRIBUTION_TRAILER,
                ),
                git_timeout_seconds=float(os.getenv("AUTOPILOT_GIT_TIMEOUT_SECONDS", "300")),
            ),
            agent=AgentSettings(
                command_template=os.getenv(
                    "AUTOPILOT_AGENT_COMMAND_TEMPLATE",
                    DEFAULT_AGENT_COMMAND_TEMPLATE,
                ),
                timeout_seconds=int(os.getenv("AUTOPILOT_AGENT_TIMEOUT_SECONDS", "600")),
                model=os.getenv("AUTOPILOT_AGENT_MODEL", ""),
            ),
            runner=RunnerSettings(
                command_template=os.getenv("AUTOPILOT_TASK_COMMAND_TEMPLATE", ""),
                max_running_tasks=int(os.getenv("AUTOPILOT_MAX_RUNNING_TASKS", "3")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for non-positive limits or broken templates."""

        if self.autopilot.fallback_interval_seconds <= 0:
            raise ValueError("AUTOPILOT_FALLBACK_INTERVAL_SECONDS must be > 0.")
        if self.autopilot.cursor_max_ids <= 0:
            raise ValueError("AUTOPILOT_CURSOR_MAX_IDS must be > 0.")
        if self.autopilot.log_max_bytes <= 0:
            raise ValueError("AUTOPILOT_LOG_MAX_BYTES must be > 0.")
        if self.autopilot.log_max_rotated < 0:
            raise ValueError("AUTOPILOT_LOG_MAX_ROTATED must be >= 0.")
        if self.autopilot.git_timeout_seconds <= 0:
            raise ValueError("AUTOPILOT_GIT_TIMEOUT_SECONDS must be > 0.")
        if self.agent.timeout_seconds <= 0:
            raise ValueError("AUTOPILOT_AGENT_TIMEOUT_SECONDS must be > 0.")
        if self.runner.max_running_tasks <= 0:
            raise ValueError("AUTOPILOT_MAX_RUNNING_TASKS must be > 0.")
        if "{prompt}" not in self.agent.command_template:
            raise ValueError("AUTOPILOT_AGENT_COMMAND_TEMPLATE must include {prompt}.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")

"""Task/project collaborator used by the workflow and commit steps."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from autopilot.errors import TaskNotFoundError
from autopilot.storage.common import from_iso, utc_now

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    """Lifecycle of a project task."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Task(Protocol):
    id: int
    title: str
    description: str
    workflow: str
    status: TaskStatus
    error: str | None
    worktree_path: Path | None
    branch_name: str | None

    def iterations_path(self) -> Path: ...

    def refresh_status(self) -> TaskStatus: ...

    def set_workspace(self, worktree_path: Path, branch_name: str) -> None: ...

    def mark_failed(self, error: str) -> None: ...


class Project(Protocol):
    def get_task(self, task_id: int) -> Task: ...

    def list_tasks(self) -> list[Task]: ...

    def create_task(
        self,
        *,
        title: str,
        description: str,
        workflow: str,
        meta: dict[str, Any] | None = None,
    ) -> Task: ...

    def workspace_path(self, task_id: int) -> Path: ...

    def start_task(self, task: Task) -> None: ...


@dataclass(slots=True)
class LocalTask:
    """Task persisted as ``tasks/<id>/task.json`` under the project data dir."""

    id: int
    title: str
    description: str
    workflow: str
    task_dir: Path
    status: TaskStatus = TaskStatus.PENDING
    error: str | None = None
    worktree_path: Path | None = None
    branch_name: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    meta: dict[str, Any] = field(default_factory=dict)

    def iterations_path(self) -> Path:
        return self.task_dir / "iterations"

    def latest_iteration_dir(self) -> Path | None:
        numbers = _iteration_numbers(self.iterations_path())
        if not numbers:
            return None
        return self.iterations_path() / str(numbers[-1])

    def refresh_status(self) -> TaskStatus:
        """Pick up the exit code written by a finished run."""

        if self.status != TaskStatus.RUNNING:
            return self.status
        iteration_dir = self.latest_iteration_dir()
        if iteration_dir is None:
            return self.status
        exit_code_path = iteration_dir / "exit_code"
        if not exit_code_path.exists():
            return self.status
        raw = exit_code_path.read_text(encoding="utf-8").strip()
        if not raw:
            return self.status
        try:
            exit_code = int(raw)
        except ValueError:
            exit_code = 1
        if exit_code == 0:
            self.status = TaskStatus.COMPLETED
            self.error = None
        else:
            self.status = TaskStatus.FAILED
            self.error = f"Task run exited with code {exit_code}"
        self.save()
        return self.status

    def set_workspace(self, worktree_path: Path, branch_name: str) -> None:
        self.worktree_path = worktree_path
        self.branch_name = branch_name
        self.save()

    def mark_failed(self, error: str) -> None:
        self.status = TaskStatus.FAILED
        self.error = error
        self.save()

    def save(self) -> None:
        self.task_dir.mkdir(parents=True, exist_ok=True)
        payload = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "workflow": self.workflow,
            "status": self.status.value,
            "error": self.error,
            "worktree_path": str(self.worktree_path) if self.worktree_path else None,
            "branch_name": self.branch_name,
            "created_at": self.created_at.isoformat(),
            "meta": self.meta,
        }
        (self.task_dir / "task.json").write_text(
            json.dumps(payload, ensure_ascii=False, indent=2),
            encoding="utf-8",
        )

    @classmethod
    def load(cls, task_dir: Path) -> LocalTask:
        payload = json.loads((task_dir / "task.json").read_text(encoding="utf-8"))
        worktree = payload.get("worktree_path")
        return cls(
            id=int(payload["id"]),
            title=str(payload["title"]),
            description=str(payload.get("description", "")),
            workflow=str(payload.get("workflow", "")),
            task_dir=task_dir,
            status=TaskStatus(payload.get("status", TaskStatus.PENDING.value)),
            error=payload.get("error"),
            worktree_path=Path(worktree) if worktree else None,
            branch_name=payload.get("branch_name"),
            created_at=from_iso(str(payload["created_at"])),
            meta=dict(payload.get("meta") or {}),
        )


class LocalProject:
    """File-backed project: one directory per task, runs launched as detached shells.

    The task command template may reference ``{title}``, ``{description}``,
    ``{workflow}``, ``{worktree}``, ``{task_dir}`` and ``{iteration_dir}``.
    The run writes its exit code to ``iterations/<n>/exit_code``; a run may
    also leave a ``summary.md`` beside it.
    """

    def __init__(self, data_dir: Path, *, command_template: str = "") -> None:
        self.data_dir = data_dir
        self.tasks_dir = data_dir / "tasks"
        self.worktrees_dir = data_dir / "worktrees"
        self.command_template = command_template

    def list_tasks(self) -> list[LocalTask]:
        if not self.tasks_dir.exists():
            return []
        tasks = [
            LocalTask.load(path)
            for path in self.tasks_dir.iterdir()
            if (path / "task.json").exists()
        ]
        return sorted(tasks, key=lambda task: task.id)

    def get_task(self, task_id: int) -> LocalTask:
        task_dir = self.tasks_dir / str(task_id)
        if not (task_dir / "task.json").exists():
            raise TaskNotFoundError(f"Task {task_id} not found")
        return LocalTask.load(task_dir)

    def create_task(
        self,
        *,
        title: str,
        description: str,
        workflow: str,
        meta: dict[str, Any] | None = None,
    ) -> LocalTask:
        existing = [task.id for task in self.list_tasks()]
        task_id = max(existing, default=0) + 1
        task = LocalTask(
            id=task_id,
            title=title,
            description=description,
            workflow=workflow,
            task_dir=self.tasks_dir / str(task_id),
            meta=dict(meta or {}),
        )
        task.save()
        logger.info("Created task %s (%s): %s", task_id, workflow, title)
        return task

    def workspace_path(self, task_id: int) -> Path:
        return self.worktrees_dir / f"task-{task_id}"

    def start_task(self, task: LocalTask) -> None:
        """Launch one iteration of the task command in the background."""

        if not self.command_template.strip():
            task.mark_failed("Task command template is not configured")
            return

        iteration_no = len(_iteration_numbers(task.iterations_path())) + 1
        iteration_dir = task.iterations_path() / str(iteration_no)
        iteration_dir.mkdir(parents=True, exist_ok=True)
        cwd = task.worktree_path or self.data_dir
        rendered = self.command_template.format(
            title=shlex.quote(task.title),
            description=shlex.quote(task.description),
            workflow=shlex.quote(task.workflow),
            worktree=shlex.quote(str(cwd)),
            task_dir=shlex.quote(str(task.task_dir)),
            iteration_dir=shlex.quote(str(iteration_dir)),
        )
        exit_code_path = shlex.quote(str(iteration_dir / "exit_code"))
        script = f"{rendered}; echo $? > {exit_code_path}"
        env = os.environ.copy()
        env["AUTOPILOT_TASK_ID"] = str(task.id)
        env["AUTOPILOT_ITERATION_DIR"] = str(iteration_dir)

        with (iteration_dir / "output.log").open("w", encoding="utf-8") as output:
            subprocess.Popen(  # noqa: S603
                ["sh", "-c", script],  # noqa: S607
                cwd=cwd,
                env=env,
                stdout=output,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        task.status = TaskStatus.RUNNING
        task.error = None
        task.save()
        logger.info("Started task %s iteration %s", task.id, iteration_no)


def _iteration_numbers(iterations_path: Path) -> list[int]:
    if not iterations_path.exists():
        return []
    return sorted(int(path.name) for path in iterations_path.iterdir() if path.name.isdigit())


def read_iteration_summaries(task: Task) -> list[str]:
    """Collect ``summary.md`` texts from every iteration, oldest first."""

    summaries: list[str] = []
    for number in _iteration_numbers(task.iterations_path()):
        summary_path = task.iterations_path() / str(number) / "summary.md"
        if summary_path.exists():
            text = summary_path.read_text(encoding="utf-8").strip()
            if text:
                summaries.append(f"Iteration {number}:\n{text}")
    return summaries

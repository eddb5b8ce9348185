from __future__ import annotations

from pathlib import Path

import allure
import pytest

from autopilot.errors import TaskNotFoundError
from autopilot.project import LocalProject, TaskStatus, read_iteration_summaries

pytestmark = [
    allure.epic("Autopilot"),
    allure.feature("Project tasks"),
]


def _write_iteration(task, number: int, exit_code: str, summary: str | None = None) -> None:
    iteration_dir = task.iterations_path() / str(number)
    iteration_dir.mkdir(parents=True, exist_ok=True)
    (iteration_dir / "exit_code").write_text(exit_code, encoding="utf-8")
    if summary is not None:
        (iteration_dir / "summary.md").write_text(summary, encoding="utf-8")


def test_tasks_are_numbered_and_persisted(tmp_path: Path) -> None:
    project = LocalProject(tmp_path)

    first = project.create_task(title="Fix parser", description="d", workflow="swe")
    second = project.create_task(
        title="Write tests",
        description="d",
        workflow="swe",
        meta={"acceptance_criteria": ["green"]},
    )
    second.set_workspace(tmp_path / "worktrees" / "task-2", "autopilot/task-2")

    assert [task.id for task in project.list_tasks()] == [first.id, second.id] == [1, 2]
    loaded = project.get_task(2)
    assert loaded.meta == {"acceptance_criteria": ["green"]}
    assert loaded.branch_name == "autopilot/task-2"
    assert loaded.worktree_path == tmp_path / "worktrees" / "task-2"
    assert project.workspace_path(7) == tmp_path / "worktrees" / "task-7"
    with pytest.raises(TaskNotFoundError):
        project.get_task(99)


def test_start_without_command_template_fails_task(tmp_path: Path) -> None:
    project = LocalProject(tmp_path)
    task = project.create_task(title="Fix parser", description="d", workflow="swe")

    project.start_task(task)

    assert project.get_task(task.id).status == TaskStatus.FAILED
    assert project.get_task(task.id).error == "Task command template is not configured"


def test_start_launches_an_iteration(tmp_path: Path) -> None:
    project = LocalProject(tmp_path, command_template="true {title}")
    task = project.create_task(title="Fix parser", description="d", workflow="swe")

    project.start_task(task)

    assert task.status == TaskStatus.RUNNING
    assert (task.iterations_path() / "1" / "output.log").exists()
    assert project.get_task(task.id).status == TaskStatus.RUNNING


@pytest.mark.parametrize(
    ("exit_code", "status", "error"),
    [
        ("0", TaskStatus.COMPLETED, None),
        ("2", TaskStatus.FAILED, "Task run exited with code 2"),
        ("garbage", TaskStatus.FAILED, "Task run exited with code 1"),
    ],
)
def test_refresh_status_reads_exit_code(
    tmp_path: Path,
    exit_code: str,
    status: TaskStatus,
    error: str | None,
) -> None:
    project = LocalProject(tmp_path)
    task = project.create_task(title="Fix parser", description="d", workflow="swe")
    task.status = TaskStatus.RUNNING
    task.save()

    assert task.refresh_status() == TaskStatus.RUNNING
    _write_iteration(task, 1, exit_code)

    assert task.refresh_status() == status
    assert project.get_task(task.id).error == error


def test_iteration_summaries_are_collected_in_order(tmp_path: Path) -> None:
    project = LocalProject(tmp_path)
    task = project.create_task(title="Fix parser", description="d", workflow="swe")
    _write_iteration(task, 2, "0", "Fixed it")
    _write_iteration(task, 1, "1", "Tried once")
    _write_iteration(task, 3, "0", "   ")

    assert read_iteration_summaries(task) == ["Iteration 1:\nTried once", "Iteration 2:\nFixed it"]

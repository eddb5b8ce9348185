"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from fakes import FakeAgent, FakeGit, FakeProject

from autopilot.config import Settings
from autopilot.steps.types import StepDependencies
from autopilot.store import AutopilotStore


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[AutopilotStore]:
    repository = AutopilotStore(tmp_path / "autopilot.db")
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def git() -> FakeGit:
    return FakeGit()


@pytest.fixture()
def project(tmp_path: Path) -> FakeProject:
    return FakeProject(tmp_path / "project-data")


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "autopilot.db",
        data_dir=tmp_path / "project-data",
        project_path=tmp_path,
    )


@pytest.fixture()
def make_deps(
    git: FakeGit,
    project: FakeProject,
    settings: Settings,
    tmp_path: Path,
) -> Callable[..., StepDependencies]:
    """Build step dependencies around the fake collaborators and an optional agent."""

    def _make(agent: FakeAgent | None = None) -> StepDependencies:
        return StepDependencies(
            agent=agent or FakeAgent(),
            git=git,
            project=project,
            settings=settings,
            project_path=tmp_path,
        )

    return _make

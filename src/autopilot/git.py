"""Thin git capability used by the commit, workflow and push steps."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from pathlib import Path
from typing import Protocol

from autopilot.errors import GitCommandError

logger = logging.getLogger(__name__)


class GitClient(Protocol):
    """Git operations steps depend on."""

    async def current_branch(self, cwd: Path | None = None) -> str: ...

    async def recent_commits(self, count: int = 10, cwd: Path | None = None) -> list[str]: ...

    async def has_uncommitted_changes(self, cwd: Path | None = None) -> bool: ...

    async def add_and_commit(self, message: str, cwd: Path | None = None) -> None: ...

    async def commit_hash(self, cwd: Path | None = None) -> str: ...

    async def create_worktree(self, path: Path, branch: str, base: str | None = None) -> None: ...

    async def push(self, branch: str, cwd: Path | None = None) -> None: ...


class Git:
    """Run ``git`` as a subprocess against one repository.

    Calls never prompt for credentials and are killed after ``timeout_seconds``.
    """

    def __init__(
        self,
        repo_path: Path,
        *,
        executable: str = "git",
        timeout_seconds: float = 300.0,
    ) -> None:
        self.repo_path = repo_path
        self.executable = executable
        self.timeout_seconds = timeout_seconds

    async def current_branch(self, cwd: Path | None = None) -> str:
        return await self._run("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd)

    async def recent_commits(self, count: int = 10, cwd: Path | None = None) -> list[str]:
        output = await self._run("log", f"-{count}", "--pretty=format:%s", cwd=cwd)
        return [line for line in output.splitlines() if line.strip()]

    async def has_uncommitted_changes(self, cwd: Path | None = None) -> bool:
        return bool(await self._run("status", "--porcelain", cwd=cwd))

    async def add_and_commit(self, message: str, cwd: Path | None = None) -> None:
        await self._run("add", "-A", cwd=cwd)
        await self._run("commit", "-m", message, cwd=cwd)

    async def commit_hash(self, cwd: Path | None = None) -> str:
        return await self._run("rev-parse", "HEAD", cwd=cwd)

    async def create_worktree(self, path: Path, branch: str, base: str | None = None) -> None:
        args = ["worktree", "add", "-b", branch, str(path)]
        if base:
            args.append(base)
        await self._run(*args)

    async def push(self, branch: str, cwd: Path | None = None) -> None:
        await self._run("push", "-u", "origin", branch, cwd=cwd)

    async def _run(self, *args: str, cwd: Path | None = None) -> str:
        argv = [self.executable, *args]
        command = shlex.join(argv)
        logger.debug("Running %s", command)
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd or self.repo_path),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as error:
            raise GitCommandError(f"git failed to start: {error}", command=command) from error

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as error:
            process.kill()
            await process.wait()
            raise GitCommandError(
                f"git {args[0]} timed out after {self.timeout_seconds:g}s",
                command=command,
            ) from error

        if process.returncode != 0:
            raise GitCommandError(
                f"git {args[0]} failed with exit code {process.returncode}",
                exit_code=process.returncode,
                stderr=stderr.decode("utf-8", errors="replace").strip(),
                command=command,
            )
        return stdout.decode("utf-8", errors="replace").strip()

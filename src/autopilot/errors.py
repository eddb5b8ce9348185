"""Exception types raised across the autopilot engine."""

from __future__ import annotations


class AutopilotError(Exception):
    """Base class for engine errors."""


class SpanAlreadyFinalizedError(AutopilotError):
    """A span writer was asked to finalize twice."""


class PlanValidationError(AutopilotError):
    """Planner output failed validation (empty plan or unknown workflow)."""


class ResponseParseError(AutopilotError):
    """Reasoning agent output could not be parsed as JSON."""


class MissingTaskMappingError(AutopilotError):
    """No task mapping exists for the source action of a queue entry."""


class TaskNotFoundError(AutopilotError):
    """The project has no task with the requested id."""


class AgentRunError(AutopilotError):
    """Reasoning agent invocation failed."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class GitCommandError(AutopilotError):
    """A git invocation exited non-zero."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        stderr: str | None = None,
        command: str | None = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr
        self.command = command

    def to_meta(self) -> dict[str, object]:
        """Serializable failure details forwarded through action metadata."""

        return {
            "message": str(self),
            "exit_code": self.exit_code,
            "stderr": self.stderr,
            "command": self.command,
        }

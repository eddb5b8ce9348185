"""Subprocess-based reasoning agent driven by a shell command template."""

from __future__ import annotations

import asyncio
import logging
import shlex
from pathlib import Path

from autopilot.agent.base import InvokeOptions
from autopilot.errors import AgentRunError

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 400


class CliReasoningAgent:
    """Run an external agent CLI once per invocation and return its stdout.

    The template may reference ``{prompt}``, ``{system_prompt}``, ``{tools}``,
    ``{model}`` and ``{json}``; values are shell-quoted before rendering.
    """

    def __init__(
        self,
        *,
        command_template: str,
        timeout_seconds: int = 600,
        default_model: str = "",
    ) -> None:
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds
        self.default_model = default_model

    async def invoke(self, message: str, options: InvokeOptions | None = None) -> str:
        opts = options or InvokeOptions()
        argv = build_run_args(
            command_template=self.command_template,
            prompt=message,
            options=opts,
            default_model=self.default_model,
        )
        logger.debug("Invoking reasoning agent: %s", argv[0])
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(opts.cwd) if opts.cwd is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise AgentRunError(
                f"Agent command not found: {argv[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise AgentRunError(f"Agent failed to start: {error}", transient=True) from error

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as error:
            process.kill()
            await process.wait()
            raise AgentRunError(
                f"Agent timed out after {self.timeout_seconds}s",
                transient=True,
            ) from error

        if process.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace")[-_STDERR_TAIL_CHARS:].strip()
            raise AgentRunError(
                f"Agent exited with code {process.returncode}: {tail}",
                transient=False,
            )
        return stdout.decode("utf-8", errors="replace").strip()


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    options: InvokeOptions,
    default_model: str = "",
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise AgentRunError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped:
        raise AgentRunError("Agent command template must include {prompt}.", transient=False)

    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            system_prompt=shlex.quote(options.system_prompt or ""),
            tools=shlex.quote(",".join(options.tools)),
            model=shlex.quote(options.model or default_model),
            json="json" if options.json else "text",
        )
    except KeyError as error:
        raise AgentRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise AgentRunError("Agent command template rendered empty command.", transient=False)
    return argv


"""External command runner port and adapters.

Provides CommandPort (Protocol) and two implementations:

- ShellCommandRunner — runs a shell command with asyncio subprocesses
- MockCommandRunner — test double with canned results

A runner never raises for an unsuccessful command: a non-zero exit
and a command that could not be started both come back as a
:class:`CommandResult` whose ``failed`` is true.  Callers decide what
a failure means for them.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Captured outcome of one command execution.

    ``returncode`` is ``None`` when the command could not be started
    at all; ``stderr`` then holds the reason.
    """

    stdout: str = ""
    stderr: str = ""
    returncode: int | None = 0

    @property
    def failed(self) -> bool:
        """True for a non-zero exit or a command that never ran."""
        return self.returncode != 0

    def describe_failure(self) -> str:
        """Short human-readable reason for a failed result."""
        detail = self.stderr.strip()
        if self.returncode is None:
            return detail or "command could not be started"
        status = f"exit status {self.returncode}"
        return f"{status}: {detail}" if detail else status


@runtime_checkable
class CommandPort(Protocol):
    """Port contract for running external commands."""

    async def run(self, command: str) -> CommandResult: ...


class ShellCommandRunner:
    """Run commands through the system shell.

    No timeout is imposed here; a hanging command keeps its task
    pending until it exits.  If the awaiting task is cancelled the
    child process is killed and reaped.
    """

    async def run(self, command: str) -> CommandResult:
        """Execute *command* and capture its output."""
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.debug("Could not start %r: %s", command, exc)
            return CommandResult(stderr=str(exc), returncode=None)

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            raise

        return CommandResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            returncode=process.returncode,
        )


@dataclass
class MockCommandRunner:
    """In-memory test double for :class:`CommandPort`.

    Returns the result registered for a command via ``results`` /
    :meth:`set_result`, otherwise ``default`` (a successful empty
    run).  Every executed command is appended to ``calls``.
    """

    results: dict[str, CommandResult] = field(default_factory=dict)
    default: CommandResult = field(default_factory=CommandResult)
    calls: list[str] = field(default_factory=list)

    async def run(self, command: str) -> CommandResult:
        """Record *command* and return its canned result."""
        self.calls.append(command)
        return self.results.get(command, self.default)

    def set_result(
        self,
        command: str,
        stdout: str = "",
        *,
        stderr: str = "",
        returncode: int | None = 0,
    ) -> None:
        """Register the result returned for *command*."""
        self.results[command] = CommandResult(
            stdout=stdout,
            stderr=stderr,
            returncode=returncode,
        )

    def count(self, command: str) -> int:
        """How many times *command* was run."""
        return self.calls.count(command)

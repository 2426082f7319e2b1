"""Local process capability.

Thin wrapper over subprocesses so the executor, tunnel manager and cleanup
orchestrator can be tested with a fake runner.

- ``run`` executes a command to completion (asyncio subprocess)
- ``spawn`` starts a long-lived process in its own session and returns
  immediately; the caller owns the handle
"""

from __future__ import annotations

import asyncio
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from typing import Sequence

import structlog

logger = structlog.get_logger()

# Exit code reported when the executable cannot be found, as a shell does
COMMAND_NOT_FOUND = 127


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a finished command."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined output, stderr first when present."""
        return (self.stderr or self.stdout).strip()

    @property
    def command(self) -> str:
        return shlex.join(self.argv)


class ProcessRunner:
    """Runs local commands."""

    def __init__(self, *, debug: bool = False) -> None:
        self._debug = debug
        self._log = logger.bind(component="process")

    async def run(self, argv: Sequence[str], *, timeout: float | None = None) -> CommandResult:
        """Run a command to completion and capture its output.

        A missing executable yields return code 127 instead of an exception.
        On timeout or cancellation the child is killed before the error
        propagates.
        """
        argv = tuple(argv)
        self._log.debug("process.run", command=shlex.join(argv))

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return CommandResult(
                argv=argv,
                returncode=COMMAND_NOT_FOUND,
                stderr=f"{argv[0]}: command not found",
            )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            try:
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass
            raise

        result = CommandResult(
            argv=argv,
            returncode=process.returncode or 0,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        self._log.debug(
            "process.run.done",
            command=result.command,
            returncode=result.returncode,
        )
        return result

    def spawn(self, argv: Sequence[str]) -> subprocess.Popen:
        """Start a process in a new session without waiting for it.

        Output goes to the terminal in debug mode and is discarded otherwise.
        The new session keeps the process alive after this process exits if
        the caller chooses not to kill it.
        """
        argv = list(argv)
        self._log.debug("process.spawn", command=shlex.join(argv))

        output = None if self._debug else subprocess.DEVNULL
        return subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=output,
            stderr=output,
            start_new_session=True,
        )

    def which(self, binary: str) -> str | None:
        return shutil.which(binary)

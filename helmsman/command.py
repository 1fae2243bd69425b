"""Library for issuing commands using asyncio and returning the result.

Every call helmsman makes to `helm`, `kubectl` or a cloud CLI goes through a
`Command`. The low level `Command.exec` never raises on a non-zero exit and
returns an `ExitStatus` so that callers decide whether a failure is fatal,
while `run` and `run_piped` raise the command's exception for callers that
treat any failure as fatal.
"""

import asyncio
import logging
import os
import shlex
import shutil
import signal
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .exceptions import CommandException

_LOGGER = logging.getLogger(__name__)

_CONCURRENCY = 20
_SEM = asyncio.Semaphore(_CONCURRENCY)

# Delay before retry attempt `n` is 2**(_BACKOFF_BASE + n) seconds.
_BACKOFF_BASE = 2


__all__ = [
    "Command",
    "ExitStatus",
    "run",
    "run_piped",
    "tool_exists",
]


def format_path(path: Path) -> str:
    """Format path for debugging."""
    if path.is_absolute():
        cwd = Path.cwd()
        if path.is_relative_to(cwd):
            rel_path = str(path.relative_to(cwd))
            return f"{rel_path} (abs)"
    return str(path)


@dataclass(frozen=True)
class ExitStatus:
    """The outcome of a finished command."""

    code: int
    """Process exit code, 128 + signal number when killed by a signal."""

    stdout: str = ""
    """Captured standard output."""

    stderr: str = ""
    """Captured standard error, or the spawn error when the process never started."""

    @property
    def ok(self) -> bool:
        """Return True if the command exited successfully."""
        return self.code == 0


@dataclass
class Command:
    """An instance of a command to run."""

    cmd: list[str]
    """Array of command line arguments, empty arguments are dropped."""

    description: str = ""
    """Human readable summary printed in plans and logs."""

    cwd: Path | None = None
    """Current working directory."""

    exc: type[CommandException] = CommandException
    """Exception to throw in case of an error."""

    retcodes: list[int] | None = None
    """Non-zero error codes that are allowed to indicate success (e.g. for diff)."""

    env: dict[str, str] | None = None
    """Environment variables for the subprocess."""

    timeout: float | None = None
    """Seconds to wait for the command before giving up."""

    best_effort: bool = False
    """When part of a plan, a failure is logged and does not abort the run."""

    @property
    def args(self) -> list[str]:
        """Return the command line with empty arguments removed."""
        return [arg for arg in self.cmd if arg]

    @property
    def string(self) -> str:
        """Render the command as a single string."""
        return " ".join([shlex.quote(arg) for arg in self.args])

    def __str__(self) -> str:
        """Render as a debug string."""
        cwd: str = ""
        if self.cwd:
            cwd = f"({format_path(self.cwd)}) "
        return f"{cwd}{self.string}"

    def succeeded(self, result: ExitStatus) -> bool:
        """Return True if the exit status counts as a success for this command."""
        return result.ok or bool(self.retcodes and result.code in self.retcodes)

    def error_message(self, result: ExitStatus) -> str:
        """Build the error message for a failed exit status."""
        errors = [f"Command '{self}' failed with return code {result.code}"]
        if result.stdout:
            errors.append(result.stdout)
        if result.stderr:
            errors.append(result.stderr)
        return "\n".join(errors)

    async def exec(self, stdin: str | None = None) -> ExitStatus:
        """Run the command and return its exit status without raising."""
        args = self.args
        if not args:
            return ExitStatus(1, "", "Empty command")
        if self.description:
            _LOGGER.info(self.description)
        _LOGGER.debug("Running command: %s", self)
        env = {
            **os.environ,
            **(self.env if self.env else {}),
        }
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.cwd,
                env=env,
            )
        except OSError as err:
            _LOGGER.info("Unable to start command '%s': %s", self, err)
            return ExitStatus(1, "", str(err))
        try:
            out, err = await asyncio.wait_for(
                proc.communicate(stdin.encode("utf-8") if stdin is not None else None),
                self.timeout,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return ExitStatus(
                128 + signal.SIGKILL, "", f"Command '{self}' timed out"
            )
        code = proc.returncode or 0
        if code < 0:
            code = 128 - code
        return ExitStatus(
            code,
            out.decode("utf-8", errors="replace"),
            err.decode("utf-8", errors="replace"),
        )

    async def retry_exec(self, attempts: int) -> ExitStatus:
        """Run the command up to `attempts` times with an exponential back off."""
        attempts = max(attempts, 1)
        result = ExitStatus(1)
        for attempt in range(attempts):
            result = await self.exec()
            if result.ok:
                return result
            if attempt < attempts - 1:
                _LOGGER.info(
                    "Retrying %s due to error: %s",
                    self.description or self.string,
                    result.stderr.strip(),
                )
                await asyncio.sleep(2 ** (_BACKOFF_BASE + attempt))
        return ExitStatus(
            result.code,
            result.stdout,
            f"After {attempts} attempts of {self.description or self.string}, "
            f"it failed with: {result.stderr}",
        )

    async def run(self, stdin: str | None = None) -> str:
        """Run the command, returning stdout or raising on failure."""
        result = await self.exec(stdin)
        if not self.succeeded(result):
            message = self.error_message(result)
            _LOGGER.debug(message)
            raise self.exc(message)
        return result.stdout


async def _run_piped_with_sem(cmds: Sequence[Command]) -> str:
    """Run a set of commands, piped together, returning stdout of last."""
    stdin = None
    out = ""
    for cmd in cmds:
        out = await cmd.run(stdin)
        stdin = out
    return out


async def run_piped(cmds: Sequence[Command]) -> str:
    """Run a set of commands, piped together, returning stdout of last."""
    async with _SEM:
        result = await _run_piped_with_sem(cmds)
    return result


async def run(cmd: Command) -> str:
    """Run the specified command and return stdout."""
    return await run_piped([cmd])


def tool_exists(tool: str) -> bool:
    """Return True if the tool can be found on the PATH."""
    return shutil.which(tool) is not None

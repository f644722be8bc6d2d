"""Awaitable execution wrapper for the shp2pgsql/psql command-line tools.

This module runs external loader tools as subprocesses without blocking
the event loop. Commands are always given as argument lists and executed
directly, never through a shell, so identifiers and paths cannot be
reinterpreted as shell syntax. Every run is bounded by a timeout; a
process that outlives it is killed.

Non-zero exit codes raise CommandError carrying the command's stderr, a
timeout raises CommandTimeout, and a missing or non-executable program
raises ToolNotFound.

Example:
    Translate a shapefile into a SQL file:
        >>> from geoingest.utils import toolchain
        >>> await toolchain.run_command(
        ...     ["shp2pgsql", "-s", "4326", "-c", "parcels.shp",
        ...      "acme.parcels"],
        ...     timeout=600,
        ...     stdout_path=pathlib.Path("/tmp/job/parcels.sql"),
        ... )
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import shutil
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterable

logger = logging.getLogger(__name__)


class CommandError(RuntimeError):
    """Exception raised when a subprocess command fails.

    Contains the error message from the failed command's stderr output.
    """


class CommandTimeout(CommandError):
    """The command did not finish within its timeout and was killed."""


class ToolNotFound(CommandError):
    """The program could not be found or is not executable."""


@dataclasses.dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


def find_executable(program: str) -> str:
    """Resolve a program name or path to an executable path.

    Raises:
        ToolNotFound: if the program is not on PATH or not executable.
    """
    resolved = shutil.which(program)
    if resolved is None:
        raise ToolNotFound(f"{program}: not found or not executable")
    return resolved


def _kill(process: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        process.kill()


async def run_command(
    command: Iterable[str | pathlib.Path],
    *,
    timeout: float,
    workdir: pathlib.Path | None = None,
    stdout_path: pathlib.Path | None = None,
) -> CommandResult:
    """Execute a command and raise on non-zero exit.

    Args:
        command: Iterable arguments to execute (e.g., ["psql", "-f", ...]).
        timeout: Seconds the process may run before it is killed.
        workdir: Optional working directory for the command execution.
        stdout_path: When given, standard output is written to this file
            instead of being captured.

    Returns:
        CommandResult with the exit code and decoded output. ``stdout`` is
        empty when it was redirected to ``stdout_path``.

    Raises:
        ToolNotFound: if the program cannot be started.
        CommandTimeout: if the process exceeds ``timeout``.
        CommandError: if the command exits with a non-zero status code.
            The exception message contains the stderr output.
    """
    args = [str(part) for part in command]
    logger.debug("Running %s", args)

    with contextlib.ExitStack() as stack:
        stdout_target: int | object = asyncio.subprocess.PIPE
        if stdout_path is not None:
            stdout_target = stack.enter_context(stdout_path.open("wb"))
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=workdir,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=stdout_target,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise ToolNotFound(f"{args[0]}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=timeout,
            )
        except TimeoutError:
            _kill(process)
            await process.wait()
            raise CommandTimeout(
                f"{args[0]} did not finish within {timeout} seconds"
            ) from None
        except asyncio.CancelledError:
            _kill(process)
            await asyncio.shield(process.wait())
            raise

    result = CommandResult(
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=(stdout or b"").decode("utf-8", errors="replace"),
        stderr=(stderr or b"").decode("utf-8", errors="replace"),
    )
    if result.returncode != 0:
        raise CommandError(result.stderr.strip() or "Unknown command failure")
    return result

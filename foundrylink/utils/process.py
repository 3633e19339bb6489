"""Async subprocess execution with mandatory timeouts.

Every external invocation goes through `run_command`, which only blocks the
asyncio task awaiting it. A command that outlives its timeout is killed and
reported as `CommandTimeoutError`.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence, Tuple

from foundrylink.core.errors import CommandNotFoundError, CommandTimeoutError
from foundrylink.utils.log import get_logger


logger = get_logger()

KILL_WAIT_SECONDS = 2.0


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of a finished process."""

    args: Tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def error_text(self) -> str:
        """Best human-readable failure detail: stderr, then stdout."""
        return (self.stderr or self.stdout or "").strip()


CommandRunner = Callable[[Sequence[str], float], Awaitable[CommandResult]]


async def _kill_process(process: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError, PermissionError):
        process.kill()
    try:
        await asyncio.wait_for(process.wait(), timeout=KILL_WAIT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(
            "[process] Killed process did not exit in time",
            extra={"pid": process.pid},
        )


async def run_command(args: Sequence[str], timeout: float) -> CommandResult:
    """Run `args` to completion, capturing text output.

    Raises:
        CommandNotFoundError: the executable could not be spawned.
        CommandTimeoutError: the process did not finish within `timeout` seconds.
    """
    argv = tuple(str(arg) for arg in args)
    logger.debug("[process] Running command", extra={"args": list(argv), "timeout": timeout})
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
        )
    except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
        raise CommandNotFoundError(
            f"Could not run '{argv[0]}': {exc}",
            args=argv,
        ) from exc

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(), timeout=timeout
        )
    except asyncio.TimeoutError as exc:
        await _kill_process(process)
        raise CommandTimeoutError(
            f"'{' '.join(argv)}' timed out after {timeout:g}s",
            args=argv,
            timeout=timeout,
        ) from exc
    except asyncio.CancelledError:
        await _kill_process(process)
        raise

    result = CommandResult(
        args=argv,
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout_bytes.decode("utf-8", errors="replace"),
        stderr=stderr_bytes.decode("utf-8", errors="replace"),
    )
    logger.debug(
        "[process] Command finished",
        extra={"args": list(argv), "returncode": result.returncode},
    )
    return result


def describe_failure(result: CommandResult, fallback: Optional[str] = None) -> str:
    details = result.error_text()
    if details:
        return details
    return fallback or f"exit code {result.returncode}"


__all__ = ["CommandResult", "CommandRunner", "run_command", "describe_failure"]

"""
Async helpers for running the external OS tools the probers rely on.
"""
import asyncio
import contextlib
from dataclasses import dataclass
from typing import Sequence

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(args: Sequence[str], timeout: float) -> CommandResult:
    """Run a command without a shell and collect its output.

    Raises asyncio.TimeoutError when the command outlives `timeout` (the process
    is killed first) and FileNotFoundError when the binary does not exist.
    """
    process = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except (asyncio.TimeoutError, asyncio.CancelledError):
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        with contextlib.suppress(Exception):
            await process.wait()
        logger.debug("Command did not finish in time", command=args[0], timeout=timeout)
        raise
    return CommandResult(
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )

"""
Async subprocess execution used by the kubectl and docker clients.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

logger = logging.getLogger("shipline.shell")


@dataclass
class CommandResult:
    args: Sequence[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Stderr when present, otherwise stdout; used in error messages."""
        return (self.stderr or self.stdout).strip()


class CommandTimeout(Exception):
    def __init__(self, args: Sequence[str], timeout: float):
        self.args_ = list(args)
        self.timeout = timeout
        super().__init__(f"{' '.join(args)} timed out after {timeout:.0f}s")


async def run_command(
    args: Sequence[str],
    input: Optional[str] = None,
    timeout: Optional[float] = None,
) -> CommandResult:
    """
    Run a command and capture its output.

    Args:
        args: Program and arguments
        input: Text written to stdin
        timeout: Seconds before the process is killed

    Returns:
        CommandResult with decoded stdout/stderr

    Raises:
        CommandTimeout: If the command did not finish in time
        FileNotFoundError: If the program is not installed
    """
    logger.debug(f"Running {' '.join(args)}")
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.PIPE if input is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(input.encode() if input is not None else None),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise CommandTimeout(args, timeout or 0)
    return CommandResult(
        args=list(args),
        returncode=proc.returncode,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )

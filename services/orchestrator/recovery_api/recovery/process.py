"""
External command execution for recovery phases.

Installer, build and test commands run as subprocesses with a timeout. A
command that times out or whose awaiting task is cancelled is killed
before control returns, so no orphaned process outlives its phase.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Protocol, Sequence

from .errors import CommandExecutionError, CommandTimeoutError

logger = logging.getLogger(__name__)


class ProcessRunner(Protocol):
    """Runs a command in a working directory and returns its combined output."""

    async def run(
        self,
        command: Sequence[str],
        cwd: Path,
        timeout: Optional[float] = None,
    ) -> str:
        ...


class AsyncProcessRunner:
    """
    ProcessRunner backed by asyncio subprocesses.

    stderr is merged into stdout so failures surface the full diagnostic
    output. A non-zero exit raises CommandExecutionError; exceeding the
    timeout raises CommandTimeoutError.
    """

    def __init__(self, default_timeout: float = 300.0):
        self.default_timeout = default_timeout

    async def run(
        self,
        command: Sequence[str],
        cwd: Path,
        timeout: Optional[float] = None,
    ) -> str:
        command = list(command)
        timeout = timeout if timeout is not None else self.default_timeout
        logger.debug(f"Running {' '.join(command)} in {cwd}")

        proc = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(proc)
            logger.warning(f"Command timed out after {timeout}s: {' '.join(command)}")
            raise CommandTimeoutError(command, timeout)
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        output = stdout.decode("utf-8", errors="replace") if stdout else ""
        if proc.returncode != 0:
            logger.debug(f"Command output:\n{output}")
            raise CommandExecutionError(command, proc.returncode, output)
        return output

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()

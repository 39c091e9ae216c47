"""
SANDLOOP Process Runner

Runs the generated script as a child process. Whatever the script
does, including failing to start, comes back as data: the model
judges exit codes, the controller never does.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, ConfigDict

SPAWN_FAILURE_EXIT_CODE = -1
TIMEOUT_EXIT_CODE = 124


class CommandResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    stdout: str = ""
    stderr: str = ""
    exit_code: int
    duration: float = 0.0
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class ProcessRunner:
    """Spawns a command, accumulates its output, resolves on exit."""

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout

    async def run(
        self,
        command: str,
        args: Sequence[str] = (),
        cwd: Path | str | None = None,
    ) -> CommandResult:
        logger.debug(f"[RUNNER] {command} {' '.join(args)} (cwd={cwd})")
        started = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=str(cwd) if cwd is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            logger.warning(f"[RUNNER] Failed to spawn {command}: {e}")
            return CommandResult(
                stderr=str(e) or e.__class__.__name__,
                exit_code=SPAWN_FAILURE_EXIT_CODE,
                duration=time.monotonic() - started,
            )

        stdout_buf = bytearray()
        stderr_buf = bytearray()
        collect = asyncio.gather(
            _drain(process.stdout, stdout_buf),
            _drain(process.stderr, stderr_buf),
            process.wait(),
        )

        timed_out = False
        try:
            await asyncio.wait_for(collect, timeout=self.timeout)
        except asyncio.TimeoutError:
            timed_out = True
            _kill(process)
            await process.wait()
        except asyncio.CancelledError:
            _kill(process)
            logger.info(f"[RUNNER] Cancelled, killed pid {process.pid}")
            raise

        stderr = _decode(stderr_buf)
        if timed_out:
            note = f"[sandloop] process timed out after {self.timeout}s and was killed"
            stderr = f"{stderr}\n{note}" if stderr else note

        result = CommandResult(
            stdout=_decode(stdout_buf),
            stderr=stderr,
            exit_code=TIMEOUT_EXIT_CODE if timed_out else (process.returncode or 0),
            duration=time.monotonic() - started,
            timed_out=timed_out,
        )
        logger.debug(
            f"[RUNNER] exit={result.exit_code} "
            f"stdout={len(result.stdout)}B stderr={len(result.stderr)}B "
            f"{result.duration:.2f}s"
        )
        return result


async def _drain(stream: asyncio.StreamReader | None, buffer: bytearray) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            return
        buffer.extend(chunk)


def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        pass


def _decode(payload: bytes | bytearray) -> str:
    return bytes(payload).decode("utf-8", errors="replace")

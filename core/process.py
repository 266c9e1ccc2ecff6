"""Child process helpers on top of asyncio subprocesses."""
import asyncio
import os
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from loguru import logger

READ_CHUNK = 65536


@dataclass
class ProcessResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


def _merged_env(env: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    if not env:
        return None
    return {**os.environ, **env}


async def run(
    cmd: List[str],
    cwd=None,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
) -> ProcessResult:
    """Run ``cmd`` to completion and capture its output.

    A command that cannot be spawned or that times out yields returncode -1
    instead of raising.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd else None,
            env=_merged_env(env),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        logger.error(f"Failed to start {cmd[0]}: {e}")
        return ProcessResult(-1, "", str(e))

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.error(f"Command timed out after {timeout}s: {' '.join(cmd)}")
        return ProcessResult(-1, "", "Command timed out")

    return ProcessResult(
        process.returncode,
        stdout.decode(errors="replace").strip() if stdout else "",
        stderr.decode(errors="replace").strip() if stderr else "",
    )


async def stream(
    cmd: List[str],
    on_line: Callable[[str], None],
    cwd=None,
    env: Optional[Dict[str, str]] = None,
) -> int:
    """Run ``cmd`` and hand every non-empty stdout/stderr line to ``on_line``.

    Output is read in chunks, so lines of any length are delivered whole.
    The child is killed and reaped if reading stops early. Returns the exit
    code.
    """
    logger.debug(f"Streaming: {' '.join(cmd)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd else None,
            env=_merged_env(env),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        logger.error(f"Failed to start {cmd[0]}: {e}")
        on_line(str(e))
        return -1

    def emit(raw: bytes) -> None:
        text = raw.decode(errors="replace").rstrip()
        if text:
            on_line(text)

    finished = False
    try:
        pending = b""
        while True:
            chunk = await process.stdout.read(READ_CHUNK)
            if not chunk:
                break
            *lines, pending = (pending + chunk).split(b"\n")
            for raw in lines:
                emit(raw)
        if pending:
            emit(pending)
        returncode = await process.wait()
        finished = True
        return returncode
    finally:
        if not finished:
            if process.returncode is None:
                process.kill()
            # the child is reaped even while the caller is being cancelled
            await asyncio.shield(process.wait())

"""Sequential execution of manifest hook commands."""

from __future__ import annotations

import asyncio
import os
import signal
from pathlib import Path
from typing import Iterable, List, Optional

import structlog

from deploy_agent.core.models import Command, CommandResult

logger = structlog.get_logger()


class CommandFailed(Exception):
    """A hook command exited non-zero or could not be run."""

    def __init__(self, message: str, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


def _decode(data: Optional[bytes]) -> str:
    return data.decode("utf-8", errors="replace") if data else ""


async def _drain(stream: asyncio.StreamReader, chunks: List[bytes]) -> None:
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            return
        chunks.append(chunk)


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    # The shell runs in its own session; kill its children too so pipes close.
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


async def run_command(command: Command, base_dir: Path, timeout: Optional[float] = None) -> str:
    """Run one shell command and return its stdout.

    Raises:
        CommandFailed: On non-zero exit, timeout or launch error
    """
    cwd = base_dir / command.cwd if command.cwd else base_dir

    try:
        proc = await asyncio.create_subprocess_shell(
            command.command,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as e:
        raise CommandFailed(f"Failed to start command: {e}", stderr=str(e)) from e

    stdout_chunks: List[bytes] = []
    stderr_chunks: List[bytes] = []

    try:
        await asyncio.wait_for(
            asyncio.gather(
                _drain(proc.stdout, stdout_chunks),
                _drain(proc.stderr, stderr_chunks),
                proc.wait(),
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        _kill_group(proc)
        await proc.wait()
        # Chunks read before the kill are kept; collect whatever is still buffered.
        stdout_chunks.append(await proc.stdout.read())
        stderr_chunks.append(await proc.stderr.read())
        message = f"Command timed out after {timeout}s"
        stderr_text = "\n".join(part for part in (_decode(b"".join(stderr_chunks)).rstrip(), message) if part)
        raise CommandFailed(message, _decode(b"".join(stdout_chunks)), stderr_text)

    stdout = b"".join(stdout_chunks)
    stderr = b"".join(stderr_chunks)
    if proc.returncode != 0:
        raise CommandFailed(
            f"Command failed with exit code {proc.returncode}",
            _decode(stdout),
            _decode(stderr),
        )
    return _decode(stdout)


async def run_commands(
    commands: Iterable[Command],
    base_dir: Path,
    timeout: Optional[float] = None,
) -> CommandResult:
    """Run commands in order, stopping at the first failure.

    The transcript records ``CWD:`` (when a cwd suffix is set), ``$ command``
    and ``> stdout`` for every command that ran, plus ``! stderr`` for the
    one that failed. Commands after a failure never run.
    """
    result = CommandResult()

    for command in commands:
        if command.cwd:
            result.lines.append(f"CWD: {command.cwd}")
        result.lines.append(f"$ {command.command}")

        try:
            stdout = await run_command(command, base_dir, timeout)
        except CommandFailed as e:
            logger.warning("Hook command failed", command=command.command, cwd=command.cwd, error=str(e))
            result.lines.append(f"> {e.stdout}")
            result.lines.append(f"! {e.stderr}")
            result.success = False
            return result

        logger.info("Hook command succeeded", command=command.command, cwd=command.cwd)
        result.lines.append(f"> {stdout}")

    return result


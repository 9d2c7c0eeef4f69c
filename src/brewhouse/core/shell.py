"""Asynchronous external command execution with timeout."""

from __future__ import annotations

import asyncio
import contextlib
import os
import time
from pathlib import Path
from typing import Mapping, Optional

from brewhouse.core.errors import CommandError, CommandTimeoutError
from brewhouse.core.logging import get_logger

log = get_logger(__name__)

ENV_OVERRIDES = {
    "LANG": "C",
    "NO_COLOR": "1",
}


async def run_capture(
    *cmd: str,
    timeout: Optional[int] = 30,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> tuple[str, str, int]:
    """Run a command asynchronously with optional timeout.

    Args:
        *cmd: Command and its arguments to run.
        timeout: Timeout in seconds.
        cwd: Working directory.
        env: Extra environment variables.

    Returns:
        A tuple of (stdout, stderr, returncode).

    Raises:
        CommandTimeoutError: If the command times out.
        CommandError: If the executable cannot be started.
    """
    start = time.perf_counter()
    command = " ".join(cmd)
    log.debug("command_start", command=command, timeout=timeout, cwd=str(cwd) if cwd else None)

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env={**os.environ, **ENV_OVERRIDES, **(env or {})},
        )
    except (FileNotFoundError, PermissionError) as e:
        log.error("command_not_started", command=command, error=str(e))
        raise CommandError(f"Cannot run {cmd[0]}", command=command, error=str(e)) from e

    try:
        out, err = await asyncio.wait_for(process.communicate(), timeout)
    except asyncio.TimeoutError as e:
        elapsed = int((time.perf_counter() - start) * 1000)
        log.error("command_timeout", command=command, timeout=timeout, duration_ms=elapsed)
        await _reap(process)
        raise CommandTimeoutError(
            command=command, timeout=timeout, context={"duration_ms": elapsed}
        ) from e
    except asyncio.CancelledError:
        await asyncio.shield(_reap(process))
        raise

    log.info(
        "command_complete",
        command=command,
        returncode=process.returncode,
        duration_ms=int((time.perf_counter() - start) * 1000),
    )
    return _text(out), _text(err), process.returncode


def _text(data: bytes) -> str:
    return data.decode(errors="replace").strip()


async def _reap(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
    await process.wait()


async def run_checked(
    *cmd: str,
    timeout: Optional[int] = 30,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> str:
    """Run a command and fail on a non-zero exit code.

    Returns:
        The command's stdout.

    Raises:
        CommandError: If the command exits non-zero.
        CommandTimeoutError: If the command times out.
    """
    out, err, code = await run_capture(*cmd, timeout=timeout, cwd=cwd, env=env)
    if code != 0:
        command = " ".join(cmd)
        log.error("command_failed", command=command, returncode=code, error=err or out)
        raise CommandError(command=command, returncode=code, error=err or out)
    return out

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Awaitable, Callable, Dict, Optional, Sequence

from pipefix.errors import SandboxError
from pipefix.sandbox.provider import CommandResult

logger = logging.getLogger(__name__)

# Same exit code coreutils `timeout` uses.
TIMEOUT_EXIT_CODE = 124

ProcessRunner = Callable[..., Awaitable[CommandResult]]


async def _terminate(proc: "asyncio.subprocess.Process") -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        return
    await proc.wait()


async def run_process(
    argv: Sequence[str],
    *,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    timeout_s: Optional[float] = None,
) -> CommandResult:
    """
    Run one command to completion and capture its output.

    A command that cannot be launched raises SandboxError; a command that outlives
    `timeout_s` is killed and reported with exit code 124. Cancellation kills the child.
    """
    if not argv:
        raise SandboxError("empty command")
    started = time.monotonic()
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise SandboxError(f"command_launch_failed: {argv[0]}: {e}") from e

    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError:
        await _terminate(proc)
        logger.warning("command timed out after %.1fs: %s", float(timeout_s or 0), " ".join(argv))
        return CommandResult(
            exit_code=TIMEOUT_EXIT_CODE,
            stderr=f"timed out after {timeout_s}s",
            duration_s=round(time.monotonic() - started, 3),
            timed_out=True,
        )
    except BaseException:
        await _terminate(proc)
        raise

    return CommandResult(
        exit_code=int(proc.returncode if proc.returncode is not None else -1),
        stdout=out.decode("utf-8", errors="replace"),
        stderr=err.decode("utf-8", errors="replace"),
        duration_s=round(time.monotonic() - started, 3),
    )


def merged_env(overrides: Dict[str, str]) -> Dict[str, str]:
    env = dict(os.environ)
    env.update(overrides)
    return env

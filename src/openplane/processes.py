from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
from collections.abc import Mapping, Sequence

logger = logging.getLogger(__name__)

DEFAULT_STREAM_LIMIT = 8 * 1024 * 1024


def _group_kwargs() -> dict[str, object]:
    if os.name == "nt":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


async def spawn_process_group(
    argv: Sequence[str],
    *,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    stdin: int | None = asyncio.subprocess.PIPE,
    stdout: int | None = asyncio.subprocess.PIPE,
    stderr: int | None = asyncio.subprocess.PIPE,
    limit: int = DEFAULT_STREAM_LIMIT,
) -> asyncio.subprocess.Process:
    """Start ``argv`` as the leader of a new process group."""
    return await asyncio.create_subprocess_exec(
        *argv,
        env=dict(env) if env is not None else None,
        cwd=cwd,
        stdin=stdin,
        stdout=stdout,
        stderr=stderr,
        limit=limit,
        **_group_kwargs(),
    )


def signal_process_group(process: asyncio.subprocess.Process, sig: int) -> bool:
    if process.returncode is not None:
        return False
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, sig)
        else:
            process.send_signal(sig)
        return True
    except ProcessLookupError:
        return False


def kill_process_tree(process: asyncio.subprocess.Process) -> None:
    """Force-kill the process and everything in its group."""
    sent = signal_process_group(process, getattr(signal, "SIGKILL", signal.SIGTERM))
    if not sent and process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            return
    logger.debug("Killed process group pid=%s", process.pid)


async def kill_and_reap(process: asyncio.subprocess.Process, timeout: float = 5.0) -> int | None:
    kill_process_tree(process)
    try:
        return await asyncio.wait_for(process.wait(), timeout=timeout)
    except TimeoutError:
        logger.warning("Process pid=%s did not exit after kill", process.pid)
        return None

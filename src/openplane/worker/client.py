from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections.abc import Sequence
from dataclasses import replace
from pathlib import Path

from openplane.models import PlanStep
from openplane.processes import DEFAULT_STREAM_LIMIT, kill_and_reap, spawn_process_group
from openplane.sandbox.commands import ToolCommand
from openplane.sandbox.policy import PolicyViolationError
from openplane.worker.protocol import (
    ERROR_POLICY_VIOLATION,
    WorkerExecutionError,
    WorkerProtocolError,
    WorkerRequest,
    WorkerResponse,
    WorkerStartupConfig,
    decode_response,
    encode_line,
)

logger = logging.getLogger(__name__)


def default_worker_command(python: str | None = None) -> list[str]:
    return [python or sys.executable, "-m", "openplane.worker"]


class WorkerToolRunner:
    """Runs tool steps in a dedicated worker subprocess.

    A single lock keeps at most one request in flight. The worker is bound to
    one workspace and is replaced whenever a step targets another one.
    """

    def __init__(
        self,
        policies_path: Path,
        *,
        command: Sequence[str] | None = None,
        working_directory: Path | None = None,
        log_level: str = "WARNING",
        request_timeout_seconds: float = 120.0,
        stream_limit: int = DEFAULT_STREAM_LIMIT,
    ) -> None:
        self.policies_path = policies_path
        self.command = list(command) if command else default_worker_command()
        self.working_directory = working_directory
        self.log_level = log_level
        self.request_timeout_seconds = request_timeout_seconds
        self.stream_limit = stream_limit
        self._lock = asyncio.Lock()
        self._process: asyncio.subprocess.Process | None = None
        self._workspace_id: str | None = None

    @property
    def worker_pid(self) -> int | None:
        if self._process is None or self._process.returncode is not None:
            return None
        return self._process.pid

    @property
    def bound_workspace_id(self) -> str | None:
        return self._workspace_id

    async def run(self, step: PlanStep, command: ToolCommand, workspace_id: str) -> str:
        # The worker re-parses details, so send the canonical form.
        wire_step = replace(step, details=command.format())
        async with self._lock:
            try:
                await self._ensure_process(workspace_id)
                ping = await self._send(WorkerRequest.ping(workspace_id))
                if not ping.success:
                    raise WorkerExecutionError(
                        ping.error_message or "Worker ping failed.", error_code=ping.error_code
                    )
                response = await self._send(WorkerRequest.execute_step(workspace_id, wire_step))
            except (asyncio.CancelledError, WorkerProtocolError):
                await self._reset()
                raise

        if response.success:
            return response.output or ""
        if response.error_code == ERROR_POLICY_VIOLATION:
            raise PolicyViolationError(response.error_message or "Policy violation in worker.")
        raise WorkerExecutionError(
            response.error_message or "Worker step execution failed.",
            error_code=response.error_code,
        )

    async def close(self) -> None:
        async with self._lock:
            await self._reset()

    async def _ensure_process(self, workspace_id: str) -> None:
        process = self._process
        if (
            process is not None
            and process.returncode is None
            and self._workspace_id is not None
            and self._workspace_id.casefold() == workspace_id.casefold()
        ):
            return

        if process is not None:
            logger.info(
                "Replacing worker pid=%s (bound to %s) for workspace %s",
                process.pid,
                self._workspace_id,
                workspace_id,
            )
        await self._reset()

        startup = WorkerStartupConfig(
            workspace_id=workspace_id,
            policies_path=self.policies_path,
            working_directory=self.working_directory,
            log_level=self.log_level,
        )
        try:
            self._process = await spawn_process_group(
                [*self.command, *startup.to_argv()],
                env=os.environ.copy(),
                stderr=None,
                limit=self.stream_limit,
            )
        except OSError as exc:
            raise WorkerExecutionError(f"Failed to start worker process: {exc}") from exc
        self._workspace_id = workspace_id
        logger.info("Started worker pid=%s for workspace %s", self._process.pid, workspace_id)

    async def _send(self, request: WorkerRequest) -> WorkerResponse:
        process = self._process
        if process is None or process.stdin is None or process.stdout is None:
            raise WorkerExecutionError("Worker process streams are unavailable.")

        try:
            process.stdin.write(encode_line(request))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            await self._reset()
            raise WorkerExecutionError(f"Worker process is not accepting input: {exc}") from exc

        try:
            line = await asyncio.wait_for(
                process.stdout.readline(), timeout=self.request_timeout_seconds
            )
        except TimeoutError as exc:
            await self._reset()
            raise WorkerExecutionError(
                f"Worker did not respond within {self.request_timeout_seconds:.1f}s."
            ) from exc
        except ValueError as exc:
            raise WorkerProtocolError(f"Worker response exceeded the stream limit: {exc}") from exc

        response = decode_response(line)
        if response.request_id != request.request_id:
            raise WorkerProtocolError("Worker response ID mismatch.")
        return response

    async def _reset(self) -> None:
        process = self._process
        self._process = None
        self._workspace_id = None
        if process is None:
            return
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        if process.returncode is None:
            await kill_and_reap(process)

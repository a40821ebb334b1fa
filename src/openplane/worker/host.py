from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import BinaryIO

import click

from openplane.logging_utils import configure_logging
from openplane.sandbox.commands import ToolCommand, ToolCommandError
from openplane.sandbox.files import FileToolService
from openplane.sandbox.policy import PolicyViolationError
from openplane.state.stores import WorkspacePolicyStore
from openplane.worker.protocol import (
    ERROR_EXECUTION,
    ERROR_INVALID_REQUEST,
    ERROR_POLICY_VIOLATION,
    ERROR_UNHANDLED,
    WorkerProtocolError,
    WorkerRequest,
    WorkerRequestType,
    WorkerResponse,
    WorkerStartupConfig,
    decode_request,
    encode_line,
)

logger = logging.getLogger(__name__)


def _salvage_request_id(line: str | bytes) -> str:
    try:
        payload = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return ""
    if isinstance(payload, dict) and isinstance(payload.get("requestId"), str):
        return payload["requestId"]
    return ""


class WorkerHost:
    """Executes tool steps for one workspace, one request line at a time.

    The policy document is re-read for every step so that grant changes made
    by the orchestrator apply without restarting the worker.
    """

    def __init__(
        self,
        config: WorkerStartupConfig,
        tools: FileToolService | None = None,
    ) -> None:
        self.config = config
        self.policies = WorkspacePolicyStore.from_path(config.policies_path)
        self.tools = tools or FileToolService(base_directory=config.working_directory)

    def handle_line(self, line: str | bytes) -> WorkerResponse:
        try:
            request = decode_request(line)
        except WorkerProtocolError as exc:
            logger.warning("Rejected malformed request: %s", exc)
            return WorkerResponse.failure(
                _salvage_request_id(line), ERROR_INVALID_REQUEST, str(exc)
            )
        return self.handle(request)

    def handle(self, request: WorkerRequest) -> WorkerResponse:
        if request.workspace_id.casefold() != self.config.workspace_id.casefold():
            return WorkerResponse.failure(
                request.request_id,
                ERROR_INVALID_REQUEST,
                f"Workspace mismatch: worker is bound to '{self.config.workspace_id}' "
                f"but the request targets '{request.workspace_id}'.",
            )
        if request.type is WorkerRequestType.PING:
            return WorkerResponse.ok(request.request_id, f"pong:{self.config.workspace_id}")

        step = request.step
        if step is None:
            return WorkerResponse.failure(
                request.request_id, ERROR_INVALID_REQUEST, "ExecuteStep request is missing step."
            )
        try:
            command = ToolCommand.parse(step.details)
        except ToolCommandError as exc:
            return WorkerResponse.failure(request.request_id, ERROR_EXECUTION, str(exc))
        if command is None:
            return WorkerResponse.failure(
                request.request_id,
                ERROR_INVALID_REQUEST,
                f"Step '{step.title}' is not a tool step.",
            )

        try:
            policy = self.policies.get(self.config.workspace_id)
            output = self.tools.execute(command, policy)
        except PolicyViolationError as exc:
            return WorkerResponse.failure(request.request_id, ERROR_POLICY_VIOLATION, str(exc))
        except OSError as exc:
            return WorkerResponse.failure(request.request_id, ERROR_EXECUTION, str(exc))
        except Exception as exc:
            logger.exception("Unhandled error while executing step %s", step.id)
            return WorkerResponse.failure(
                request.request_id, ERROR_UNHANDLED, str(exc) or exc.__class__.__name__
            )

        logger.info("Executed %s for step %s", command.operation.value, step.id)
        return WorkerResponse.ok(request.request_id, output)

    def serve(self, stdin: BinaryIO, stdout: BinaryIO) -> int:
        logger.info("Worker bound to workspace %s", self.config.workspace_id)
        for raw_line in stdin:
            if not raw_line.strip():
                continue
            response = self.handle_line(raw_line)
            stdout.write(encode_line(response))
            stdout.flush()
        logger.info("Worker input closed; exiting")
        return 0


@click.command("worker", hidden=True)
@click.option("--workspace-id", required=True)
@click.option("--policies-path", required=True, type=click.Path(path_type=Path))
@click.option("--working-directory", default=None, type=click.Path(path_type=Path))
@click.option("--log-level", default="WARNING", show_default=True)
def worker_command(
    workspace_id: str,
    policies_path: Path,
    working_directory: Path | None,
    log_level: str,
) -> None:
    """Serve tool steps over stdin/stdout."""
    config = WorkerStartupConfig.from_options(
        workspace_id=workspace_id,
        policies_path=policies_path,
        working_directory=working_directory,
        log_level=log_level,
    )
    # stdout carries protocol lines only.
    configure_logging(config.log_level, None, also_console=True, stream=sys.stderr)
    host = WorkerHost(config)
    raise SystemExit(host.serve(sys.stdin.buffer, sys.stdout.buffer))

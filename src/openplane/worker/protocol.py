"""Wire format shared by the orchestrator and the worker process.

One JSON object per line in each direction, camelCase keys. A response always
echoes the id of the request it answers.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from openplane.models import PlanStep, format_timestamp, parse_timestamp, utcnow

ERROR_INVALID_REQUEST = "invalid_request"
ERROR_POLICY_VIOLATION = "policy_violation"
ERROR_EXECUTION = "execution_error"
ERROR_UNHANDLED = "unhandled_error"


class WorkerProtocolError(RuntimeError):
    """Raised for malformed or mismatched request/response lines."""


class WorkerExecutionError(RuntimeError):
    """Raised when the worker reports a non-policy failure."""

    def __init__(self, message: str, *, error_code: str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code


def _wire_timestamp(value: Any) -> datetime:
    try:
        return parse_timestamp(value)
    except ValueError:
        raise WorkerProtocolError(f"Invalid createdAtUtc: {value!r}") from None


class WorkerRequestType(str, Enum):
    PING = "Ping"
    EXECUTE_STEP = "ExecuteStep"


@dataclass(slots=True, frozen=True)
class WorkerRequest:
    request_id: str
    type: WorkerRequestType
    workspace_id: str
    step: PlanStep | None = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def ping(cls, workspace_id: str) -> WorkerRequest:
        return cls(uuid4().hex, WorkerRequestType.PING, workspace_id)

    @classmethod
    def execute_step(cls, workspace_id: str, step: PlanStep) -> WorkerRequest:
        return cls(uuid4().hex, WorkerRequestType.EXECUTE_STEP, workspace_id, step)

    def to_wire(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "type": self.type.value,
            "workspaceId": self.workspace_id,
            "step": self.step.to_wire() if self.step else None,
            "createdAtUtc": format_timestamp(self.created_at),
        }

    @classmethod
    def from_wire(cls, payload: Any) -> WorkerRequest:
        if not isinstance(payload, dict):
            raise WorkerProtocolError("Request must be a JSON object.")
        request_id = payload.get("requestId")
        if not isinstance(request_id, str) or not request_id.strip():
            raise WorkerProtocolError("Request is missing requestId.")
        try:
            request_type = WorkerRequestType(payload.get("type"))
        except ValueError:
            raise WorkerProtocolError(f"Unknown request type: {payload.get('type')!r}") from None
        workspace_id = payload.get("workspaceId")
        if not isinstance(workspace_id, str) or not workspace_id.strip():
            raise WorkerProtocolError("Request is missing workspaceId.")
        step_payload = payload.get("step")
        step = PlanStep.from_dict(step_payload) if isinstance(step_payload, dict) else None
        if request_type is WorkerRequestType.EXECUTE_STEP and step is None:
            raise WorkerProtocolError("ExecuteStep request is missing step.")
        return cls(
            request_id=request_id,
            type=request_type,
            workspace_id=workspace_id,
            step=step,
            created_at=_wire_timestamp(payload.get("createdAtUtc")),
        )


@dataclass(slots=True, frozen=True)
class WorkerResponse:
    request_id: str
    success: bool
    output: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def ok(cls, request_id: str, output: str) -> WorkerResponse:
        return cls(request_id, True, output=output)

    @classmethod
    def failure(cls, request_id: str, error_code: str, message: str) -> WorkerResponse:
        return cls(request_id, False, error_code=error_code, error_message=message)

    def to_wire(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "success": self.success,
            "output": self.output,
            "errorCode": self.error_code,
            "errorMessage": self.error_message,
            "createdAtUtc": format_timestamp(self.created_at),
        }

    @classmethod
    def from_wire(cls, payload: Any) -> WorkerResponse:
        if not isinstance(payload, dict):
            raise WorkerProtocolError("Worker response payload is invalid.")
        request_id = payload.get("requestId")
        if not isinstance(request_id, str):
            raise WorkerProtocolError("Worker response is missing requestId.")
        success = payload.get("success")
        if not isinstance(success, bool):
            raise WorkerProtocolError(f"Worker response has a non-boolean success: {success!r}")
        output = payload.get("output")
        return cls(
            request_id=request_id,
            success=success,
            output=output if isinstance(output, str) else None,
            error_code=payload.get("errorCode"),
            error_message=payload.get("errorMessage"),
            created_at=_wire_timestamp(payload.get("createdAtUtc")),
        )


def encode_line(message: WorkerRequest | WorkerResponse) -> bytes:
    # ensure_ascii keeps every payload on one line regardless of content.
    return (json.dumps(message.to_wire(), ensure_ascii=True) + "\n").encode("utf-8")


def decode_request(line: str | bytes) -> WorkerRequest:
    try:
        payload = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise WorkerProtocolError(f"Malformed request JSON: {exc}") from exc
    return WorkerRequest.from_wire(payload)


def decode_response(line: str | bytes) -> WorkerResponse:
    text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
    if not text.strip():
        raise WorkerProtocolError("Worker returned an empty response.")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise WorkerProtocolError("Worker response payload is invalid.") from exc
    return WorkerResponse.from_wire(payload)


@dataclass(slots=True, frozen=True)
class WorkerStartupConfig:
    """Everything a worker needs at spawn time, passed as command-line options."""

    workspace_id: str
    policies_path: Path
    working_directory: Path | None = None
    log_level: str = "WARNING"

    def to_argv(self) -> list[str]:
        argv = [
            "--workspace-id",
            self.workspace_id,
            "--policies-path",
            str(self.policies_path),
            "--log-level",
            self.log_level,
        ]
        if self.working_directory is not None:
            argv.extend(["--working-directory", str(self.working_directory)])
        return argv

    @classmethod
    def from_options(
        cls,
        *,
        workspace_id: str,
        policies_path: str | Path,
        working_directory: str | Path | None = None,
        log_level: str = "WARNING",
    ) -> WorkerStartupConfig:
        if not workspace_id.strip():
            raise ValueError("Worker workspace id cannot be empty.")
        return cls(
            workspace_id=workspace_id.strip(),
            policies_path=Path(policies_path),
            working_directory=Path(working_directory) if working_directory else None,
            log_level=log_level,
        )

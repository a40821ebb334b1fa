from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from openplane.paths import canonical_path, path_key


def utcnow() -> datetime:
    return datetime.now(UTC)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).isoformat()


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str) and value.strip():
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return utcnow()


def _optional_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    return parse_timestamp(value)


class RunStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class RunEventType(str, Enum):
    RUN_STARTED = "RunStarted"
    STEP_STARTED = "StepStarted"
    STEP_OUTPUT = "StepOutput"
    STEP_COMPLETED = "StepCompleted"
    POLICY_VIOLATION = "PolicyViolation"
    RUN_COMPLETED = "RunCompleted"
    RUN_FAILED = "RunFailed"
    RUN_CANCELLED = "RunCancelled"


class PlanRiskLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


@dataclass(slots=True, frozen=True)
class PathGrant:
    absolute_path: str
    allow_read: bool = False
    allow_write: bool = False
    allow_create: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "absolute_path": self.absolute_path,
            "allow_read": self.allow_read,
            "allow_write": self.allow_write,
            "allow_create": self.allow_create,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PathGrant:
        return cls(
            absolute_path=str(payload.get("absolute_path") or payload.get("absolutePath") or ""),
            allow_read=bool(payload.get("allow_read", payload.get("allowRead", False))),
            allow_write=bool(payload.get("allow_write", payload.get("allowWrite", False))),
            allow_create=bool(payload.get("allow_create", payload.get("allowCreate", False))),
        )


@dataclass(slots=True, frozen=True)
class NetworkAllowlist:
    allowed_hosts: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def of(cls, hosts: Any) -> NetworkAllowlist:
        return cls(
            frozenset(str(host).strip().casefold() for host in hosts or () if str(host).strip())
        )

    def allows(self, host: str) -> bool:
        return host.strip().casefold() in self.allowed_hosts


@dataclass(slots=True, frozen=True)
class WorkspacePolicy:
    workspace_id: str
    path_grants: tuple[PathGrant, ...] = ()
    network_allowlist: NetworkAllowlist = field(default_factory=NetworkAllowlist)

    @classmethod
    def empty(cls, workspace_id: str) -> WorkspacePolicy:
        return cls(workspace_id=workspace_id)

    def normalized(self) -> WorkspacePolicy:
        grants: list[PathGrant] = []
        seen: set[str] = set()
        for grant in self.path_grants:
            if not grant.absolute_path.strip():
                continue
            canonical = canonical_path(grant.absolute_path)
            key = path_key(canonical)
            if key in seen:
                continue
            seen.add(key)
            grants.append(replace(grant, absolute_path=canonical))
        return replace(
            self,
            path_grants=tuple(grants),
            network_allowlist=NetworkAllowlist.of(self.network_allowlist.allowed_hosts),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspace_id": self.workspace_id,
            "path_grants": [grant.to_dict() for grant in self.path_grants],
            "allowed_hosts": sorted(self.network_allowlist.allowed_hosts),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkspacePolicy:
        grants = payload.get("path_grants", [])
        return cls(
            workspace_id=str(payload.get("workspace_id") or ""),
            path_grants=tuple(
                PathGrant.from_dict(item) for item in grants if isinstance(item, dict)
            ),
            network_allowlist=NetworkAllowlist.of(payload.get("allowed_hosts", [])),
        )


@dataclass(slots=True, frozen=True)
class PlanStep:
    id: str
    title: str
    details: str = ""
    significant_action: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "details": self.details,
            "significant_action": self.significant_action,
        }

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "details": self.details,
            "significantAction": self.significant_action,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PlanStep:
        return cls(
            id=str(payload.get("id") or ""),
            title=str(payload.get("title") or ""),
            details=str(payload.get("details") or ""),
            significant_action=bool(
                payload.get("significant_action", payload.get("significantAction", False))
            ),
        )


@dataclass(slots=True, frozen=True)
class ExecutionPlan:
    plan_id: str
    prompt: str
    steps: tuple[PlanStep, ...]
    risk_level: PlanRiskLevel = PlanRiskLevel.MEDIUM
    created_at: datetime = field(default_factory=utcnow)
    is_approved: bool = False

    def approved(self) -> ExecutionPlan:
        return replace(self, is_approved=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "prompt": self.prompt,
            "steps": [step.to_dict() for step in self.steps],
            "risk_level": self.risk_level.value,
            "created_at": format_timestamp(self.created_at),
            "is_approved": self.is_approved,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ExecutionPlan:
        steps = payload.get("steps", [])
        try:
            risk = PlanRiskLevel(str(payload.get("risk_level") or PlanRiskLevel.MEDIUM.value))
        except ValueError:
            risk = PlanRiskLevel.MEDIUM
        return cls(
            plan_id=str(payload.get("plan_id") or ""),
            prompt=str(payload.get("prompt") or ""),
            steps=tuple(PlanStep.from_dict(item) for item in steps if isinstance(item, dict)),
            risk_level=risk,
            created_at=parse_timestamp(payload.get("created_at")),
            is_approved=bool(payload.get("is_approved", False)),
        )


@dataclass(slots=True, frozen=True)
class RunSession:
    run_id: str
    workspace_id: str
    plan_id: str
    status: RunStatus = RunStatus.PENDING
    next_step_index: int = 0
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    failure_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workspace_id": self.workspace_id,
            "plan_id": self.plan_id,
            "status": self.status.value,
            "next_step_index": self.next_step_index,
            "created_at": format_timestamp(self.created_at),
            "completed_at": format_timestamp(self.completed_at) if self.completed_at else None,
            "failure_reason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RunSession:
        return cls(
            run_id=str(payload.get("run_id") or ""),
            workspace_id=str(payload.get("workspace_id") or ""),
            plan_id=str(payload.get("plan_id") or ""),
            status=RunStatus(str(payload.get("status") or RunStatus.PENDING.value)),
            next_step_index=max(0, int(payload.get("next_step_index") or 0)),
            created_at=parse_timestamp(payload.get("created_at")),
            completed_at=_optional_timestamp(payload.get("completed_at")),
            failure_reason=payload.get("failure_reason"),
        )


@dataclass(slots=True, frozen=True)
class RunStepState:
    run_id: str
    step_id: str
    title: str
    status: RunStatus = RunStatus.PENDING
    output: str | None = None
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "step_id": self.step_id,
            "title": self.title,
            "status": self.status.value,
            "output": self.output,
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RunStepState:
        return cls(
            run_id=str(payload.get("run_id") or ""),
            step_id=str(payload.get("step_id") or ""),
            title=str(payload.get("title") or ""),
            status=RunStatus(str(payload.get("status") or RunStatus.PENDING.value)),
            output=payload.get("output"),
            updated_at=parse_timestamp(payload.get("updated_at")),
        )


@dataclass(slots=True, frozen=True)
class RunEvent:
    run_id: str
    event_type: RunEventType
    message: str
    created_at: datetime = field(default_factory=utcnow)
    step_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "event_type": self.event_type.value,
            "message": self.message,
            "created_at": format_timestamp(self.created_at),
            "step_id": self.step_id,
        }


@dataclass(slots=True, frozen=True)
class ConnectorDefinition:
    name: str
    command: str
    environment: dict[str, str] = field(default_factory=dict)
    allowed_scopes: tuple[str, ...] = ()

    def normalized(self) -> ConnectorDefinition:
        scopes: list[str] = []
        seen: set[str] = set()
        for scope in self.allowed_scopes:
            trimmed = str(scope).strip()
            if not trimmed or trimmed.casefold() in seen:
                continue
            seen.add(trimmed.casefold())
            scopes.append(trimmed)
        return replace(
            self,
            name=self.name.strip(),
            command=self.command.strip(),
            environment={str(key): str(value) for key, value in self.environment.items()},
            allowed_scopes=tuple(scopes),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "command": self.command,
            "environment": dict(self.environment),
            "allowed_scopes": list(self.allowed_scopes),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ConnectorDefinition:
        environment = payload.get("environment", {})
        scopes = payload.get("allowed_scopes", [])
        return cls(
            name=str(payload.get("name") or ""),
            command=str(payload.get("command") or ""),
            environment=dict(environment) if isinstance(environment, dict) else {},
            allowed_scopes=tuple(scopes) if isinstance(scopes, list) else (),
        )


@dataclass(slots=True, frozen=True)
class ConnectorStatus:
    name: str
    connected: bool
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "connected": self.connected, "last_error": self.last_error}

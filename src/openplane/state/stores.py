from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from openplane.models import (
    ConnectorDefinition,
    ExecutionPlan,
    RunSession,
    RunStatus,
    RunStepState,
    WorkspacePolicy,
)
from openplane.state.documents import JsonDocumentStore

PLANS_DOCUMENT = "plans"
RUN_SESSIONS_DOCUMENT = "run-sessions"
RUN_STEPS_DOCUMENT = "run-steps"
POLICIES_DOCUMENT = "workspace-policies"
CONNECTORS_DOCUMENT = "connectors"
MODEL_SELECTIONS_DOCUMENT = "model-selections"


def _as_dict(payload: Any) -> dict[str, Any]:
    return payload if isinstance(payload, dict) else {}


class PlanStore:
    """Latest plan per workspace."""

    def __init__(self, documents: JsonDocumentStore) -> None:
        self.documents = documents

    def save_latest(self, workspace_id: str, plan: ExecutionPlan) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = _as_dict(payload)
            result[workspace_id] = plan.to_dict()
            return result

        self.documents.update_json(PLANS_DOCUMENT, _updater)

    def get_latest(self, workspace_id: str) -> ExecutionPlan | None:
        entry = _as_dict(self.documents.get_json(PLANS_DOCUMENT)).get(workspace_id)
        if not isinstance(entry, dict):
            return None
        return ExecutionPlan.from_dict(entry)


class RunStateStore:
    def __init__(self, documents: JsonDocumentStore) -> None:
        self.documents = documents

    def save_session(self, session: RunSession) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = _as_dict(payload)
            result[session.run_id] = session.to_dict()
            return result

        self.documents.update_json(RUN_SESSIONS_DOCUMENT, _updater)

    def get_session(self, run_id: str) -> RunSession | None:
        entry = _as_dict(self.documents.get_json(RUN_SESSIONS_DOCUMENT)).get(run_id)
        if not isinstance(entry, dict):
            return None
        return RunSession.from_dict(entry)

    def list_sessions(self, status: RunStatus | None = None) -> list[RunSession]:
        sessions = [
            RunSession.from_dict(entry)
            for entry in _as_dict(self.documents.get_json(RUN_SESSIONS_DOCUMENT)).values()
            if isinstance(entry, dict)
        ]
        if status is None:
            return sessions
        return [session for session in sessions if session.status is status]

    def get_latest_session(self, workspace_id: str) -> RunSession | None:
        latest: RunSession | None = None
        for session in self.list_sessions():
            if session.workspace_id != workspace_id:
                continue
            # Later entries win ties on created_at.
            if latest is None or session.created_at >= latest.created_at:
                latest = session
        return latest

    def save_step_states(self, run_id: str, states: Iterable[RunStepState]) -> None:
        pending = list(states)

        def _updater(payload: Any) -> dict[str, Any]:
            result = _as_dict(payload)
            current = result.get(run_id)
            entries = current if isinstance(current, list) else []
            positions = {
                entry.get("step_id"): index
                for index, entry in enumerate(entries)
                if isinstance(entry, dict)
            }
            for state in pending:
                if state.step_id in positions:
                    entries[positions[state.step_id]] = state.to_dict()
                else:
                    positions[state.step_id] = len(entries)
                    entries.append(state.to_dict())
            result[run_id] = entries
            return result

        self.documents.update_json(RUN_STEPS_DOCUMENT, _updater)

    def get_step_states(self, run_id: str) -> list[RunStepState]:
        entries = _as_dict(self.documents.get_json(RUN_STEPS_DOCUMENT)).get(run_id)
        if not isinstance(entries, list):
            return []
        return [RunStepState.from_dict(entry) for entry in entries if isinstance(entry, dict)]


class WorkspacePolicyStore:
    def __init__(self, documents: JsonDocumentStore, document: str = POLICIES_DOCUMENT) -> None:
        self.documents = documents
        self.document = document

    @classmethod
    def from_path(cls, path: Path) -> WorkspacePolicyStore:
        """Open the policy document at an explicit file location."""
        return cls(JsonDocumentStore(path.parent), document=path.stem)

    @property
    def path(self) -> Path:
        return self.documents.path_for(self.document)

    def get(self, workspace_id: str) -> WorkspacePolicy:
        entry = _as_dict(self.documents.get_json(self.document)).get(workspace_id)
        if not isinstance(entry, dict):
            return WorkspacePolicy.empty(workspace_id)
        return replace(WorkspacePolicy.from_dict(entry), workspace_id=workspace_id).normalized()

    def save(self, policy: WorkspacePolicy) -> WorkspacePolicy:
        normalized = policy.normalized()

        def _updater(payload: Any) -> dict[str, Any]:
            result = _as_dict(payload)
            result[normalized.workspace_id] = normalized.to_dict()
            return result

        self.documents.update_json(self.document, _updater)
        return normalized

    def exists(self, workspace_id: str) -> bool:
        return workspace_id in _as_dict(self.documents.get_json(self.document))


class ConnectorRegistry:
    """Connector definitions keyed by case-insensitive name."""

    def __init__(self, documents: JsonDocumentStore) -> None:
        self.documents = documents

    def list(self) -> list[ConnectorDefinition]:
        definitions = [
            ConnectorDefinition.from_dict(entry)
            for entry in _as_dict(self.documents.get_json(CONNECTORS_DOCUMENT)).values()
            if isinstance(entry, dict)
        ]
        return sorted(definitions, key=lambda item: item.name.casefold())

    def get(self, name: str) -> ConnectorDefinition | None:
        entry = _as_dict(self.documents.get_json(CONNECTORS_DOCUMENT)).get(name.strip().casefold())
        if not isinstance(entry, dict):
            return None
        return ConnectorDefinition.from_dict(entry)

    def save(self, definition: ConnectorDefinition) -> ConnectorDefinition:
        normalized = definition.normalized()
        if not normalized.name:
            raise ValueError("Connector name cannot be empty.")
        if not normalized.command:
            raise ValueError("Connector command cannot be empty.")

        def _updater(payload: Any) -> dict[str, Any]:
            result = _as_dict(payload)
            result[normalized.name.casefold()] = normalized.to_dict()
            return result

        self.documents.update_json(CONNECTORS_DOCUMENT, _updater)
        return normalized

    def remove(self, name: str) -> bool:
        key = name.strip().casefold()
        removed = False

        def _updater(payload: Any) -> dict[str, Any]:
            nonlocal removed
            result = _as_dict(payload)
            removed = result.pop(key, None) is not None
            return result

        self.documents.update_json(CONNECTORS_DOCUMENT, _updater)
        return removed


class ModelSelectionStore:
    """Model id chosen per workspace for reasoning steps."""

    def __init__(self, documents: JsonDocumentStore) -> None:
        self.documents = documents

    def list(self) -> dict[str, str]:
        payload = _as_dict(self.documents.get_json(MODEL_SELECTIONS_DOCUMENT))
        return {key: value for key, value in sorted(payload.items()) if isinstance(value, str)}

    def get(self, workspace_id: str) -> str | None:
        value = self.list().get(workspace_id.strip().casefold())
        return value or None

    def set(self, workspace_id: str, model: str) -> str:
        key = workspace_id.strip().casefold()
        model = model.strip()
        if not key:
            raise ValueError("Workspace id cannot be empty.")
        if not model:
            raise ValueError("Model id cannot be empty.")

        def _updater(payload: Any) -> dict[str, Any]:
            result = _as_dict(payload)
            result[key] = model
            return result

        self.documents.update_json(MODEL_SELECTIONS_DOCUMENT, _updater)
        return model

    def clear(self, workspace_id: str) -> bool:
        key = workspace_id.strip().casefold()
        cleared = False

        def _updater(payload: Any) -> dict[str, Any]:
            nonlocal cleared
            result = _as_dict(payload)
            cleared = result.pop(key, None) is not None
            return result

        self.documents.update_json(MODEL_SELECTIONS_DOCUMENT, _updater)
        return cleared


@dataclass(slots=True)
class StateStores:
    documents: JsonDocumentStore
    plans: PlanStore
    runs: RunStateStore
    policies: WorkspacePolicyStore
    connectors: ConnectorRegistry
    models: ModelSelectionStore

    @classmethod
    def open(cls, state_dir: Path, *, lock_timeout_seconds: float = 3.0) -> StateStores:
        documents = JsonDocumentStore(state_dir, lock_timeout_seconds=lock_timeout_seconds)
        return cls(
            documents=documents,
            plans=PlanStore(documents),
            runs=RunStateStore(documents),
            policies=WorkspacePolicyStore(documents),
            connectors=ConnectorRegistry(documents),
            models=ModelSelectionStore(documents),
        )

import json
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

import pytest

from openplane.models import (
    ConnectorDefinition,
    ExecutionPlan,
    NetworkAllowlist,
    PathGrant,
    PlanRiskLevel,
    PlanStep,
    RunSession,
    RunStatus,
    RunStepState,
    WorkspacePolicy,
    utcnow,
)
from openplane.paths import canonical_path
from openplane.state import JsonDocumentStore, StateStoreError, StateStores, WorkspacePolicyStore


def test_set_json_wraps_payload_in_envelope(tmp_path: Path) -> None:
    store = JsonDocumentStore(tmp_path)
    store.set_json("context", {"goal": "ship"})

    on_disk = json.loads((tmp_path / "context.json").read_text(encoding="utf-8"))
    assert on_disk["schema_version"] == JsonDocumentStore.SCHEMA_VERSION
    assert on_disk["revision"] == 1
    assert on_disk["data"] == {"goal": "ship"}
    assert store.get_json("context") == {"goal": "ship"}
    assert not (tmp_path / ".lock").exists()


def test_legacy_payload_is_read_and_migrated(tmp_path: Path) -> None:
    (tmp_path / "context.json").write_text(json.dumps({"legacy": True}), encoding="utf-8")
    store = JsonDocumentStore(tmp_path)

    assert store.get_json("context") == {"legacy": True}
    assert store.get_envelope("context")["revision"] == 1

    store.set_json("context", {"legacy": False})
    on_disk = json.loads((tmp_path / "context.json").read_text(encoding="utf-8"))
    assert on_disk["data"] == {"legacy": False}
    assert on_disk["revision"] == 2


def test_update_json_increments_revision(tmp_path: Path) -> None:
    store = JsonDocumentStore(tmp_path)
    store.set_json("metrics", {"count": 1})
    first_revision = store.get_envelope("metrics")["revision"]

    store.update_json(
        "metrics", lambda payload: {"count": payload["count"] + 1}, default={"count": 0}
    )

    assert store.get_json("metrics")["count"] == 2
    assert store.get_envelope("metrics")["revision"] > first_revision


def test_unreadable_document_falls_back_to_default(tmp_path: Path) -> None:
    (tmp_path / "broken.json").write_text("{oops", encoding="utf-8")

    assert JsonDocumentStore(tmp_path).get_json("broken", default=[]) == []


def test_held_lock_times_out(tmp_path: Path) -> None:
    store = JsonDocumentStore(tmp_path, lock_timeout_seconds=0.05)
    (tmp_path / ".lock").write_text("999", encoding="utf-8")

    with pytest.raises(StateStoreError, match="Timed out waiting for state lock"):
        store.set_json("context", {})


def test_plan_store_keeps_latest_plan_per_workspace(tmp_path: Path) -> None:
    stores = StateStores.open(tmp_path)
    first = ExecutionPlan(
        plan_id="p1",
        prompt="one",
        steps=(PlanStep("s1", "Analyze request", "one"),),
        risk_level=PlanRiskLevel.LOW,
    )
    second = ExecutionPlan(plan_id="p2", prompt="two", steps=())

    stores.plans.save_latest("ws", first)
    stores.plans.save_latest("other", second)
    stores.plans.save_latest("ws", first.approved())

    latest = stores.plans.get_latest("ws")
    assert latest is not None
    assert latest.plan_id == "p1"
    assert latest.is_approved is True
    assert latest.risk_level is PlanRiskLevel.LOW
    assert latest.steps == first.steps
    assert stores.plans.get_latest("missing") is None


def test_latest_session_prefers_later_entry_on_ties(tmp_path: Path) -> None:
    runs = StateStores.open(tmp_path).runs
    stamp = utcnow()
    runs.save_session(RunSession("r-old", "ws", "p", created_at=stamp - timedelta(seconds=5)))
    runs.save_session(RunSession("r-a", "ws", "p", created_at=stamp))
    runs.save_session(RunSession("r-b", "ws", "p", created_at=stamp))
    runs.save_session(RunSession("r-other", "other", "p", created_at=stamp + timedelta(hours=1)))

    latest = runs.get_latest_session("ws")

    assert latest is not None
    assert latest.run_id == "r-b"
    assert runs.get_latest_session("nobody") is None


def test_list_sessions_filters_by_status(tmp_path: Path) -> None:
    runs = StateStores.open(tmp_path).runs
    runs.save_session(RunSession("r1", "ws", "p", status=RunStatus.RUNNING))
    runs.save_session(RunSession("r2", "ws", "p", status=RunStatus.COMPLETED))

    assert [s.run_id for s in runs.list_sessions(RunStatus.RUNNING)] == ["r1"]
    assert len(runs.list_sessions()) == 2


def test_step_states_upsert_in_plan_order(tmp_path: Path) -> None:
    runs = StateStores.open(tmp_path).runs
    runs.save_step_states(
        "r1",
        [RunStepState("r1", "s1", "First"), RunStepState("r1", "s2", "Second")],
    )
    runs.save_step_states(
        "r1", [RunStepState("r1", "s1", "First", status=RunStatus.COMPLETED, output="done")]
    )

    states = runs.get_step_states("r1")

    assert [state.step_id for state in states] == ["s1", "s2"]
    assert states[0].status is RunStatus.COMPLETED
    assert states[0].output == "done"
    assert states[1].status is RunStatus.PENDING
    assert runs.get_step_states("r2") == []


def test_policy_store_normalizes_and_defaults(tmp_path: Path) -> None:
    policies = StateStores.open(tmp_path / "state").policies
    workspace = tmp_path / "work"
    workspace.mkdir()

    assert policies.get("ws") == WorkspacePolicy.empty("ws")
    assert not policies.exists("ws")

    saved = policies.save(
        WorkspacePolicy(
            workspace_id="ws",
            path_grants=(
                PathGrant(f"{workspace}/", allow_read=True),
                PathGrant(str(workspace), allow_write=True),
            ),
            network_allowlist=NetworkAllowlist.of(["API.OpenAI.com"]),
        )
    )

    loaded = policies.get("ws")
    assert loaded == saved
    assert policies.exists("ws")
    assert loaded.path_grants == (PathGrant(canonical_path(workspace), allow_read=True),)
    assert loaded.network_allowlist.allows("api.openai.com")


def test_policy_store_from_path_reads_same_document(tmp_path: Path) -> None:
    stores = StateStores.open(tmp_path)
    stores.policies.save(
        WorkspacePolicy("ws", (PathGrant(str(tmp_path), allow_read=True),))
    )

    standalone = WorkspacePolicyStore.from_path(stores.policies.path)

    assert standalone.path == stores.policies.path
    assert standalone.get("ws") == stores.policies.get("ws")


def test_connector_registry_is_case_insensitive(tmp_path: Path) -> None:
    registry = StateStores.open(tmp_path).connectors
    registry.save(
        ConnectorDefinition(
            name=" GitHub ",
            command="  gh-mcp --stdio ",
            environment={"TOKEN": "x"},
            allowed_scopes=("repo", "REPO", " ", "issues"),
        )
    )
    registry.save(ConnectorDefinition(name="alpha", command="alpha-server"))

    loaded = registry.get("github")
    assert loaded is not None
    assert loaded.name == "GitHub"
    assert loaded.command == "gh-mcp --stdio"
    assert loaded.allowed_scopes == ("repo", "issues")
    assert [item.name for item in registry.list()] == ["alpha", "GitHub"]

    registry.save(replace(loaded, command="gh-mcp"))
    assert len(registry.list()) == 2
    assert registry.remove("GITHUB") is True
    assert registry.remove("github") is False
    assert registry.get("GitHub") is None


def test_connector_registry_rejects_blank_fields(tmp_path: Path) -> None:
    registry = StateStores.open(tmp_path).connectors

    with pytest.raises(ValueError, match="name cannot be empty"):
        registry.save(ConnectorDefinition(name=" ", command="x"))
    with pytest.raises(ValueError, match="command cannot be empty"):
        registry.save(ConnectorDefinition(name="x", command=" "))


def test_model_selections_are_per_workspace(tmp_path: Path) -> None:
    models = StateStores.open(tmp_path).models

    assert models.get("docs") is None
    assert models.set("Docs", " gpt-5 ") == "gpt-5"
    models.set("other", "gpt-5-mini")

    assert models.get("DOCS") == "gpt-5"
    assert models.list() == {"docs": "gpt-5", "other": "gpt-5-mini"}
    assert models.clear("docs") is True
    assert models.clear("docs") is False
    assert models.get("docs") is None
    with pytest.raises(ValueError, match="Model id cannot be empty"):
        models.set("docs", "  ")

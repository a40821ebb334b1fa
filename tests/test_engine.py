import asyncio
from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from openplane.backends import EchoBackend
from openplane.execution import LocalToolRunner, StepExecutor
from openplane.models import (
    ExecutionPlan,
    PathGrant,
    PlanStep,
    RunEvent,
    RunEventType,
    RunSession,
    RunStatus,
    WorkspacePolicy,
)
from openplane.planner import HeuristicPlanner
from openplane.runs import (
    RECOVERY_REASON,
    NoPlanAvailableError,
    NoPreviousRunError,
    PlanExecutionService,
    PlanNotApprovedError,
    RunAlreadyCompletedError,
)
from openplane.state import StateStores

WORKSPACE = "ws"


def _service(tmp_path: Path, executor=None) -> tuple[PlanExecutionService, StateStores]:
    stores = StateStores.open(tmp_path / "state")
    step_executor = executor or StepExecutor(
        tool_runner=LocalToolRunner(stores.policies),
        backend=EchoBackend(),
        policy_store=stores.policies,
    )
    service = PlanExecutionService(
        planner=HeuristicPlanner(),
        plan_store=stores.plans,
        run_store=stores.runs,
        step_executor=step_executor,
    )
    return service, stores


def _grant(stores: StateStores, root: Path, *, write: bool = True) -> None:
    stores.policies.save(
        WorkspacePolicy(
            WORKSPACE,
            (PathGrant(str(root), allow_read=True, allow_write=write, allow_create=True),),
        )
    )


async def _collect(events: AsyncIterator[RunEvent]) -> list[RunEvent]:
    return [event async for event in events]


def _types(events: list[RunEvent]) -> list[RunEventType]:
    return [event.event_type for event in events]


class RecordingExecutor:
    def __init__(self, cancel_after: int | None = None) -> None:
        self.cancel_event = asyncio.Event()
        self.cancel_after = cancel_after
        self.seen: list[str] = []

    async def execute_step(self, step: PlanStep, workspace_id: str) -> str:
        _ = workspace_id
        self.seen.append(step.title)
        if self.cancel_after is not None and len(self.seen) >= self.cancel_after:
            self.cancel_event.set()
        return f"did {step.title}"


class InterruptedExecutor:
    async def execute_step(self, step: PlanStep, workspace_id: str) -> str:
        _ = step, workspace_id
        raise asyncio.CancelledError()


def test_create_and_run_tool_plan(tmp_path: Path) -> None:
    workspace = tmp_path / "work"
    workspace.mkdir()
    service, stores = _service(tmp_path)
    _grant(stores, workspace)

    async def _run() -> list[RunEvent]:
        await service.create_plan(WORKSPACE, f"tool:create-file|{workspace}/notes.md|hello")
        await service.approve_latest_plan(WORKSPACE)
        return await _collect(service.execute_latest_approved_plan(WORKSPACE))

    events = asyncio.run(_run())

    assert _types(events) == [
        RunEventType.RUN_STARTED,
        *[
            RunEventType.STEP_STARTED,
            RunEventType.STEP_OUTPUT,
            RunEventType.STEP_COMPLETED,
        ]
        * 3,
        RunEventType.RUN_COMPLETED,
    ]
    assert events[0].message == "Run started from step 1."
    assert events[2].message == "Executed: Analyze request"
    assert events[5].message.startswith("Created file ")
    assert events[-1].message == "Run completed."
    assert (workspace / "notes.md").read_text(encoding="utf-8") == "hello"

    session = service.get_latest_run(WORKSPACE)
    assert session is not None
    assert session.status is RunStatus.COMPLETED
    assert session.next_step_index == 3
    assert session.completed_at is not None
    states = service.get_run_step_states(session.run_id)
    assert [state.status for state in states] == [RunStatus.COMPLETED] * 3


def test_unapproved_plan_yields_no_events(tmp_path: Path) -> None:
    service, _ = _service(tmp_path)
    seen: list[RunEvent] = []

    async def _run() -> None:
        await service.create_plan(WORKSPACE, "Summarize the docs")
        async for event in service.execute_latest_approved_plan(WORKSPACE):
            seen.append(event)

    with pytest.raises(PlanNotApprovedError):
        asyncio.run(_run())
    assert seen == []
    assert service.get_latest_run(WORKSPACE) is None


def test_missing_plan_is_reported(tmp_path: Path) -> None:
    service, _ = _service(tmp_path)

    with pytest.raises(NoPlanAvailableError):
        asyncio.run(_collect(service.execute_latest_approved_plan(WORKSPACE)))
    with pytest.raises(NoPlanAvailableError):
        asyncio.run(service.approve_latest_plan(WORKSPACE))


def test_policy_violation_fails_run_then_resume_completes(tmp_path: Path) -> None:
    workspace = tmp_path / "work"
    outside = tmp_path / "outside"
    workspace.mkdir()
    outside.mkdir()
    service, stores = _service(tmp_path)
    _grant(stores, workspace)

    async def _first() -> list[RunEvent]:
        await service.create_plan(WORKSPACE, f"tool:write|{outside}/x.txt|data")
        await service.approve_latest_plan(WORKSPACE)
        return await _collect(service.execute_latest_approved_plan(WORKSPACE))

    events = asyncio.run(_first())

    assert _types(events) == [
        RunEventType.RUN_STARTED,
        RunEventType.STEP_STARTED,
        RunEventType.STEP_OUTPUT,
        RunEventType.STEP_COMPLETED,
        RunEventType.STEP_STARTED,
        RunEventType.POLICY_VIOLATION,
        RunEventType.RUN_FAILED,
    ]
    assert events[5].message.startswith("Write denied by policy for path: ")
    assert events[6].message == "Run failed due to policy violation."
    failed = service.get_latest_run(WORKSPACE)
    assert failed is not None
    assert failed.status is RunStatus.FAILED
    assert failed.next_step_index == 1
    assert failed.failure_reason == events[5].message
    assert not (outside / "x.txt").exists()

    _grant(stores, tmp_path)
    resumed = asyncio.run(_collect(service.resume_latest_run(WORKSPACE)))

    assert resumed[0].message == "Run started from step 2."
    assert resumed[-1].event_type is RunEventType.RUN_COMPLETED
    assert (outside / "x.txt").read_text(encoding="utf-8") == "data"
    session = service.get_latest_run(WORKSPACE)
    assert session is not None
    assert session.run_id == failed.run_id
    assert session.status is RunStatus.COMPLETED
    assert session.failure_reason is None

    with pytest.raises(RunAlreadyCompletedError):
        asyncio.run(_collect(service.resume_latest_run(WORKSPACE)))


def test_resume_without_previous_run(tmp_path: Path) -> None:
    service, _ = _service(tmp_path)

    with pytest.raises(NoPreviousRunError):
        asyncio.run(_collect(service.resume_latest_run(WORKSPACE)))


def test_resume_refuses_when_plan_was_replaced(tmp_path: Path) -> None:
    service, stores = _service(tmp_path)
    _grant(stores, tmp_path / "nowhere")

    async def _run() -> None:
        await service.create_plan(WORKSPACE, f"tool:read|{tmp_path}/missing.txt")
        await service.approve_latest_plan(WORKSPACE)
        await _collect(service.execute_latest_approved_plan(WORKSPACE))
        await service.create_plan(WORKSPACE, "Something else entirely")

    asyncio.run(_run())

    with pytest.raises(NoPlanAvailableError, match="no longer the latest plan"):
        asyncio.run(_collect(service.resume_latest_run(WORKSPACE)))


def test_malformed_tool_step_fails_with_usage(tmp_path: Path) -> None:
    service, stores = _service(tmp_path)
    stores.plans.save_latest(
        WORKSPACE,
        ExecutionPlan(
            plan_id="p1",
            prompt="bad",
            steps=(PlanStep("s1", "Broken", "tool:explode|now", True),),
            is_approved=True,
        ),
    )

    events = asyncio.run(_collect(service.execute_latest_approved_plan(WORKSPACE)))

    assert _types(events) == [
        RunEventType.RUN_STARTED,
        RunEventType.STEP_STARTED,
        RunEventType.RUN_FAILED,
    ]
    assert "Unknown tool operation 'explode'" in events[-1].message
    states = service.get_run_step_states(events[0].run_id)
    assert states[0].status is RunStatus.FAILED


def test_cancel_event_stops_between_steps(tmp_path: Path) -> None:
    executor = RecordingExecutor(cancel_after=1)
    service, _ = _service(tmp_path, executor)

    async def _run() -> list[RunEvent]:
        await service.create_plan(WORKSPACE, "Write a haiku")
        await service.approve_latest_plan(WORKSPACE)
        return await _collect(
            service.execute_latest_approved_plan(WORKSPACE, cancel_event=executor.cancel_event)
        )

    events = asyncio.run(_run())

    assert executor.seen == ["Analyze request"]
    assert events[-1].event_type is RunEventType.RUN_CANCELLED
    assert events[-1].message == "Run cancelled before step 2."
    session = service.get_latest_run(WORKSPACE)
    assert session is not None
    assert session.status is RunStatus.CANCELLED
    assert session.next_step_index == 1

    executor.cancel_after = None
    executor.cancel_event.clear()
    resumed = asyncio.run(_collect(service.resume_latest_run(WORKSPACE)))

    assert resumed[0].message == "Run started from step 2."
    assert executor.seen == ["Analyze request", "Run assistant reasoning", "Validate and summarize"]


def test_task_cancellation_mid_step_is_persisted(tmp_path: Path) -> None:
    service, _ = _service(tmp_path, InterruptedExecutor())

    async def _run() -> None:
        await service.create_plan(WORKSPACE, "Write a haiku")
        await service.approve_latest_plan(WORKSPACE)
        await _collect(service.execute_latest_approved_plan(WORKSPACE))

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(_run())

    session = service.get_latest_run(WORKSPACE)
    assert session is not None
    assert session.status is RunStatus.CANCELLED
    assert session.next_step_index == 0
    states = service.get_run_step_states(session.run_id)
    assert states[0].status is RunStatus.CANCELLED
    assert states[1].status is RunStatus.PENDING


def test_recover_running_sessions_marks_them_failed(tmp_path: Path) -> None:
    service, stores = _service(tmp_path)
    stores.runs.save_session(RunSession("r1", WORKSPACE, "p1", status=RunStatus.RUNNING))
    stores.runs.save_session(RunSession("r2", WORKSPACE, "p1", status=RunStatus.COMPLETED))

    assert service.recover_running_sessions() == 1
    recovered = stores.runs.get_session("r1")
    assert recovered is not None
    assert recovered.status is RunStatus.FAILED
    assert recovered.failure_reason == RECOVERY_REASON
    assert stores.runs.get_session("r2").status is RunStatus.COMPLETED
    assert service.recover_running_sessions() == 0


class FlakyExecutor:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.fail_once = True

    async def execute_step(self, step: PlanStep, workspace_id: str) -> str:
        _ = workspace_id
        self.calls.append(step.title)
        if step.title == "Run assistant reasoning" and self.fail_once:
            self.fail_once = False
            raise RuntimeError("backend exploded")
        return "ok"


def test_execution_error_stops_run_and_resume_reruns_failed_step(tmp_path: Path) -> None:
    executor = FlakyExecutor()
    service, _ = _service(tmp_path, executor)

    async def _first() -> list[RunEvent]:
        await service.create_plan(WORKSPACE, "Write a haiku")
        await service.approve_latest_plan(WORKSPACE)
        return await _collect(service.execute_latest_approved_plan(WORKSPACE))

    events = asyncio.run(_first())

    assert events[-1].event_type is RunEventType.RUN_FAILED
    assert events[-1].message == "backend exploded"
    assert RunEventType.RUN_COMPLETED not in _types(events)
    assert executor.calls == ["Analyze request", "Run assistant reasoning"]
    failed = service.get_latest_run(WORKSPACE)
    assert failed is not None
    assert failed.status is RunStatus.FAILED
    assert failed.next_step_index == 1
    assert service.get_run_step_states(failed.run_id)[1].output == "backend exploded"

    resumed = asyncio.run(_collect(service.resume_latest_run(WORKSPACE)))

    assert resumed[-1].event_type is RunEventType.RUN_COMPLETED
    assert executor.calls[2:] == ["Run assistant reasoning", "Validate and summarize"]
    session = service.get_latest_run(WORKSPACE)
    assert session is not None
    assert session.status is RunStatus.COMPLETED
    assert session.next_step_index == 3

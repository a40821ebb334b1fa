from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from typing import Protocol
from uuid import uuid4

from openplane.models import (
    ExecutionPlan,
    PlanStep,
    RunEvent,
    RunEventType,
    RunSession,
    RunStatus,
    RunStepState,
)
from openplane.planner import Planner
from openplane.runs.transitions import (
    RunCancelled,
    RunCompleted,
    RunRecovered,
    RunStarted,
    StepFailed,
    StepStarted,
    StepSucceeded,
    Transition,
    apply_transition,
    pending_step_states,
)
from openplane.sandbox.policy import PolicyViolationError
from openplane.state.stores import PlanStore, RunStateStore

logger = logging.getLogger(__name__)


class PlanExecutionError(RuntimeError):
    """Base class for plan/run preconditions that fail before any event."""


class NoPlanAvailableError(PlanExecutionError):
    pass


class PlanNotApprovedError(PlanExecutionError):
    pass


class NoPreviousRunError(PlanExecutionError):
    pass


class RunAlreadyCompletedError(PlanExecutionError):
    pass


class StepExecutorLike(Protocol):
    async def execute_step(self, step: PlanStep, workspace_id: str) -> str: ...


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class PlanExecutionService:
    """Creates and approves plans, and runs them one step at a time.

    Every state change is persisted before the matching event is yielded, so
    the stores stay authoritative even when a consumer stops iterating.
    """

    def __init__(
        self,
        planner: Planner,
        plan_store: PlanStore,
        run_store: RunStateStore,
        step_executor: StepExecutorLike,
    ) -> None:
        self.planner = planner
        self.plan_store = plan_store
        self.run_store = run_store
        self.step_executor = step_executor

    async def create_plan(self, workspace_id: str, prompt: str) -> ExecutionPlan:
        plan = await self.planner.create_plan(prompt)
        self.plan_store.save_latest(workspace_id, plan)
        logger.info("Created plan %s for workspace %s", plan.plan_id, workspace_id)
        return plan

    def get_latest_plan(self, workspace_id: str) -> ExecutionPlan | None:
        return self.plan_store.get_latest(workspace_id)

    async def approve_latest_plan(self, workspace_id: str) -> ExecutionPlan:
        plan = self.plan_store.get_latest(workspace_id)
        if plan is None:
            raise NoPlanAvailableError(f"No plan is available for workspace '{workspace_id}'.")
        approved = plan.approved()
        self.plan_store.save_latest(workspace_id, approved)
        logger.info("Approved plan %s for workspace %s", approved.plan_id, workspace_id)
        return approved

    def get_latest_run(self, workspace_id: str) -> RunSession | None:
        return self.run_store.get_latest_session(workspace_id)

    def get_run_step_states(self, run_id: str) -> list[RunStepState]:
        return self.run_store.get_step_states(run_id)

    async def execute_latest_approved_plan(
        self,
        workspace_id: str,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[RunEvent]:
        plan = self.plan_store.get_latest(workspace_id)
        if plan is None:
            raise NoPlanAvailableError(f"No plan is available for workspace '{workspace_id}'.")
        if not plan.is_approved:
            raise PlanNotApprovedError(
                f"Plan {plan.plan_id} must be approved before it can be executed."
            )

        session = RunSession(run_id=uuid4().hex, workspace_id=workspace_id, plan_id=plan.plan_id)
        step_states = pending_step_states(session.run_id, plan.steps)
        self.run_store.save_session(session)
        self.run_store.save_step_states(session.run_id, step_states)
        logger.info("Starting run %s for plan %s", session.run_id, plan.plan_id)

        async for event in self._run_steps(session, plan, step_states, 0, cancel_event):
            yield event

    async def resume_latest_run(
        self,
        workspace_id: str,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[RunEvent]:
        session = self.run_store.get_latest_session(workspace_id)
        if session is None:
            raise NoPreviousRunError(f"No previous run exists for workspace '{workspace_id}'.")
        if session.status is RunStatus.COMPLETED:
            raise RunAlreadyCompletedError(f"Run {session.run_id} has already completed.")

        plan = self.plan_store.get_latest(workspace_id)
        if plan is None or plan.plan_id != session.plan_id:
            raise NoPlanAvailableError(
                f"The plan for run {session.run_id} is no longer the latest plan of "
                f"workspace '{workspace_id}'."
            )

        step_states = self._restore_step_states(session.run_id, plan.steps)
        logger.info("Resuming run %s at step %d", session.run_id, session.next_step_index + 1)
        async for event in self._run_steps(
            session, plan, step_states, session.next_step_index, cancel_event
        ):
            yield event

    def recover_running_sessions(self) -> int:
        recovered = 0
        for session in self.run_store.list_sessions(RunStatus.RUNNING):
            updated, _ = apply_transition(session, (), RunRecovered())
            self.run_store.save_session(updated)
            recovered += 1
            logger.warning("Marked interrupted run %s as failed", session.run_id)
        return recovered

    def _restore_step_states(
        self, run_id: str, steps: Sequence[PlanStep]
    ) -> tuple[RunStepState, ...]:
        persisted = {state.step_id: state for state in self.run_store.get_step_states(run_id)}
        rebuilt = pending_step_states(run_id, steps)
        restored = tuple(persisted.get(state.step_id, state) for state in rebuilt)
        if len(persisted) != len(steps):
            self.run_store.save_step_states(run_id, restored)
        return restored

    def _commit(
        self,
        session: RunSession,
        step_states: tuple[RunStepState, ...],
        transition: Transition,
    ) -> tuple[RunSession, tuple[RunStepState, ...]]:
        updated_session, updated_states = apply_transition(session, step_states, transition)
        step_id = getattr(transition, "step_id", None)
        if step_id is not None:
            changed = [state for state in updated_states if state.step_id == step_id]
            self.run_store.save_step_states(updated_session.run_id, changed)
        self.run_store.save_session(updated_session)
        return updated_session, updated_states

    async def _run_steps(
        self,
        session: RunSession,
        plan: ExecutionPlan,
        step_states: tuple[RunStepState, ...],
        start_index: int,
        cancel_event: asyncio.Event | None,
    ) -> AsyncIterator[RunEvent]:
        run_id = session.run_id
        session, step_states = self._commit(session, step_states, RunStarted())
        yield RunEvent(
            run_id, RunEventType.RUN_STARTED, f"Run started from step {start_index + 1}."
        )

        for index in range(start_index, len(plan.steps)):
            step = plan.steps[index]
            if cancel_event is not None and cancel_event.is_set():
                session, step_states = self._commit(
                    session, step_states, RunCancelled(next_step_index=index)
                )
                logger.info("Run %s cancelled before step %d", run_id, index + 1)
                yield RunEvent(
                    run_id, RunEventType.RUN_CANCELLED, f"Run cancelled before step {index + 1}."
                )
                return

            session, step_states = self._commit(session, step_states, StepStarted(step.id))
            yield RunEvent(run_id, RunEventType.STEP_STARTED, step.title, step_id=step.id)

            try:
                output = await self.step_executor.execute_step(step, session.workspace_id)
            except asyncio.CancelledError:
                self._commit(
                    session, step_states, RunCancelled(next_step_index=index, step_id=step.id)
                )
                raise
            except PolicyViolationError as exc:
                message = _error_message(exc)
                session, step_states = self._commit(
                    session, step_states, StepFailed(step.id, index, message)
                )
                logger.warning(
                    "Run %s stopped by policy at step %d: %s", run_id, index + 1, message
                )
                yield RunEvent(run_id, RunEventType.POLICY_VIOLATION, message, step_id=step.id)
                yield RunEvent(
                    run_id,
                    RunEventType.RUN_FAILED,
                    "Run failed due to policy violation.",
                    step_id=step.id,
                )
                return
            except Exception as exc:
                message = _error_message(exc)
                session, step_states = self._commit(
                    session, step_states, StepFailed(step.id, index, message)
                )
                logger.error("Run %s failed at step %d: %s", run_id, index + 1, message)
                yield RunEvent(run_id, RunEventType.RUN_FAILED, message, step_id=step.id)
                return

            session, step_states = self._commit(
                session, step_states, StepSucceeded(step.id, index, output)
            )
            yield RunEvent(run_id, RunEventType.STEP_OUTPUT, output, step_id=step.id)
            yield RunEvent(run_id, RunEventType.STEP_COMPLETED, step.title, step_id=step.id)

        session, step_states = self._commit(
            session, step_states, RunCompleted(step_count=len(plan.steps))
        )
        logger.info("Run %s completed", run_id)
        yield RunEvent(run_id, RunEventType.RUN_COMPLETED, "Run completed.")

"""Pure state transitions for run sessions and their step states.

``apply_transition`` never mutates its arguments; the engine persists whatever
it returns.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime

from openplane.models import PlanStep, RunSession, RunStatus, RunStepState, utcnow

RECOVERY_REASON = "Recovered after unexpected shutdown."


@dataclass(slots=True, frozen=True)
class RunStarted:
    at: datetime = field(default_factory=utcnow)


@dataclass(slots=True, frozen=True)
class StepStarted:
    step_id: str
    at: datetime = field(default_factory=utcnow)


@dataclass(slots=True, frozen=True)
class StepSucceeded:
    step_id: str
    index: int
    output: str
    at: datetime = field(default_factory=utcnow)


@dataclass(slots=True, frozen=True)
class StepFailed:
    step_id: str
    index: int
    message: str
    at: datetime = field(default_factory=utcnow)


@dataclass(slots=True, frozen=True)
class RunCompleted:
    step_count: int
    at: datetime = field(default_factory=utcnow)


@dataclass(slots=True, frozen=True)
class RunCancelled:
    next_step_index: int
    step_id: str | None = None
    at: datetime = field(default_factory=utcnow)


@dataclass(slots=True, frozen=True)
class RunRecovered:
    reason: str = RECOVERY_REASON
    at: datetime = field(default_factory=utcnow)


Transition = (
    RunStarted
    | StepStarted
    | StepSucceeded
    | StepFailed
    | RunCompleted
    | RunCancelled
    | RunRecovered
)


class InvalidTransitionError(ValueError):
    pass


def _update_step(
    step_states: Sequence[RunStepState],
    step_id: str,
    status: RunStatus,
    at: datetime,
    output: str | None = None,
    keep_output: bool = False,
) -> tuple[RunStepState, ...]:
    found = False
    updated: list[RunStepState] = []
    for state in step_states:
        if state.step_id == step_id:
            found = True
            state = replace(
                state,
                status=status,
                output=state.output if keep_output else output,
                updated_at=at,
            )
        updated.append(state)
    if not found:
        raise InvalidTransitionError(f"Unknown step id: {step_id}")
    return tuple(updated)


def apply_transition(
    session: RunSession,
    step_states: Sequence[RunStepState],
    transition: Transition,
) -> tuple[RunSession, tuple[RunStepState, ...]]:
    states = tuple(step_states)

    if isinstance(transition, RunStarted):
        return (
            replace(session, status=RunStatus.RUNNING, completed_at=None, failure_reason=None),
            states,
        )

    if isinstance(transition, StepStarted):
        return session, _update_step(states, transition.step_id, RunStatus.RUNNING, transition.at)

    if isinstance(transition, StepSucceeded):
        return (
            replace(session, next_step_index=transition.index + 1),
            _update_step(
                states,
                transition.step_id,
                RunStatus.COMPLETED,
                transition.at,
                output=transition.output,
            ),
        )

    if isinstance(transition, StepFailed):
        # The failed step stays the resume point.
        return (
            replace(
                session,
                status=RunStatus.FAILED,
                next_step_index=transition.index,
                completed_at=transition.at,
                failure_reason=transition.message,
            ),
            _update_step(
                states,
                transition.step_id,
                RunStatus.FAILED,
                transition.at,
                output=transition.message,
            ),
        )

    if isinstance(transition, RunCompleted):
        return (
            replace(
                session,
                status=RunStatus.COMPLETED,
                next_step_index=transition.step_count,
                completed_at=transition.at,
                failure_reason=None,
            ),
            states,
        )

    if isinstance(transition, RunCancelled):
        if transition.step_id is not None:
            states = _update_step(
                states, transition.step_id, RunStatus.CANCELLED, transition.at, keep_output=True
            )
        return (
            replace(
                session,
                status=RunStatus.CANCELLED,
                next_step_index=transition.next_step_index,
                completed_at=transition.at,
            ),
            states,
        )

    if isinstance(transition, RunRecovered):
        if session.status is not RunStatus.RUNNING:
            raise InvalidTransitionError(
                f"Only running sessions can be recovered (run {session.run_id} is "
                f"{session.status.value})."
            )
        return (
            replace(
                session,
                status=RunStatus.FAILED,
                completed_at=transition.at,
                failure_reason=transition.reason,
            ),
            states,
        )

    raise InvalidTransitionError(f"Unsupported transition: {transition!r}")


def pending_step_states(run_id: str, steps: Sequence[PlanStep]) -> tuple[RunStepState, ...]:
    return tuple(RunStepState(run_id=run_id, step_id=step.id, title=step.title) for step in steps)

from datetime import timedelta

import pytest

from openplane.models import PlanStep, RunSession, RunStatus, utcnow
from openplane.runs import RECOVERY_REASON, apply_transition
from openplane.runs.transitions import (
    InvalidTransitionError,
    RunCancelled,
    RunCompleted,
    RunRecovered,
    RunStarted,
    StepFailed,
    StepStarted,
    StepSucceeded,
    pending_step_states,
)

STEPS = (PlanStep("s1", "First"), PlanStep("s2", "Second"))


def _fresh() -> tuple[RunSession, tuple]:
    session = RunSession(run_id="r1", workspace_id="ws", plan_id="p1")
    return session, pending_step_states("r1", STEPS)


def test_pending_step_states_follow_plan_order() -> None:
    _, states = _fresh()

    assert [state.step_id for state in states] == ["s1", "s2"]
    assert all(state.status is RunStatus.PENDING for state in states)
    assert all(state.output is None for state in states)


def test_transitions_do_not_mutate_inputs() -> None:
    session, states = _fresh()
    before = (session, states)

    apply_transition(session, states, RunStarted())
    apply_transition(session, states, StepSucceeded("s1", 0, "done"))

    assert (session, states) == before


def test_successful_run_sequence() -> None:
    session, states = _fresh()
    finished_at = utcnow() + timedelta(seconds=1)

    session, states = apply_transition(session, states, RunStarted())
    assert session.status is RunStatus.RUNNING

    session, states = apply_transition(session, states, StepStarted("s1"))
    assert states[0].status is RunStatus.RUNNING

    session, states = apply_transition(session, states, StepSucceeded("s1", 0, "one"))
    assert session.next_step_index == 1
    assert states[0].status is RunStatus.COMPLETED
    assert states[0].output == "one"

    session, states = apply_transition(session, states, StepSucceeded("s2", 1, "two"))
    session, states = apply_transition(session, states, RunCompleted(2, at=finished_at))

    assert session.status is RunStatus.COMPLETED
    assert session.next_step_index == 2
    assert session.completed_at == finished_at
    assert session.failure_reason is None


def test_step_failure_keeps_failed_step_as_resume_point() -> None:
    session, states = _fresh()
    session, states = apply_transition(session, states, RunStarted())
    session, states = apply_transition(session, states, StepSucceeded("s1", 0, "one"))

    session, states = apply_transition(session, states, StepFailed("s2", 1, "denied"))

    assert session.status is RunStatus.FAILED
    assert session.next_step_index == 1
    assert session.failure_reason == "denied"
    assert session.completed_at is not None
    assert states[1].status is RunStatus.FAILED
    assert states[1].output == "denied"


def test_restart_clears_previous_failure() -> None:
    session, states = _fresh()
    session, states = apply_transition(session, states, StepFailed("s1", 0, "boom"))

    session, _ = apply_transition(session, states, RunStarted())

    assert session.status is RunStatus.RUNNING
    assert session.failure_reason is None
    assert session.completed_at is None
    assert session.next_step_index == 0


def test_cancellation_marks_in_flight_step() -> None:
    session, states = _fresh()
    session, states = apply_transition(session, states, RunStarted())
    session, states = apply_transition(session, states, StepStarted("s1"))

    session, states = apply_transition(session, states, RunCancelled(0, step_id="s1"))

    assert session.status is RunStatus.CANCELLED
    assert session.next_step_index == 0
    assert states[0].status is RunStatus.CANCELLED
    assert states[1].status is RunStatus.PENDING


def test_cancellation_between_steps_leaves_states_alone() -> None:
    session, states = _fresh()

    cancelled, new_states = apply_transition(session, states, RunCancelled(1))

    assert cancelled.status is RunStatus.CANCELLED
    assert cancelled.next_step_index == 1
    assert new_states == states


def test_recovery_only_applies_to_running_sessions() -> None:
    session, states = _fresh()
    with pytest.raises(InvalidTransitionError, match="Only running sessions"):
        apply_transition(session, states, RunRecovered())

    running, states = apply_transition(session, states, RunStarted())
    recovered, _ = apply_transition(running, states, RunRecovered())

    assert recovered.status is RunStatus.FAILED
    assert recovered.failure_reason == RECOVERY_REASON
    assert recovered.next_step_index == running.next_step_index


def test_unknown_step_id_is_rejected() -> None:
    session, states = _fresh()

    with pytest.raises(InvalidTransitionError, match="Unknown step id: nope"):
        apply_transition(session, states, StepStarted("nope"))

"""
Cascade Guard - Verification State Machine Tests
================================================

Pure transitions and the step catalogue.
"""

from cascade_guard.core.security.models import OperationKind
from cascade_guard.core.verification.machine import (
    Cancel,
    Expire,
    Start,
    StepFailed,
    StepSucceeded,
    WorkflowStatus,
    initial_state,
    transition,
)
from cascade_guard.core.verification.steps import (
    REQUIRED_ACKNOWLEDGMENTS,
    StepId,
    impact_items,
    steps_for,
)


STEPS = (StepId.PASSWORD, StepId.TYPED_NAME, StepId.IMPACT)


class TestStepsFor:
    """Which steps each operation kind runs."""

    def test_cascade_with_biometric(self):
        assert steps_for(OperationKind.CASCADE, requires_biometric=True) == (
            StepId.PASSWORD,
            StepId.TYPED_NAME,
            StepId.IMPACT,
            StepId.BIOMETRIC,
        )

    def test_biometric_only_on_request(self):
        assert StepId.BIOMETRIC not in steps_for(OperationKind.SINGLE)

    def test_cleanup_skips_typed_name(self):
        assert steps_for(OperationKind.CLEANUP) == (StepId.PASSWORD, StepId.IMPACT)

    def test_cascade_impacts_include_relations_and_acknowledgments(self):
        ids = [item.id for item in impact_items(OperationKind.CASCADE)]
        assert "cascade_relations" in ids
        assert "student_data" in ids
        assert ids[-4:] == [item.id for item in REQUIRED_ACKNOWLEDGMENTS]

    def test_cleanup_impacts(self):
        ids = [item.id for item in impact_items(OperationKind.CLEANUP)]
        assert ids[:3] == ["orphaned_records", "broken_references", "inconsistent_data"]
        assert "student_data" not in ids


class TestTransition:
    """State transitions."""

    def test_start_enters_first_step(self):
        state = transition(initial_state(STEPS), Start())
        assert state.status == WorkflowStatus.STEP
        assert state.current_step == StepId.PASSWORD

    def test_start_with_no_steps_approves(self):
        assert transition(initial_state(()), Start()).status == WorkflowStatus.APPROVED

    def test_steps_advance_to_approved(self):
        state = transition(initial_state(STEPS), Start())
        for step in STEPS:
            state = transition(state, StepSucceeded(step))
        assert state.status == WorkflowStatus.APPROVED
        assert state.completed_steps == STEPS
        assert state.current_step is None

    def test_success_for_other_step_is_ignored(self):
        state = transition(initial_state(STEPS), Start())
        assert transition(state, StepSucceeded(StepId.IMPACT)) == state

    def test_failure_stays_on_step_with_error(self):
        state = transition(initial_state(STEPS), Start())
        failed = transition(state, StepFailed(StepId.PASSWORD, "invalid_password"))
        assert failed.current_step == StepId.PASSWORD
        assert failed.error == "invalid_password"

        advanced = transition(failed, StepSucceeded(StepId.PASSWORD))
        assert advanced.current_step == StepId.TYPED_NAME
        assert advanced.error is None

    def test_cancel_and_expire_from_any_non_terminal(self):
        idle = initial_state(STEPS)
        running = transition(idle, Start())
        assert transition(idle, Cancel()).status == WorkflowStatus.CANCELLED
        assert transition(running, Expire()).status == WorkflowStatus.EXPIRED

    def test_terminal_states_ignore_events(self):
        expired = transition(transition(initial_state(STEPS), Start()), Expire())
        for event in (Start(), Cancel(), StepSucceeded(StepId.PASSWORD), Expire()):
            assert transition(expired, event) is expired

    def test_start_ignored_once_running(self):
        running = transition(initial_state(STEPS), Start())
        assert transition(running, Start()) is running

"""
Verification State Machine - pure transitions.

    IDLE --start--> STEP(0) --ok--> STEP(1) ... --ok--> APPROVED
    any non-terminal --cancel--> CANCELLED
    any non-terminal --expire--> EXPIRED

Terminal states ignore every event. A failed step stays on the same step
and only records the error.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Tuple, Union

from cascade_guard.core.verification.steps import StepId


class WorkflowStatus(str, Enum):
    IDLE = "idle"
    STEP = "step"
    APPROVED = "approved"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({WorkflowStatus.APPROVED, WorkflowStatus.EXPIRED, WorkflowStatus.CANCELLED})


@dataclass(frozen=True)
class VerificationState:
    status: WorkflowStatus
    steps: Tuple[StepId, ...]
    index: int = 0
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def current_step(self) -> Optional[StepId]:
        if self.status != WorkflowStatus.STEP:
            return None
        return self.steps[self.index]

    @property
    def completed_steps(self) -> Tuple[StepId, ...]:
        if self.status == WorkflowStatus.APPROVED:
            return self.steps
        return self.steps[:self.index]


def initial_state(steps: Tuple[StepId, ...]) -> VerificationState:
    return VerificationState(WorkflowStatus.IDLE, tuple(steps))


# ==========================================================================
# Events
# ==========================================================================

@dataclass(frozen=True)
class Start:
    pass


@dataclass(frozen=True)
class StepSucceeded:
    step: StepId


@dataclass(frozen=True)
class StepFailed:
    step: StepId
    error: str


@dataclass(frozen=True)
class Cancel:
    pass


@dataclass(frozen=True)
class Expire:
    pass


VerificationEvent = Union[Start, StepSucceeded, StepFailed, Cancel, Expire]


def transition(state: VerificationState, event: VerificationEvent) -> VerificationState:
    """Next state for `event`. Events that do not apply return `state` unchanged."""
    if state.is_terminal:
        return state

    if isinstance(event, Cancel):
        return replace(state, status=WorkflowStatus.CANCELLED, error=None)

    if isinstance(event, Expire):
        return replace(state, status=WorkflowStatus.EXPIRED, error=None)

    if isinstance(event, Start):
        if state.status != WorkflowStatus.IDLE:
            return state
        if not state.steps:
            return replace(state, status=WorkflowStatus.APPROVED)
        return replace(state, status=WorkflowStatus.STEP, index=0)

    if state.current_step is None or event.step != state.current_step:
        return state

    if isinstance(event, StepFailed):
        return replace(state, error=event.error)

    next_index = state.index + 1
    if next_index >= len(state.steps):
        return replace(state, status=WorkflowStatus.APPROVED, index=len(state.steps), error=None)
    return replace(state, index=next_index, error=None)

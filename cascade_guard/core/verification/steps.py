"""
Verification Steps - step catalogue and impact acknowledgment lists.
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Tuple

from cascade_guard.core.security.models import OperationKind


class StepId(str, Enum):
    PASSWORD = "password"
    TYPED_NAME = "typed_name"
    IMPACT = "impact"
    BIOMETRIC = "biometric"


_ALL_KINDS = frozenset(OperationKind)


@dataclass(frozen=True)
class VerificationStep:
    """One confirmation step."""
    id: StepId
    label: str
    required_for: FrozenSet[OperationKind]
    on_request_only: bool = False


ALL_STEPS: Tuple[VerificationStep, ...] = (
    VerificationStep(StepId.PASSWORD, "Password confirmation", _ALL_KINDS),
    VerificationStep(StepId.TYPED_NAME, "Type to confirm", _ALL_KINDS - {OperationKind.CLEANUP}),
    VerificationStep(StepId.IMPACT, "Impact acknowledgment", _ALL_KINDS),
    VerificationStep(StepId.BIOMETRIC, "Biometric verification", _ALL_KINDS, on_request_only=True),
)


def steps_for(kind: OperationKind, requires_biometric: bool = False) -> Tuple[StepId, ...]:
    """Ordered step ids for an operation kind."""
    return tuple(
        step.id
        for step in ALL_STEPS
        if kind in step.required_for and (requires_biometric or not step.on_request_only)
    )


# ==========================================================================
# Impact Acknowledgment
# ==========================================================================

@dataclass(frozen=True)
class ImpactItem:
    id: str
    label: str


_BASE_IMPACTS = (
    ImpactItem("student_data", "Delete student data"),
    ImpactItem("attendance_history", "Delete attendance history"),
    ImpactItem("parent_contacts", "Delete parent contact details"),
)

_KIND_IMPACTS = {
    OperationKind.SINGLE: (),
    OperationKind.BULK: (
        ImpactItem("enrollment_records", "Delete enrollment records"),
        ImpactItem("teacher_assignments", "Delete teacher assignments"),
    ),
    OperationKind.CASCADE: (
        ImpactItem("enrollment_records", "Delete enrollment records"),
        ImpactItem("performance_records", "Delete performance records"),
        ImpactItem("financial_records", "Delete financial records"),
        ImpactItem("teacher_assignments", "Delete teacher assignments"),
        ImpactItem("orchestra_participation", "Delete orchestra participation"),
        ImpactItem("theory_classes", "Delete theory class enrollments"),
        ImpactItem("instrument_assignments", "Delete instrument assignments"),
        ImpactItem("cascade_relations", "Cascade-delete every related record"),
    ),
}

_CLEANUP_IMPACTS = (
    ImpactItem("orphaned_records", "Delete orphaned records"),
    ImpactItem("broken_references", "Update broken references"),
    ImpactItem("inconsistent_data", "Clean up inconsistent data"),
)

REQUIRED_ACKNOWLEDGMENTS = (
    ImpactItem("irreversible", "I understand this action cannot be undone"),
    ImpactItem("impact_reviewed", "I have reviewed the expected impact"),
    ImpactItem("risk_accepted", "I accept the risks involved"),
    ImpactItem("final_confirmation", "I confirm the deletion"),
)


def impact_items(kind: OperationKind) -> Tuple[ImpactItem, ...]:
    """Every item the user must tick for the impact step."""
    if kind == OperationKind.CLEANUP:
        impacts = _CLEANUP_IMPACTS
    else:
        impacts = _BASE_IMPACTS + _KIND_IMPACTS[kind]
    return impacts + REQUIRED_ACKNOWLEDGMENTS

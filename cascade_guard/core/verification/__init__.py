"""
Cascade Guard - Verification
============================

Components:
- machine: pure verification state machine
- VerificationWorkflow: async driver with countdown and external verifiers
- TokenIssuer: signed single-use verification tokens
"""

from cascade_guard.core.verification.machine import VerificationState, WorkflowStatus, transition
from cascade_guard.core.verification.steps import ALL_STEPS, ImpactItem, StepId, impact_items, steps_for
from cascade_guard.core.verification.tokens import TokenIssuer, VerificationToken
from cascade_guard.core.verification.workflow import StepResult, VerificationWorkflow

__all__ = [
    "VerificationState",
    "WorkflowStatus",
    "transition",
    "ALL_STEPS",
    "ImpactItem",
    "StepId",
    "impact_items",
    "steps_for",
    "TokenIssuer",
    "VerificationToken",
    "StepResult",
    "VerificationWorkflow",
]

"""
Cascade Guard - Core Package
============================

Policy, verification, optimistic mutation and realtime progress components.
"""

from cascade_guard.core.config import Settings, get_settings, settings
from cascade_guard.core.coordinator import (
    CascadeDeletionCoordinator,
    DeletionOperation,
    DeletionRequest,
    OperationStatus,
    PlannedMutation,
    create_coordinator,
)
from cascade_guard.core.errors import (
    CascadeGuardError,
    DeletionApiError,
    PolicyDeniedError,
    RollbackError,
    RollbackOrderError,
    TokenError,
    TransportError,
    VerificationClosedError,
    VerificationError,
)

__all__ = [
    "Settings",
    "get_settings",
    "settings",
    # Coordinator
    "CascadeDeletionCoordinator",
    "DeletionOperation",
    "DeletionRequest",
    "OperationStatus",
    "PlannedMutation",
    "create_coordinator",
    # Errors
    "CascadeGuardError",
    "DeletionApiError",
    "PolicyDeniedError",
    "RollbackError",
    "RollbackOrderError",
    "TokenError",
    "TransportError",
    "VerificationClosedError",
    "VerificationError",
]

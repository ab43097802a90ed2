"""
Cascade Guard - Security Policy
===============================

Components:
- SecurityPolicyStore: per-session permission, rate-limit and anomaly checks
- derive_permission_scope: role -> PermissionScope
"""

from cascade_guard.core.security.models import (
    ActivityEntry,
    OperationKind,
    PermissionScope,
    PolicyDecision,
    RateLimitKind,
    RateLimitWindow,
    ReasonCode,
    SecuritySessionState,
    UserContext,
    derive_permission_scope,
)
from cascade_guard.core.security.policy_store import SecurityPolicyStore

__all__ = [
    "ActivityEntry",
    "OperationKind",
    "PermissionScope",
    "PolicyDecision",
    "RateLimitKind",
    "RateLimitWindow",
    "ReasonCode",
    "SecuritySessionState",
    "UserContext",
    "derive_permission_scope",
    "SecurityPolicyStore",
]

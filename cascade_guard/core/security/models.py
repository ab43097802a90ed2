"""
Security Models - permission scope, rate-limit windows, session state.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple


class OperationKind(str, Enum):
    """Kinds of destructive operation."""
    SINGLE = "single"
    BULK = "bulk"
    CASCADE = "cascade"
    CLEANUP = "cleanup"


class RateLimitKind(str, Enum):
    """Rate-limit buckets."""
    SINGLE = "single"
    BULK = "bulk"
    CLEANUP = "cleanup"


# Cascade operations are counted in the cleanup bucket
RATE_LIMIT_BUCKETS: Dict[OperationKind, RateLimitKind] = {
    OperationKind.SINGLE: RateLimitKind.SINGLE,
    OperationKind.BULK: RateLimitKind.BULK,
    OperationKind.CASCADE: RateLimitKind.CLEANUP,
    OperationKind.CLEANUP: RateLimitKind.CLEANUP,
}


class ReasonCode(str, Enum):
    """Why a policy decision denied an operation, in evaluation order."""
    NO_AUTH = "NO_AUTH"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    RATE_LIMITED = "RATE_LIMITED"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    ENTITY_ACCESS_DENIED = "ENTITY_ACCESS_DENIED"


# ==========================================================================
# Permission Scope
# ==========================================================================

SUPER_ADMIN_ROLES = frozenset({"super_admin", "מנהל עליון"})
ADMIN_ROLES = frozenset({"admin", "מנהל"})


@dataclass(frozen=True)
class PermissionScope:
    """What the current user may delete. Immutable until the next refresh."""
    can_delete_own: bool = False
    can_delete_any: bool = False
    can_bulk_delete: bool = False
    can_cascade_delete: bool = False
    can_cleanup_orphans: bool = False
    entity_restrictions: FrozenSet[str] = frozenset()
    max_deletions_per_minute: int = 2
    top_tier: bool = False

    def allows_kind(self, kind: OperationKind) -> bool:
        if kind == OperationKind.SINGLE:
            return self.can_delete_own
        if kind == OperationKind.BULK:
            return self.can_bulk_delete
        if kind == OperationKind.CASCADE:
            return self.can_cascade_delete
        return self.can_cleanup_orphans


def derive_permission_scope(
    role: Optional[str],
    permissions: Iterable[str],
    user_id: str,
    allowed_entity_ids: Iterable[str] = (),
) -> PermissionScope:
    """
    Build the permission scope for a role.

    Args:
        role: User role name
        permissions: Permission names held by the user
        user_id: Id of the user (always allowed for restricted roles)
        allowed_entity_ids: Extra entity ids a restricted user may act on

    Returns:
        PermissionScope for the session
    """
    permissions = set(permissions)

    if role in SUPER_ADMIN_ROLES:
        return PermissionScope(
            can_delete_own=True,
            can_delete_any=True,
            can_bulk_delete=True,
            can_cascade_delete=True,
            can_cleanup_orphans=True,
            max_deletions_per_minute=10,
            top_tier=True,
        )

    if role in ADMIN_ROLES:
        return PermissionScope(
            can_delete_own=True,
            can_delete_any=True,
            can_bulk_delete="bulk_operations" in permissions,
            max_deletions_per_minute=5,
        )

    return PermissionScope(
        can_delete_own="delete_student" in permissions,
        entity_restrictions=frozenset({user_id, *allowed_entity_ids}),
        max_deletions_per_minute=2,
    )


@dataclass
class UserContext:
    """Authenticated user as seen by the safety layer."""
    id: str
    role: Optional[str] = None
    permissions: FrozenSet[str] = frozenset()
    display_name: Optional[str] = None
    allowed_entity_ids: FrozenSet[str] = frozenset()

    def scope(self) -> PermissionScope:
        return derive_permission_scope(self.role, self.permissions, self.id, self.allowed_entity_ids)


# ==========================================================================
# Rate Limits
# ==========================================================================

@dataclass(frozen=True)
class RateLimitWindow:
    """Counter for one bucket."""
    count: int
    window_start: datetime
    reset_time: datetime
    is_locked: bool = False

    @classmethod
    def fresh(cls, now: datetime, window_seconds: int) -> "RateLimitWindow":
        return cls(count=0, window_start=now, reset_time=now + timedelta(seconds=window_seconds))

    def elapsed(self, now: datetime) -> bool:
        return now >= self.reset_time

    def locked_at(self, now: datetime) -> bool:
        """Locked and the window has not yet elapsed."""
        return self.is_locked and not self.elapsed(now)

    def increment(self, maximum: int) -> "RateLimitWindow":
        count = self.count + 1
        return replace(self, count=count, is_locked=count >= maximum)


@dataclass(frozen=True)
class RateLimitRule:
    max_attempts: int
    window_seconds: int


# ==========================================================================
# Decisions & Session
# ==========================================================================

@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of SecurityPolicyStore.evaluate()."""
    allowed: bool
    reason_code: Optional[ReasonCode] = None
    detail: Optional[str] = None

    @classmethod
    def allow(cls) -> "PolicyDecision":
        return cls(True)

    @classmethod
    def deny(cls, reason_code: ReasonCode, detail: Optional[str] = None) -> "PolicyDecision":
        return cls(False, reason_code, detail)


@dataclass(frozen=True)
class ActivityEntry:
    action: str
    timestamp: datetime
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_deletion(self) -> bool:
        return "delet" in self.action

    @property
    def is_failure(self) -> bool:
        return "failed" in self.action or "denied" in self.action


@dataclass(frozen=True)
class SecuritySessionState:
    """Read-only view of a policy store session."""
    user_id: Optional[str]
    session_valid_until: Optional[datetime]
    suspicious_activity_detected: bool
    suspicious_reason: Optional[str]
    permission_scope: Optional[PermissionScope]
    rate_limits: Mapping[RateLimitKind, RateLimitWindow]
    activity_log: Tuple[ActivityEntry, ...]
    disposed: bool = False

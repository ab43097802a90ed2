"""
Security Policy Store - per-session deletion policy.

Decides whether a deletion may proceed and keeps the session state the
decision depends on: permission scope, rate-limit windows, session expiry,
the suspicious-activity flag and a capped activity log.

Checks run in a fixed order and the first failure wins:
1. NO_AUTH - no user or permission scope
2. SESSION_EXPIRED - session past its validity
3. SUSPICIOUS_ACTIVITY - sticky anomaly flag
4. RATE_LIMITED - bucket locked for the current window
5. INSUFFICIENT_PERMISSIONS - kind not granted, or off-hours
6. ENTITY_ACCESS_DENIED - entity outside the user's restrictions
"""

from collections import deque
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

import structlog

from cascade_guard.core.audit import AuditEvent, AuditEventType, AuditSeverity, AuditSink, InMemoryAuditSink
from cascade_guard.core.clock import Clock, SystemClock
from cascade_guard.core.config import Settings, get_settings
from cascade_guard.core.security.models import (
    RATE_LIMIT_BUCKETS,
    ActivityEntry,
    OperationKind,
    PermissionScope,
    PolicyDecision,
    RateLimitKind,
    RateLimitRule,
    RateLimitWindow,
    ReasonCode,
    SecuritySessionState,
    UserContext,
)

logger = structlog.get_logger()

SessionRefresher = Callable[[str], Awaitable[bool]]

OFF_HOURS_KINDS = (OperationKind.BULK, OperationKind.CASCADE)


class SecurityPolicyStore:
    """
    Injectable policy state for one user session.

    Create with SecurityPolicyStore.create(user, ...) at login and call
    dispose() at logout. evaluate() is read-only; record_attempt() is the
    only operation that touches rate-limit counters.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        audit_sink: Optional[AuditSink] = None,
        session_refresher: Optional[SessionRefresher] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.audit_sink = audit_sink or InMemoryAuditSink(self.settings.AUDIT_HISTORY_SIZE)
        self.session_refresher = session_refresher

        self._user: Optional[UserContext] = None
        self._scope: Optional[PermissionScope] = None
        self._valid_until: Optional[datetime] = None
        self._suspicious = False
        self._suspicious_reason: Optional[str] = None
        self._rate_limits: Dict[RateLimitKind, RateLimitWindow] = {}
        self._activity: Deque[ActivityEntry] = deque(maxlen=self.settings.ACTIVITY_LOG_SIZE)
        self._disposed = False

    @classmethod
    def create(
        cls,
        user: UserContext,
        clock: Optional[Clock] = None,
        audit_sink: Optional[AuditSink] = None,
        session_refresher: Optional[SessionRefresher] = None,
        settings: Optional[Settings] = None,
    ) -> "SecurityPolicyStore":
        """Start a session for a freshly authenticated user."""
        store = cls(clock=clock, audit_sink=audit_sink, session_refresher=session_refresher, settings=settings)
        store._start(user)
        return store

    def _start(self, user: UserContext) -> None:
        now = self.clock.now()
        self._user = user
        self._scope = user.scope()
        self._valid_until = now + timedelta(seconds=self.settings.SESSION_TTL_SECONDS)
        self._rate_limits = {
            kind: RateLimitWindow.fresh(now, self._rule(kind).window_seconds)
            for kind in RateLimitKind
        }
        self._audit(AuditEventType.SESSION_EVENT, action="session_created", role=user.role)
        logger.info("security_session_created", user_id=user.id, role=user.role)

    # ==========================================================================
    # Read-only views
    # ==========================================================================

    @property
    def user(self) -> Optional[UserContext]:
        return self._user

    @property
    def permission_scope(self) -> Optional[PermissionScope]:
        return self._scope

    @property
    def suspicious_activity_detected(self) -> bool:
        return self._suspicious

    def is_session_valid(self) -> bool:
        return (
            not self._disposed
            and self._valid_until is not None
            and self.clock.now() < self._valid_until
        )

    def snapshot(self) -> SecuritySessionState:
        return SecuritySessionState(
            user_id=self._user.id if self._user else None,
            session_valid_until=self._valid_until,
            suspicious_activity_detected=self._suspicious,
            suspicious_reason=self._suspicious_reason,
            permission_scope=self._scope,
            rate_limits=dict(self._rate_limits),
            activity_log=tuple(self._activity),
            disposed=self._disposed,
        )

    def remaining_attempts(self, kind: OperationKind) -> int:
        bucket = RATE_LIMIT_BUCKETS[kind]
        window = self._rate_limits.get(bucket)
        maximum = self._max_for(bucket)
        if window is None or window.elapsed(self.clock.now()):
            return maximum
        return max(0, maximum - window.count)

    # ==========================================================================
    # Policy
    # ==========================================================================

    def evaluate(self, kind: OperationKind, entity_id: Optional[str] = None) -> PolicyDecision:
        """
        Decide whether `kind` may run against `entity_id`.

        Never mutates rate-limit counters; denials are written to the
        activity log so the anomaly heuristics can see them.
        """
        decision = self._decide(kind, entity_id)

        self._audit(
            AuditEventType.PERMISSION_CHECK,
            kind=kind,
            entity_id=entity_id,
            severity=AuditSeverity.INFO if decision.allowed else AuditSeverity.WARNING,
            allowed=decision.allowed,
            reason_code=decision.reason_code.value if decision.reason_code else None,
            detail=decision.detail,
        )
        if not decision.allowed:
            logger.info(
                "deletion_permission_denied",
                user_id=self._user.id if self._user else None,
                kind=kind.value,
                entity_id=entity_id,
                reason_code=decision.reason_code.value,
                detail=decision.detail,
            )
            if self._user is not None and not self._disposed:
                self.record_activity(
                    "permission_check_denied",
                    kind=kind.value,
                    entity_id=entity_id,
                    reason_code=decision.reason_code.value,
                )
        return decision

    def _decide(self, kind: OperationKind, entity_id: Optional[str]) -> PolicyDecision:
        now = self.clock.now()
        scope = self._scope

        if self._disposed or self._user is None or scope is None:
            return PolicyDecision.deny(ReasonCode.NO_AUTH)

        if self._valid_until is None or now >= self._valid_until:
            return PolicyDecision.deny(ReasonCode.SESSION_EXPIRED)

        if self._suspicious:
            return PolicyDecision.deny(ReasonCode.SUSPICIOUS_ACTIVITY, self._suspicious_reason)

        bucket = RATE_LIMIT_BUCKETS[kind]
        window = self._rate_limits.get(bucket)
        if window is not None and window.locked_at(now):
            return PolicyDecision.deny(ReasonCode.RATE_LIMITED, bucket.value)

        if not scope.allows_kind(kind):
            return PolicyDecision.deny(ReasonCode.INSUFFICIENT_PERMISSIONS, f"{kind.value}_not_permitted")

        if kind in OFF_HOURS_KINDS and not scope.top_tier and self._is_off_hours():
            return PolicyDecision.deny(ReasonCode.INSUFFICIENT_PERMISSIONS, "off_hours")

        if (
            entity_id is not None
            and scope.entity_restrictions
            and not scope.can_delete_any
            and entity_id not in scope.entity_restrictions
        ):
            return PolicyDecision.deny(ReasonCode.ENTITY_ACCESS_DENIED, entity_id)

        return PolicyDecision.allow()

    def _is_off_hours(self) -> bool:
        hour = self.clock.local_now().hour
        start, end = self.settings.OFF_HOURS_START, self.settings.OFF_HOURS_END
        if start > end:
            return hour >= start or hour < end
        return start <= hour < end

    # ==========================================================================
    # Rate Limiting
    # ==========================================================================

    def _rule(self, bucket: RateLimitKind) -> RateLimitRule:
        s = self.settings
        if bucket == RateLimitKind.SINGLE:
            return RateLimitRule(s.RATE_LIMIT_SINGLE_MAX, s.RATE_LIMIT_SINGLE_WINDOW_SECONDS)
        if bucket == RateLimitKind.BULK:
            return RateLimitRule(s.RATE_LIMIT_BULK_MAX, s.RATE_LIMIT_BULK_WINDOW_SECONDS)
        return RateLimitRule(s.RATE_LIMIT_CLEANUP_MAX, s.RATE_LIMIT_CLEANUP_WINDOW_SECONDS)

    def _max_for(self, bucket: RateLimitKind) -> int:
        maximum = self._rule(bucket).max_attempts
        if bucket == RateLimitKind.SINGLE and self._scope is not None:
            maximum = min(maximum, self._scope.max_deletions_per_minute)
        return maximum

    def record_attempt(self, kind: OperationKind) -> bool:
        """
        Count one attempt against the kind's bucket.

        Returns:
            True if counted, False if the bucket is locked for this window
        """
        if self._disposed or self._user is None:
            return False

        now = self.clock.now()
        bucket = RATE_LIMIT_BUCKETS[kind]
        rule = self._rule(bucket)
        window = self._rate_limits.get(bucket)

        if window is None or window.elapsed(now):
            window = RateLimitWindow.fresh(now, rule.window_seconds)

        if window.is_locked:
            self._rate_limits[bucket] = window
            self._audit(
                AuditEventType.RATE_LIMIT_HIT,
                kind=kind,
                severity=AuditSeverity.WARNING,
                bucket=bucket.value,
                count=window.count,
                reset_time=window.reset_time.isoformat(),
            )
            logger.warning("rate_limit_hit", user_id=self._user.id, bucket=bucket.value)
            self.record_activity("rate_limit_denied", kind=kind.value, bucket=bucket.value)
            return False

        window = window.increment(self._max_for(bucket))
        self._rate_limits[bucket] = window
        self.record_activity(f"{kind.value}_deletion_attempt", bucket=bucket.value, count=window.count)
        return True

    # ==========================================================================
    # Activity & Anomalies
    # ==========================================================================

    def record_activity(self, action: str, **metadata: Any) -> None:
        """Append to the activity log and run the anomaly heuristics."""
        now = self.clock.now()
        self._activity.append(ActivityEntry(action=action, timestamp=now, metadata=metadata))

        if self._suspicious:
            return

        s = self.settings
        rapid_since = now - timedelta(seconds=s.SUSPICIOUS_RAPID_WINDOW_SECONDS)
        deletions = sum(1 for a in self._activity if a.is_deletion and a.timestamp > rapid_since)
        if deletions >= s.SUSPICIOUS_RAPID_DELETIONS:
            self.flag_suspicious("rapid_deletions")
            return

        failed_since = now - timedelta(seconds=s.SUSPICIOUS_FAILED_WINDOW_SECONDS)
        failures = sum(1 for a in self._activity if a.is_failure and a.timestamp > failed_since)
        if failures >= s.SUSPICIOUS_FAILED_ATTEMPTS:
            self.flag_suspicious("repeated_failures")

    def flag_suspicious(self, reason: str) -> None:
        """Set the sticky suspicious-activity flag. Only admin_unlock() clears it."""
        if self._suspicious:
            return
        self._suspicious = True
        self._suspicious_reason = reason
        self._audit(AuditEventType.SUSPICIOUS_ACTIVITY, severity=AuditSeverity.CRITICAL, reason=reason)
        logger.warning(
            "suspicious_activity_detected",
            user_id=self._user.id if self._user else None,
            reason=reason,
        )

    def admin_unlock(self, admin_id: Optional[str] = None) -> None:
        previous = self._suspicious_reason
        self._suspicious = False
        self._suspicious_reason = None
        self._audit(
            AuditEventType.SESSION_EVENT,
            severity=AuditSeverity.WARNING,
            action="admin_unlock",
            admin_id=admin_id,
            previous_reason=previous,
        )
        logger.info("security_unlocked", user_id=self._user.id if self._user else None, admin_id=admin_id)

    # ==========================================================================
    # Session Lifecycle
    # ==========================================================================

    async def refresh_session(self) -> bool:
        """
        Re-confirm the session with the backend.

        On success the session is extended and the permission scope is
        re-derived. On rejection or error the session is left expired.
        """
        if self._disposed or self._user is None:
            return False

        ok = True
        if self.session_refresher is not None:
            try:
                ok = bool(await self.session_refresher(self._user.id))
            except Exception as e:
                logger.warning("session_refresh_error", user_id=self._user.id, error=str(e))
                ok = False

        now = self.clock.now()
        if ok:
            self._valid_until = now + timedelta(seconds=self.settings.SESSION_TTL_SECONDS)
            self._scope = self._user.scope()
            self._audit(AuditEventType.SESSION_EVENT, action="session_refreshed")
            logger.info("security_session_refreshed", user_id=self._user.id)
            return True

        self._valid_until = now
        self._audit(AuditEventType.SESSION_EVENT, severity=AuditSeverity.WARNING, action="session_refresh_failed")
        self.record_activity("session_refresh_failed")
        return False

    async def maybe_refresh(self) -> bool:
        """Refresh when less than the configured margin remains. Returns True if refreshed."""
        if not self.is_session_valid():
            return False
        remaining = (self._valid_until - self.clock.now()).total_seconds()
        if remaining >= self.settings.SESSION_REFRESH_MARGIN_SECONDS:
            return False
        return await self.refresh_session()

    def invalidate(self, reason: str = "expired") -> None:
        self._valid_until = self.clock.now()
        self._audit(AuditEventType.SESSION_EVENT, severity=AuditSeverity.WARNING, action="session_invalidated", reason=reason)
        logger.info("security_session_invalidated", user_id=self._user.id if self._user else None, reason=reason)

    def dispose(self) -> None:
        """Logout: drop all session state."""
        if self._disposed:
            return
        self._audit(AuditEventType.SESSION_EVENT, action="session_disposed")
        self._disposed = True
        self._scope = None
        self._valid_until = None
        self._rate_limits.clear()
        self._activity.clear()
        self._suspicious = False
        self._suspicious_reason = None

    # ==========================================================================
    # Audit
    # ==========================================================================

    def _audit(
        self,
        event_type: AuditEventType,
        kind: Optional[OperationKind] = None,
        entity_id: Optional[str] = None,
        severity: AuditSeverity = AuditSeverity.INFO,
        **details: Any,
    ) -> None:
        self.audit_sink.record(AuditEvent(
            event_type=event_type,
            user_id=self._user.id if self._user else None,
            operation_kind=kind.value if kind else None,
            entity_id=entity_id,
            severity=severity,
            timestamp=self.clock.now(),
            details={k: v for k, v in details.items() if v is not None},
        ))

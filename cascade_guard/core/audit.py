"""
Cascade Guard - Security Audit Events
=====================================

Structured audit events emitted by the policy store, the verification
workflow and the deletion coordinator. Storage is external; the sinks here
either forward to structlog or keep a bounded in-memory history.
"""

from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Protocol
from uuid import uuid4

import structlog

logger = structlog.get_logger()


# ==========================================================================
# Event Types
# ==========================================================================

class AuditEventType(str, Enum):
    """Security audit event types"""
    PERMISSION_CHECK = "permission_check"
    RATE_LIMIT_HIT = "rate_limit_hit"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    SESSION_EVENT = "session_event"
    DELETION_ATTEMPT = "deletion_attempt"
    SECURITY_VIOLATION = "security_violation"

    # Verification workflow
    VERIFICATION_STARTED = "verification_started"
    VERIFICATION_STEP_COMPLETED = "verification_step_completed"
    VERIFICATION_FAILED = "verification_failed"
    VERIFICATION_COMPLETED = "verification_completed"
    VERIFICATION_CANCELLED = "verification_cancelled"
    VERIFICATION_EXPIRED = "verification_expired"


class AuditSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class AuditEvent:
    """One security-relevant fact."""
    event_type: AuditEventType
    user_id: Optional[str] = None
    operation_kind: Optional[str] = None
    entity_id: Optional[str] = None
    severity: AuditSeverity = AuditSeverity.INFO
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    details: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type.value
        data["severity"] = self.severity.value
        data["timestamp"] = self.timestamp.isoformat()
        return {k: v for k, v in data.items() if v is not None}


# ==========================================================================
# Sinks
# ==========================================================================

class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None:
        ...


class StructlogAuditSink:
    """Forward audit events to the structured log."""

    _LEVELS = {
        AuditSeverity.INFO: "info",
        AuditSeverity.WARNING: "warning",
        AuditSeverity.ERROR: "error",
        AuditSeverity.CRITICAL: "critical",
    }

    def __init__(self, log: Any = None):
        self._log = log or logger.bind(component="security_audit")

    def record(self, event: AuditEvent) -> None:
        emit = getattr(self._log, self._LEVELS[event.severity])
        emit(
            event.event_type.value,
            audit_id=event.id,
            user_id=event.user_id,
            operation_kind=event.operation_kind,
            entity_id=event.entity_id,
            **event.details,
        )


class InMemoryAuditSink:
    """Bounded in-memory audit history, newest last."""

    def __init__(self, max_events: int = 1000):
        self._events: Deque[AuditEvent] = deque(maxlen=max_events)

    def record(self, event: AuditEvent) -> None:
        self._events.append(event)

    @property
    def events(self) -> List[AuditEvent]:
        return list(self._events)

    def of_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return [e for e in self._events if e.event_type == event_type]

    def clear(self) -> None:
        self._events.clear()

    def summary(self) -> Dict[str, Any]:
        """Counts by type and severity plus per-user violation totals."""
        by_type: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        violations: Dict[str, int] = {}

        for event in self._events:
            by_type[event.event_type.value] = by_type.get(event.event_type.value, 0) + 1
            by_severity[event.severity.value] = by_severity.get(event.severity.value, 0) + 1
            if event.user_id and _is_violation(event):
                violations[event.user_id] = violations.get(event.user_id, 0) + 1

        return {
            "total_events": len(self._events),
            "events_by_type": by_type,
            "events_by_severity": by_severity,
            "violations_by_user": violations,
        }


class CompositeAuditSink:
    """Fan an event out to several sinks."""

    def __init__(self, *sinks: AuditSink):
        self.sinks = list(sinks)

    def record(self, event: AuditEvent) -> None:
        for sink in self.sinks:
            sink.record(event)


def _is_violation(event: AuditEvent) -> bool:
    if event.event_type in (
        AuditEventType.SECURITY_VIOLATION,
        AuditEventType.RATE_LIMIT_HIT,
        AuditEventType.SUSPICIOUS_ACTIVITY,
        AuditEventType.VERIFICATION_FAILED,
    ):
        return True
    return event.event_type == AuditEventType.PERMISSION_CHECK and not event.details.get("allowed", True)

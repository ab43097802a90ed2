"""
Cascade Guard - Audit & Notification Tests
==========================================
"""

from cascade_guard.core.audit import (
    AuditEvent,
    AuditEventType,
    AuditSeverity,
    CompositeAuditSink,
    InMemoryAuditSink,
)
from cascade_guard.core.notifications import NotificationLevel


def event(event_type, user_id="u1", **details):
    return AuditEvent(event_type=event_type, user_id=user_id, details=details)


class TestInMemoryAuditSink:
    """History and summaries."""

    def test_bounded_history(self):
        sink = InMemoryAuditSink(max_events=3)
        for n in range(5):
            sink.record(event(AuditEventType.SESSION_EVENT, n=n))
        assert [e.details["n"] for e in sink.events] == [2, 3, 4]

    def test_summary_counts_violations(self):
        sink = InMemoryAuditSink()
        sink.record(event(AuditEventType.PERMISSION_CHECK, allowed=True))
        sink.record(event(AuditEventType.PERMISSION_CHECK, allowed=False))
        sink.record(event(AuditEventType.RATE_LIMIT_HIT, user_id="u2"))
        sink.record(AuditEvent(AuditEventType.SUSPICIOUS_ACTIVITY, "u2", severity=AuditSeverity.CRITICAL))

        summary = sink.summary()

        assert summary["total_events"] == 4
        assert summary["events_by_type"]["permission_check"] == 2
        assert summary["events_by_severity"]["critical"] == 1
        assert summary["violations_by_user"] == {"u1": 1, "u2": 2}

    def test_to_dict(self):
        data = event(AuditEventType.DELETION_ATTEMPT, action="deletion_requested").to_dict()
        assert data["event_type"] == "deletion_attempt"
        assert data["severity"] == "info"
        assert data["details"] == {"action": "deletion_requested"}

    def test_composite_fans_out(self):
        first, second = InMemoryAuditSink(), InMemoryAuditSink()
        CompositeAuditSink(first, second).record(event(AuditEventType.SESSION_EVENT))
        assert len(first.events) == len(second.events) == 1


class TestNotificationCenter:
    """Listeners, advisories and safe state."""

    def test_advisory_is_persistent_error(self, notifications):
        received = []
        remove = notifications.add_listener(received.append)

        notifications.advisory("Rollback Failed", "Please refresh the page.", operation_id="op1")
        remove()
        notifications.info("Later", "not delivered")

        assert len(received) == 1
        assert received[0].level == NotificationLevel.ERROR
        assert received[0].persistent is True
        assert received[0].duration_ms is None
        assert received[0].data == {"operation_id": "op1"}
        assert len(notifications.history) == 2

    def test_broken_listener_does_not_block_others(self, notifications):
        received = []

        def broken(notification):
            raise RuntimeError("ui gone")

        notifications.add_listener(broken)
        notifications.add_listener(received.append)
        notifications.info("Changes Reverted", "done")
        assert len(received) == 1

    def test_safe_state(self, notifications):
        notifications.enter_safe_state("rollback_failed:op1")
        assert notifications.safe_state is True
        notifications.acknowledge_safe_state()
        assert notifications.safe_state is False

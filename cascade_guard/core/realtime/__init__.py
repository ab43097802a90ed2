"""
Cascade Guard - Realtime Progress
=================================

Components:
- RealtimeProgressTransport: reconnecting websocket client with subscriptions
- AiohttpConnector: default websocket connector
"""

from cascade_guard.core.realtime.connectors import AiohttpConnector, Connection, Connector
from cascade_guard.core.realtime.messages import (
    CompleteEvent,
    Envelope,
    ErrorEvent,
    IntegrityIssueEvent,
    ProgressEvent,
    RealtimeMessageType,
)
from cascade_guard.core.realtime.transport import (
    ConnectionState,
    ConnectionStats,
    RealtimeProgressTransport,
    Subscription,
    reconnect_delay_ms,
)

__all__ = [
    "AiohttpConnector",
    "Connection",
    "Connector",
    "CompleteEvent",
    "Envelope",
    "ErrorEvent",
    "IntegrityIssueEvent",
    "ProgressEvent",
    "RealtimeMessageType",
    "ConnectionState",
    "ConnectionStats",
    "RealtimeProgressTransport",
    "Subscription",
    "reconnect_delay_ms",
]

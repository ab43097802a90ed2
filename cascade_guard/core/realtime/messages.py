"""
Realtime Messages
=================

JSON envelope `{type, data, timestamp, message_id}` and the typed events
carried inside it. Inbound payloads are normalized with the same defaults
the server-side producer assumes (missing details -> {}, success unless
explicitly false, severity "medium", fixable only when explicitly true).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RealtimeMessageType(str, Enum):
    """Realtime message types"""
    # Server -> Client
    CASCADE_PROGRESS = "cascade.progress"
    CASCADE_COMPLETE = "cascade.complete"
    CASCADE_ERROR = "cascade.error"
    INTEGRITY_ISSUE = "integrity.issue"

    # Both directions
    HEARTBEAT = "heartbeat"
    HEARTBEAT_RESPONSE = "heartbeat.response"

    # Client -> Server
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


OPERATION_CHANNEL = "cascade.deletion"
DEFAULT_ID_FIELD = "studentId"


class Envelope(BaseModel):
    """Wire envelope."""

    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)
    message_id: str = Field(default_factory=lambda: str(uuid4()))

    @field_validator("data", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("timestamp")
    @classmethod
    def _tz(cls, value: datetime) -> datetime:
        return _aware(value)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "Envelope":
        return cls.model_validate_json(raw)


def subscribe_message(operation_id: str, id_field: str = DEFAULT_ID_FIELD) -> Envelope:
    return Envelope(
        type=RealtimeMessageType.SUBSCRIBE.value,
        data={"operation": OPERATION_CHANNEL, id_field: operation_id},
    )


def unsubscribe_message(operation_id: str, id_field: str = DEFAULT_ID_FIELD) -> Envelope:
    return Envelope(
        type=RealtimeMessageType.UNSUBSCRIBE.value,
        data={"operation": OPERATION_CHANNEL, id_field: operation_id},
    )


def heartbeat_message(response: bool = False) -> Envelope:
    """Periodic heartbeat, or the reply to one the server sent."""
    if response:
        return Envelope(type=RealtimeMessageType.HEARTBEAT_RESPONSE.value)
    return Envelope(type=RealtimeMessageType.HEARTBEAT.value)


# ==========================================================================
# Inbound Events
# ==========================================================================

class EventModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    timestamp: datetime = Field(default_factory=_utcnow)

    @field_validator("timestamp")
    @classmethod
    def _tz(cls, value: datetime) -> datetime:
        return _aware(value)


class OperationEvent(EventModel):
    operation_id: str = Field(
        validation_alias=AliasChoices("operationId", "operation_id", "studentId", "student_id"),
    )


class ProgressEvent(OperationEvent):
    step: Optional[str] = None
    percentage: float = 0.0
    processed_entities: int = 0
    total_entities: Optional[int] = None
    errors: int = 0
    warnings: int = 0
    started_at: Optional[datetime] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("started_at")
    @classmethod
    def _started_tz(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _aware(value)

    @field_validator("details", mode="before")
    @classmethod
    def _details(cls, value: Any) -> Any:
        return value or {}


class CompleteEvent(OperationEvent):
    summary: Dict[str, Any] = Field(default_factory=dict)
    duration: Optional[float] = None
    success: bool = True

    @field_validator("success", mode="before")
    @classmethod
    def _success_unless_false(cls, value: Any) -> bool:
        return value is not False

    @field_validator("summary", mode="before")
    @classmethod
    def _summary(cls, value: Any) -> Any:
        return value or {}


class ErrorEvent(OperationEvent):
    error: str = "Unknown error"
    code: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("error", mode="before")
    @classmethod
    def _error(cls, value: Any) -> Any:
        return value or "Unknown error"

    @field_validator("details", mode="before")
    @classmethod
    def _details(cls, value: Any) -> Any:
        return value or {}


class IntegrityIssueEvent(EventModel):
    operation_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("operationId", "operation_id", "studentId", "student_id"),
    )
    severity: str = "medium"
    collection: Optional[str] = None
    count: int = 0
    fixable: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("severity", mode="before")
    @classmethod
    def _severity(cls, value: Any) -> Any:
        return value or "medium"

    @field_validator("count", mode="before")
    @classmethod
    def _count(cls, value: Any) -> Any:
        return value or 0

    @field_validator("fixable", mode="before")
    @classmethod
    def _fixable_only_if_true(cls, value: Any) -> bool:
        return value is True

    @field_validator("details", mode="before")
    @classmethod
    def _details(cls, value: Any) -> Any:
        return value or {}


RealtimeEvent = Union[ProgressEvent, CompleteEvent, ErrorEvent, IntegrityIssueEvent]

EVENT_MODELS = {
    RealtimeMessageType.CASCADE_PROGRESS.value: ProgressEvent,
    RealtimeMessageType.CASCADE_COMPLETE.value: CompleteEvent,
    RealtimeMessageType.CASCADE_ERROR.value: ErrorEvent,
    RealtimeMessageType.INTEGRITY_ISSUE.value: IntegrityIssueEvent,
}


def parse_event(envelope: Envelope) -> Optional[RealtimeEvent]:
    """Typed event for an inbound envelope, or None for non-event types."""
    model = EVENT_MODELS.get(envelope.type)
    if model is None:
        return None
    data = dict(envelope.data)
    if not data.get("timestamp"):
        data["timestamp"] = envelope.timestamp
    return model.model_validate(data)

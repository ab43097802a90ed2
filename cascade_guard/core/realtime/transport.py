"""
Realtime Progress Transport
===========================

One long-lived duplex connection that multiplexes progress subscriptions
for many deletion operations.

Connection states (explicit transition table, see TRANSITIONS):

    DISCONNECTED --connect--> CONNECTING --open--> CONNECTED
    CONNECTED --lost--> RECONNECTING --success--> CONNECTED
    RECONNECTING --exhausted--> FAILED
    any --disconnect--> DISCONNECTED

Reconnect delay is min(base * 2^(attempt-1), max). Messages sent while not
connected are queued (bounded, age-capped) and flushed in order right after
the next successful connect, after all active subscriptions have been
re-announced. Errors never reach subscribers; they surface through the
connection-status listeners.
"""

import asyncio
import inspect
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

import structlog
from pydantic import ValidationError

from cascade_guard.core.clock import Clock, Scheduler, SystemClock, TimerHandle
from cascade_guard.core.config import Settings, get_settings
from cascade_guard.core.errors import TransportError
from cascade_guard.core.realtime.connectors import Connection, Connector
from cascade_guard.core.realtime.messages import (
    CompleteEvent,
    Envelope,
    ErrorEvent,
    IntegrityIssueEvent,
    ProgressEvent,
    RealtimeEvent,
    RealtimeMessageType,
    heartbeat_message,
    parse_event,
    subscribe_message,
    unsubscribe_message,
)

logger = structlog.get_logger()


# ==========================================================================
# Connection State
# ==========================================================================

class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


TRANSITIONS: Dict[ConnectionState, frozenset] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset({
        ConnectionState.CONNECTED,
        ConnectionState.RECONNECTING,
        ConnectionState.FAILED,
        ConnectionState.DISCONNECTED,
    }),
    ConnectionState.CONNECTED: frozenset({
        ConnectionState.RECONNECTING,
        ConnectionState.FAILED,
        ConnectionState.DISCONNECTED,
    }),
    ConnectionState.RECONNECTING: frozenset({
        ConnectionState.RECONNECTING,
        ConnectionState.CONNECTED,
        ConnectionState.FAILED,
        ConnectionState.DISCONNECTED,
    }),
    ConnectionState.FAILED: frozenset({ConnectionState.CONNECTING, ConnectionState.DISCONNECTED}),
}

STATUS_MESSAGES = {
    ConnectionState.CONNECTING: "Connecting to live updates...",
    ConnectionState.CONNECTED: "Live updates connected",
    ConnectionState.DISCONNECTED: "Live updates disconnected",
    ConnectionState.RECONNECTING: "Connection lost, reconnecting...",
    ConnectionState.FAILED: "Unable to reach live updates. Please refresh manually.",
}


def reconnect_delay_ms(attempt: int, base_ms: int, max_ms: int) -> int:
    """Backoff delay for the n-th (1-based) reconnect attempt."""
    return min(base_ms * 2 ** (attempt - 1), max_ms)


@dataclass
class ConnectionStats:
    total_connections: int = 0
    total_reconnects: int = 0
    last_connected: Optional[datetime] = None
    last_disconnected: Optional[datetime] = None
    total_messages: int = 0
    total_errors: int = 0
    stale_events_dropped: int = 0


# ==========================================================================
# Outbound Queue
# ==========================================================================

@dataclass(frozen=True)
class QueuedMessage:
    envelope: Envelope
    queued_at: datetime


class OutboundQueue:
    """Bounded FIFO; the oldest entry is dropped when full."""

    def __init__(self, max_size: int, max_age_seconds: float):
        self.max_age_seconds = max_age_seconds
        self._items: Deque[QueuedMessage] = deque(maxlen=max_size)

    def __len__(self) -> int:
        return len(self._items)

    def push(self, envelope: Envelope, now: datetime) -> None:
        if len(self._items) == self._items.maxlen:
            logger.warning("realtime_queue_full", dropped_type=self._items[0].envelope.type)
        self._items.append(QueuedMessage(envelope, now))

    def drain(self, now: datetime) -> List[Envelope]:
        """Remove and return every entry younger than max_age_seconds, oldest first."""
        fresh = [
            item.envelope
            for item in self._items
            if (now - item.queued_at).total_seconds() < self.max_age_seconds
        ]
        expired = len(self._items) - len(fresh)
        if expired:
            logger.info("realtime_queue_expired", dropped=expired)
        self._items.clear()
        return fresh

    def clear(self) -> None:
        self._items.clear()


# ==========================================================================
# Subscriptions
# ==========================================================================

Callback = Callable[[Any], Union[None, Awaitable[None]]]
StatusListener = Callable[[Dict[str, Any]], None]


class Subscription:
    """Handle returned by subscribe(). unsubscribe() is idempotent."""

    def __init__(
        self,
        transport: "RealtimeProgressTransport",
        operation_id: str,
        on_progress: Optional[Callback] = None,
        on_complete: Optional[Callback] = None,
        on_error: Optional[Callback] = None,
    ):
        self._transport = transport
        self.operation_id = operation_id
        self.on_progress = on_progress
        self.on_complete = on_complete
        self.on_error = on_error
        self.active = True

    async def unsubscribe(self) -> None:
        await self._transport.unsubscribe(self)


@dataclass
class _Operation:
    subscribers: List[Subscription] = field(default_factory=list)
    last_progress_at: Optional[datetime] = None
    last_percentage: float = -1.0

    def is_stale(self, event: ProgressEvent) -> bool:
        """Older than the last delivered event, or no further along at the same instant."""
        if self.last_progress_at is None:
            return False
        if event.timestamp != self.last_progress_at:
            return event.timestamp < self.last_progress_at
        return event.percentage <= self.last_percentage


# ==========================================================================
# Transport
# ==========================================================================

class RealtimeProgressTransport:
    """
    Resilient websocket client for cascade deletion progress.

    Usage:
        transport = RealtimeProgressTransport(AiohttpConnector(), AsyncioScheduler())
        await transport.connect()
        sub = await transport.subscribe(op_id, on_progress=..., on_complete=..., on_error=...)
        ...
        await sub.unsubscribe()
    """

    def __init__(
        self,
        connector: Connector,
        scheduler: Scheduler,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        url: Optional[str] = None,
    ):
        self.settings = settings or get_settings()
        self.connector = connector
        self.scheduler = scheduler
        self.clock = clock or SystemClock()
        self.url = url or self.settings.REALTIME_URL

        self.stats = ConnectionStats()
        self.reconnect_attempts = 0
        self._state = ConnectionState.DISCONNECTED
        self._connection: Optional[Connection] = None
        self._reader: Optional[asyncio.Task] = None
        self._heartbeat: Optional[TimerHandle] = None
        self._reconnect_timer: Optional[TimerHandle] = None
        self._manual_disconnect = False
        self._queue = OutboundQueue(
            self.settings.OUTBOUND_QUEUE_MAX,
            self.settings.OUTBOUND_QUEUE_MAX_AGE_SECONDS,
        )
        self._operations: Dict[str, _Operation] = {}
        self._status_listeners: List[StatusListener] = []
        self._integrity_listeners: List[Callback] = []

    # ==========================================================================
    # State
    # ==========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self._connection is not None

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    @property
    def active_operations(self) -> List[str]:
        return list(self._operations)

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        self._status_listeners.append(listener)

        def remove() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return remove

    def on_integrity_issue(self, listener: Callback) -> Callable[[], None]:
        self._integrity_listeners.append(listener)

        def remove() -> None:
            if listener in self._integrity_listeners:
                self._integrity_listeners.remove(listener)

        return remove

    def _set_state(self, new_state: ConnectionState) -> bool:
        old_state = self._state
        if new_state not in TRANSITIONS[old_state]:
            logger.error("realtime_illegal_transition", from_state=old_state.value, to_state=new_state.value)
            return False

        self._state = new_state
        payload = {
            "state": new_state.value,
            "previous_state": old_state.value,
            "message": STATUS_MESSAGES[new_state],
            "reconnect_attempts": self.reconnect_attempts,
            "timestamp": self.clock.now().isoformat(),
        }
        logger.info(
            "realtime_state_changed",
            state=new_state.value,
            previous_state=old_state.value,
            reconnect_attempts=self.reconnect_attempts,
        )
        for listener in list(self._status_listeners):
            try:
                listener(payload)
            except Exception as e:
                logger.error("realtime_status_listener_failed", error=str(e))
        return True

    # ==========================================================================
    # Connect / Disconnect
    # ==========================================================================

    async def connect(self) -> None:
        """Open the connection. No-op while connected or already trying."""
        if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING, ConnectionState.RECONNECTING):
            return
        self._manual_disconnect = False
        self.reconnect_attempts = 0
        self._set_state(ConnectionState.CONNECTING)
        await self._open()

    async def _open(self) -> None:
        if self._manual_disconnect:
            return

        timeout = self.settings.CONNECTION_TIMEOUT_SECONDS
        try:
            connection = await asyncio.wait_for(self.connector.connect(self.url, timeout), timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats.total_errors += 1
            logger.warning("realtime_connect_failed", url=self.url, error=str(e) or type(e).__name__)
            self._handle_disconnection()
            return

        if self._manual_disconnect:
            await connection.close()
            return

        self._connection = connection
        self.reconnect_attempts = 0
        self.stats.total_connections += 1
        self.stats.last_connected = self.clock.now()
        self._set_state(ConnectionState.CONNECTED)

        self._heartbeat = self.scheduler.call_every(
            self.settings.HEARTBEAT_INTERVAL_SECONDS,
            self._send_heartbeat,
        )
        self._reader = asyncio.ensure_future(self._read_loop(connection))

        for operation_id in list(self._operations):
            message = subscribe_message(operation_id, self.settings.SUBSCRIPTION_ID_FIELD)
            await self._send_now(message, queue_on_failure=False)
        for envelope in self._queue.drain(self.clock.now()):
            await self._send_now(envelope)

    def _handle_disconnection(self) -> None:
        if self._manual_disconnect:
            return
        if self.reconnect_attempts >= self.settings.MAX_RECONNECT_ATTEMPTS:
            self._set_state(ConnectionState.FAILED)
            logger.error("realtime_reconnect_exhausted", attempts=self.reconnect_attempts)
            return

        self.reconnect_attempts += 1
        self.stats.total_reconnects += 1
        self._set_state(ConnectionState.RECONNECTING)
        delay_ms = reconnect_delay_ms(
            self.reconnect_attempts,
            self.settings.RECONNECT_BASE_DELAY_MS,
            self.settings.RECONNECT_MAX_DELAY_MS,
        )
        logger.info(
            "realtime_reconnect_scheduled",
            attempt=self.reconnect_attempts,
            max_attempts=self.settings.MAX_RECONNECT_ATTEMPTS,
            delay_ms=delay_ms,
        )
        self._reconnect_timer = self.scheduler.call_later(delay_ms / 1000.0, self._open)

    def _connection_lost(self) -> None:
        self._stop_heartbeat()
        self._connection = None
        self._reader = None
        self.stats.last_disconnected = self.clock.now()
        logger.warning("realtime_connection_lost", url=self.url)
        self._handle_disconnection()

    async def disconnect(self) -> None:
        """Close the connection and suppress reconnection. Subscriptions are kept."""
        self._manual_disconnect = True
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None
        self._stop_heartbeat()

        reader, self._reader = self._reader, None
        connection, self._connection = self._connection, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        if connection is not None:
            try:
                await connection.close()
            except Exception as e:
                logger.warning("realtime_close_failed", error=str(e))
            self.stats.last_disconnected = self.clock.now()

        self._queue.clear()
        self.reconnect_attempts = 0
        if self._state != ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.DISCONNECTED)

    def _stop_heartbeat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None

    # ==========================================================================
    # Outbound
    # ==========================================================================

    async def send(self, message_type: str, data: Optional[Dict[str, Any]] = None) -> None:
        """Send now if connected, otherwise queue for the next connect."""
        envelope = Envelope(type=message_type, data=data or {}, timestamp=self.clock.now())
        if self.is_connected:
            await self._send_now(envelope)
        else:
            self._queue.push(envelope, self.clock.now())

    async def _send_now(self, envelope: Envelope, queue_on_failure: bool = True) -> None:
        connection = self._connection
        if connection is None:
            if queue_on_failure:
                self._queue.push(envelope, self.clock.now())
            return
        try:
            await connection.send(envelope.to_json())
        except Exception as e:
            self.stats.total_errors += 1
            logger.warning("realtime_send_failed", type=envelope.type, error=str(e))
            if queue_on_failure:
                self._queue.push(envelope, self.clock.now())

    async def _send_heartbeat(self) -> None:
        if self.is_connected:
            await self._send_now(heartbeat_message(), queue_on_failure=False)

    # ==========================================================================
    # Subscriptions
    # ==========================================================================

    async def subscribe(
        self,
        operation_id: str,
        on_progress: Optional[Callback] = None,
        on_complete: Optional[Callback] = None,
        on_error: Optional[Callback] = None,
    ) -> Subscription:
        """
        Receive events for one operation.

        Raises:
            TransportError: empty operation id
        """
        if not operation_id:
            raise TransportError("operation id is required to subscribe")

        subscription = Subscription(self, operation_id, on_progress, on_complete, on_error)
        first = operation_id not in self._operations
        self._operations.setdefault(operation_id, _Operation()).subscribers.append(subscription)
        if first and self.is_connected:
            message = subscribe_message(operation_id, self.settings.SUBSCRIPTION_ID_FIELD)
            await self._send_now(message, queue_on_failure=False)
        logger.debug("realtime_subscribed", operation_id=operation_id, first=first)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        if not subscription.active:
            return
        subscription.active = False

        operation = self._operations.get(subscription.operation_id)
        if operation is None:
            return
        if subscription in operation.subscribers:
            operation.subscribers.remove(subscription)
        if operation.subscribers:
            return

        del self._operations[subscription.operation_id]
        if self.is_connected:
            message = unsubscribe_message(subscription.operation_id, self.settings.SUBSCRIPTION_ID_FIELD)
            await self._send_now(message, queue_on_failure=False)
        logger.debug("realtime_unsubscribed", operation_id=subscription.operation_id)

    def _teardown(self, operation_id: str) -> None:
        operation = self._operations.pop(operation_id, None)
        if operation is None:
            return
        for subscription in operation.subscribers:
            subscription.active = False

    # ==========================================================================
    # Inbound
    # ==========================================================================

    async def _read_loop(self, connection: Connection) -> None:
        try:
            while True:
                raw = await connection.receive()
                if raw is None:
                    break
                await self._handle_raw(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats.total_errors += 1
            logger.warning("realtime_read_failed", error=str(e))

        if connection is self._connection and not self._manual_disconnect:
            self._connection_lost()

    async def _handle_raw(self, raw: str) -> None:
        self.stats.total_messages += 1
        try:
            envelope = Envelope.from_json(raw)
            if envelope.type == RealtimeMessageType.HEARTBEAT.value:
                await self._send_now(heartbeat_message(response=True), queue_on_failure=False)
                return
            if envelope.type == RealtimeMessageType.HEARTBEAT_RESPONSE.value:
                return
            event = parse_event(envelope)
        except ValidationError as e:
            self.stats.total_errors += 1
            logger.warning("realtime_message_invalid", error=str(e))
            return

        if event is None:
            logger.warning("realtime_message_unknown", type=envelope.type)
            return
        await self._dispatch(event)

    async def _dispatch(self, event: RealtimeEvent) -> None:
        if isinstance(event, IntegrityIssueEvent):
            for listener in list(self._integrity_listeners):
                await self._invoke(listener, event)
            return

        operation = self._operations.get(event.operation_id)
        if operation is None:
            return

        if isinstance(event, ProgressEvent):
            if operation.is_stale(event):
                self.stats.stale_events_dropped += 1
                return
            operation.last_progress_at = event.timestamp
            operation.last_percentage = event.percentage
            for subscription in list(operation.subscribers):
                if subscription.on_progress is not None:
                    await self._invoke(subscription.on_progress, event)
            return

        for subscription in list(operation.subscribers):
            handler = subscription.on_complete if isinstance(event, CompleteEvent) else subscription.on_error
            if handler is not None:
                await self._invoke(handler, event)
        if isinstance(event, (CompleteEvent, ErrorEvent)):
            self._teardown(event.operation_id)

    async def _invoke(self, handler: Callback, event: RealtimeEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("realtime_handler_failed", type=type(event).__name__, error=str(e))

"""
Cascade Guard - User Notifications
==================================

Notices surfaced to the UI layer (reverted changes, rollback failures,
connection problems). The UI subscribes with add_listener().
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

import structlog

logger = structlog.get_logger()


class NotificationLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class Notification:
    """Notice payload."""
    level: NotificationLevel
    title: str
    message: str
    persistent: bool = False
    duration_ms: Optional[int] = 5000
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default_factory=lambda: str(uuid4()))


NotificationListener = Callable[[Notification], None]


class NotificationCenter:
    """
    Collects notices and fans them out to listeners.

    `safe_state` is raised when local state may no longer match the server
    (e.g. a rollback failed) and stays raised until acknowledged.
    """

    def __init__(self) -> None:
        self._listeners: List[NotificationListener] = []
        self._history: List[Notification] = []
        self.safe_state = False

    def add_listener(self, listener: NotificationListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def notify(self, notification: Notification) -> Notification:
        self._history.append(notification)
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception as e:
                logger.error("notification_listener_failed", error=str(e), title=notification.title)
        return notification

    def info(self, title: str, message: str, **data: Any) -> Notification:
        return self.notify(Notification(NotificationLevel.INFO, title, message, data=data))

    def advisory(self, title: str, message: str, **data: Any) -> Notification:
        """Persistent error notice that stays until the user dismisses it."""
        return self.notify(Notification(
            NotificationLevel.ERROR,
            title,
            message,
            persistent=True,
            duration_ms=None,
            data=data,
        ))

    def enter_safe_state(self, reason: str) -> None:
        if not self.safe_state:
            logger.warning("safe_state_entered", reason=reason)
        self.safe_state = True

    def acknowledge_safe_state(self) -> None:
        self.safe_state = False

    @property
    def history(self) -> List[Notification]:
        return list(self._history)

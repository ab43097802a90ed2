"""
Progress Tracker - periodic snapshots and read-only analytics.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, List, Optional, Tuple

import structlog

from cascade_guard.core.clock import Clock, Scheduler, SystemClock, TimerHandle
from cascade_guard.core.config import Settings, get_settings

logger = structlog.get_logger()


@dataclass(frozen=True)
class ProgressInfo:
    percentage: float
    processed_entities: int = 0
    total_entities: Optional[int] = None
    errors: int = 0
    warnings: int = 0
    started_at: Optional[datetime] = None
    current_step: Optional[str] = None


@dataclass(frozen=True)
class ProgressSnapshot:
    operation_id: str
    timestamp: datetime
    progress: ProgressInfo
    estimated_completion: Optional[datetime] = None


@dataclass(frozen=True)
class ProgressAnalytics:
    operation_id: str
    progress_rate: float  # percent per millisecond
    entity_velocity: float  # entities per second
    estimated_completion: Optional[datetime]
    snapshot_count: int


SnapshotListener = Callable[[ProgressSnapshot], None]


def estimate_completion(progress: ProgressInfo, now: datetime) -> Optional[datetime]:
    """Linear ETA from the operation's start time."""
    if progress.started_at is None or progress.percentage <= 0:
        return None
    elapsed = (now - progress.started_at).total_seconds()
    if elapsed <= 0:
        return None
    total = elapsed * 100.0 / progress.percentage
    return progress.started_at + timedelta(seconds=total)


@dataclass
class _Tracking:
    timer: TimerHandle
    latest: Optional[ProgressInfo] = None
    listeners: List[SnapshotListener] = field(default_factory=list)


class ProgressTracker:
    """
    Samples the latest known progress of active operations.

    The transport (or coordinator) feeds progress in with update(); every
    SNAPSHOT_INTERVAL_SECONDS the latest value is stored in a ring buffer of
    the last SNAPSHOT_CAPACITY snapshots per operation.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.scheduler = scheduler
        self.clock = clock or SystemClock()
        self.interval = settings.SNAPSHOT_INTERVAL_SECONDS
        self.capacity = settings.SNAPSHOT_CAPACITY
        self._active: Dict[str, _Tracking] = {}
        self._snapshots: Dict[str, Deque[ProgressSnapshot]] = {}

    def is_tracking(self, operation_id: str) -> bool:
        return operation_id in self._active

    def start_tracking(self, operation_id: str) -> None:
        if operation_id in self._active:
            return
        timer = self.scheduler.call_every(self.interval, lambda: self.capture(operation_id))
        self._active[operation_id] = _Tracking(timer=timer)
        self._snapshots.setdefault(operation_id, deque(maxlen=self.capacity))
        logger.debug("progress_tracking_started", operation_id=operation_id)

    def stop_tracking(self, operation_id: str) -> None:
        tracking = self._active.pop(operation_id, None)
        if tracking is not None:
            tracking.timer.cancel()
        self._snapshots.pop(operation_id, None)
        logger.debug("progress_tracking_stopped", operation_id=operation_id)

    def update(self, operation_id: str, progress: ProgressInfo) -> None:
        tracking = self._active.get(operation_id)
        if tracking is not None:
            tracking.latest = progress

    def subscribe(self, operation_id: str, listener: SnapshotListener) -> Callable[[], None]:
        tracking = self._active.get(operation_id)
        if tracking is None:
            return lambda: None
        tracking.listeners.append(listener)

        def unsubscribe() -> None:
            if listener in tracking.listeners:
                tracking.listeners.remove(listener)

        return unsubscribe

    def capture(self, operation_id: str) -> Optional[ProgressSnapshot]:
        tracking = self._active.get(operation_id)
        if tracking is None or tracking.latest is None:
            return None
        now = self.clock.now()
        snapshot = ProgressSnapshot(
            operation_id=operation_id,
            timestamp=now,
            progress=tracking.latest,
            estimated_completion=estimate_completion(tracking.latest, now),
        )
        self._snapshots[operation_id].append(snapshot)
        for listener in list(tracking.listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error("progress_listener_failed", operation_id=operation_id, error=str(e))
        return snapshot

    def snapshots(self, operation_id: str) -> Tuple[ProgressSnapshot, ...]:
        return tuple(self._snapshots.get(operation_id, ()))

    def analytics(self, operation_id: str) -> Optional[ProgressAnalytics]:
        """Rate, velocity and ETA from the first to the latest snapshot."""
        snapshots = self._snapshots.get(operation_id)
        if not snapshots or len(snapshots) < 2:
            return None

        first, last = snapshots[0], snapshots[-1]
        elapsed_ms = (last.timestamp - first.timestamp).total_seconds() * 1000.0
        if elapsed_ms <= 0:
            return None

        rate = (last.progress.percentage - first.progress.percentage) / elapsed_ms
        velocity = (
            (last.progress.processed_entities - first.progress.processed_entities)
            / (elapsed_ms / 1000.0)
        )

        eta = None
        if rate > 0:
            remaining = max(0.0, 100.0 - last.progress.percentage)
            eta = last.timestamp + timedelta(milliseconds=remaining / rate)

        return ProgressAnalytics(
            operation_id=operation_id,
            progress_rate=rate,
            entity_velocity=velocity,
            estimated_completion=eta,
            snapshot_count=len(snapshots),
        )

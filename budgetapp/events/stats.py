"""Event bus statistics: counters under a lock, read through snapshots."""

import threading
from dataclasses import dataclass
from datetime import datetime, timezone

__all__ = ["EventBusStats", "StatsRecorder"]


@dataclass(frozen=True)
class EventBusStats:
    """Point-in-time copy of bus statistics.

    average_process_time is the exact mean handler duration in seconds
    (total duration / processed invocations).
    """

    events_published: int = 0
    events_processed: int = 0
    events_failed: int = 0
    persistence_failures: int = 0
    active_subscriptions: int = 0
    total_subscriptions: int = 0
    average_process_time: float = 0.0
    last_event_time: datetime | None = None


class StatsRecorder:
    """Mutable counters owned by one EventBus."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._published = 0
        self._processed = 0
        self._failed = 0
        self._persistence_failures = 0
        self._active = 0
        self._total = 0
        self._duration_total = 0.0
        self._last_event_time: datetime | None = None

    def subscription_added(self) -> None:
        with self._lock:
            self._active += 1
            self._total += 1

    def subscription_removed(self, was_active: bool) -> None:
        if not was_active:
            return
        with self._lock:
            self._active -= 1

    def event_published(self) -> None:
        with self._lock:
            self._published += 1
            self._last_event_time = datetime.now(timezone.utc)

    def handler_finished(self, duration: float, failed: bool) -> None:
        with self._lock:
            self._processed += 1
            self._duration_total += duration
            if failed:
                self._failed += 1

    def persistence_failed(self) -> None:
        with self._lock:
            self._persistence_failures += 1

    def snapshot(self) -> EventBusStats:
        with self._lock:
            average = self._duration_total / self._processed if self._processed else 0.0
            return EventBusStats(
                events_published=self._published,
                events_processed=self._processed,
                events_failed=self._failed,
                persistence_failures=self._persistence_failures,
                active_subscriptions=self._active,
                total_subscriptions=self._total,
                average_process_time=average,
                last_event_time=self._last_event_time,
            )

"""Handler-wrapping middleware for EventBus.use().

A middleware takes a handler and returns a handler. The first middleware
registered on the bus is the outermost wrapper.
"""

import asyncio
import logging
import threading
import time
from collections import defaultdict, deque
from typing import Callable, Protocol

from budgetapp.events.models import Event
from budgetapp.events.subscriptions import EventHandler

__all__ = [
    "ErrorHandler",
    "InMemoryMetricsCollector",
    "MetricsCollector",
    "Middleware",
    "error_handling_middleware",
    "logging_middleware",
    "metrics_middleware",
    "timeout_middleware",
]

Middleware = Callable[[EventHandler], EventHandler]


def logging_middleware(log: logging.Logger | None = None) -> Middleware:
    """Log start, completion time and failure of each handler invocation."""
    log = log or logging.getLogger(__name__)

    def middleware(next_handler: EventHandler) -> EventHandler:
        async def handler(event: Event) -> None:
            start = time.perf_counter()
            log.info("Processing event %s (%s) from %s", event.type, event.id, event.source)
            try:
                await next_handler(event)
            except Exception as e:
                log.error(
                    "Event processing failed: %s (%s) after %.3fs: %s",
                    event.type,
                    event.id,
                    time.perf_counter() - start,
                    e,
                )
                raise
            log.info(
                "Event processed: %s (%s) in %.3fs",
                event.type,
                event.id,
                time.perf_counter() - start,
            )

        return handler

    return middleware


class MetricsCollector(Protocol):
    def increment_counter(self, name: str, labels: dict[str, str]) -> None: ...

    def record_histogram(self, name: str, value: float, labels: dict[str, str]) -> None: ...


class InMemoryMetricsCollector:
    """Counters and histogram samples keyed by (name, sorted labels).

    Each histogram keeps only its most recent max_samples observations.
    """

    def __init__(self, max_samples: int = 1000) -> None:
        if max_samples < 1:
            raise ValueError("max_samples must be >= 1")
        self._lock = threading.Lock()
        self._counters: dict[tuple[str, tuple[tuple[str, str], ...]], int] = defaultdict(int)
        self._histograms: dict[tuple[str, tuple[tuple[str, str], ...]], deque[float]] = (
            defaultdict(lambda: deque(maxlen=max_samples))
        )

    @staticmethod
    def _key(name: str, labels: dict[str, str]) -> tuple[str, tuple[tuple[str, str], ...]]:
        return (name, tuple(sorted(labels.items())))

    def increment_counter(self, name: str, labels: dict[str, str]) -> None:
        with self._lock:
            self._counters[self._key(name, labels)] += 1

    def record_histogram(self, name: str, value: float, labels: dict[str, str]) -> None:
        with self._lock:
            self._histograms[self._key(name, labels)].append(value)

    def counter(self, name: str, **labels: str) -> int:
        """Counter value for an exact label set, or summed across labels if none given."""
        with self._lock:
            if labels:
                return self._counters.get(self._key(name, labels), 0)
            return sum(v for (n, _), v in self._counters.items() if n == name)

    def histogram(self, name: str, **labels: str) -> list[float]:
        with self._lock:
            if labels:
                return list(self._histograms.get(self._key(name, labels), []))
            return [s for (n, _), vs in self._histograms.items() if n == name for s in vs]


def metrics_middleware(collector: MetricsCollector) -> Middleware:
    """Count processed/succeeded/failed invocations and record their duration."""

    def middleware(next_handler: EventHandler) -> EventHandler:
        async def handler(event: Event) -> None:
            labels = {"event_type": event.type, "source": event.source}
            collector.increment_counter("events_processed_total", labels)
            start = time.perf_counter()
            try:
                await next_handler(event)
            except Exception:
                collector.increment_counter("events_failed_total", labels)
                raise
            else:
                collector.increment_counter("events_succeeded_total", labels)
            finally:
                collector.record_histogram(
                    "event_processing_duration_seconds", time.perf_counter() - start, labels
                )

        return handler

    return middleware


class ErrorHandler(Protocol):
    def handle_error(self, event: Event, error: Exception) -> None: ...


def error_handling_middleware(error_handler: ErrorHandler) -> Middleware:
    """Report handler errors to error_handler, then re-raise."""

    def middleware(next_handler: EventHandler) -> EventHandler:
        async def handler(event: Event) -> None:
            try:
                await next_handler(event)
            except Exception as e:
                error_handler.handle_error(event, e)
                raise

        return handler

    return middleware


def timeout_middleware(seconds: float) -> Middleware:
    """Bound each handler invocation; raises TimeoutError when exceeded."""
    if seconds <= 0:
        raise ValueError("timeout must be positive")

    def middleware(next_handler: EventHandler) -> EventHandler:
        async def handler(event: Event) -> None:
            await asyncio.wait_for(next_handler(event), timeout=seconds)

        return handler

    return middleware

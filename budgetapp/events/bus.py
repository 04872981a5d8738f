"""In-process event dispatcher: match -> concurrent fan-out -> aggregate errors -> persist.

Handlers are coroutines ``async def handler(event) -> None``; raising marks the
invocation as failed. Persistence is best-effort: storage errors are logged and
counted, never raised to the publisher.

A handler may await publish() for follow-up events. Those nested deliveries run
inside the calling handler's concurrency slot instead of waiting for a new one.
"""

import asyncio
import contextvars
import logging
import threading
import time
from typing import Any, Callable

from budgetapp.events.errors import (
    EventBusClosedError,
    EventBusError,
    HandlerFailure,
    PublishError,
)
from budgetapp.events.middleware import Middleware
from budgetapp.events.models import Event
from budgetapp.events.stats import EventBusStats, StatsRecorder
from budgetapp.events.subscriptions import EventHandler, Subscription, SubscriptionRegistry
from budgetapp.ids import IdGenerator, UuidIdGenerator
from budgetapp.storage.base import StorageProvider

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 32
DEFAULT_PERSIST_TTL = 24 * 60 * 60.0

# Set inside a running handler. Publishes made from there reuse the caller's slot
_in_handler: contextvars.ContextVar[bool] = contextvars.ContextVar("in_handler", default=False)


class EventBus:
    """Pattern-matching pub/sub with bounded concurrent delivery."""

    def __init__(
        self,
        storage: StorageProvider | None = None,
        id_generator: IdGenerator | None = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        persist_ttl: float = DEFAULT_PERSIST_TTL,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._registry = SubscriptionRegistry()
        self._middleware: list[Middleware] = []
        self._middleware_lock = threading.Lock()
        self._storage = storage
        self._ids = id_generator or UuidIdGenerator()
        self._persist_ttl = persist_ttl
        self._max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._stats = StatsRecorder()
        self._pending: set[asyncio.Task[None]] = set()
        self._closed = False

    # --- registration ---

    def subscribe(
        self,
        event_type: str,
        handler: EventHandler,
        *,
        priority: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Register handler for one exact event type. Returns the subscription ID."""
        return self._add(event_type, handler, priority, metadata)

    def subscribe_pattern(
        self,
        pattern: str,
        handler: EventHandler,
        *,
        priority: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Register handler for '*' (all events) or 'prefix*' (string-prefix match)."""
        if "*" in pattern[:-1]:
            raise ValueError(f"only a single trailing '*' is supported: {pattern!r}")
        return self._add(pattern, handler, priority, metadata)

    def _add(
        self,
        pattern: str,
        handler: EventHandler,
        priority: int,
        metadata: dict[str, Any] | None,
    ) -> str:
        if not pattern:
            raise ValueError("pattern must be a non-empty string")
        sub = Subscription(
            id=self._ids.new_id("sub"),
            pattern=pattern,
            handler=handler,
            priority=priority,
            metadata=dict(metadata or {}),
        )
        self._registry.add(sub)
        self._stats.subscription_added()
        logger.debug("EventBus: %s subscribed to %r (priority %d)", sub.id, pattern, priority)
        return sub.id

    def unsubscribe(self, subscription_id: str) -> None:
        """Remove a subscription. Raises SubscriptionNotFoundError if unknown."""
        sub = self._registry.remove(subscription_id)
        self._stats.subscription_removed(sub.active)
        logger.debug("EventBus: %s unsubscribed from %r", sub.id, sub.pattern)

    def use(self, *middleware: Middleware) -> None:
        """Append middleware. The first registered runs outermost."""
        with self._middleware_lock:
            self._middleware.extend(middleware)

    # --- publishing ---

    async def publish(self, event: Event) -> None:
        """Deliver event to every matching active subscription and wait for all.

        Raises PublishError listing the failed subscriptions if any handler
        raised. Events with no matching subscription are a no-op.
        """
        if self._closed:
            raise EventBusClosedError(f"event bus is closed; dropped {event.type} ({event.id})")

        subs = self._registry.match(event.type)
        if not subs:
            return

        self._stats.event_published()
        wrap = self._build_chain()

        # Created in priority order; the semaphore admits waiters FIFO
        tasks = [
            asyncio.create_task(
                self._invoke(wrap, sub, event), name=f"event:{event.id}:{sub.id}"
            )
            for sub in subs
            if sub.active
        ]
        results = await asyncio.gather(*tasks)
        failures = [r for r in results if r is not None]

        await self._persist(event)

        if failures:
            raise PublishError(event.id, event.type, failures)

    def publish_async(self, event: Event) -> "asyncio.Task[None]":
        """Fire-and-forget publish. Failures are logged, never raised."""
        # Detached from any calling handler: it competes for slots like a top-level publish
        context = contextvars.copy_context()
        context.run(_in_handler.set, False)
        task = asyncio.create_task(
            self._publish_logged(event), name=f"publish:{event.id}", context=context
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _publish_logged(self, event: Event) -> None:
        try:
            await self.publish(event)
        except EventBusError as e:
            logger.error("Async event publishing failed for %s/%s: %s", event.type, event.id, e)
        except Exception:
            logger.exception("Async event publishing failed for %s/%s", event.type, event.id)

    async def _invoke(
        self, wrap: Callable[[EventHandler], EventHandler], sub: Subscription, event: Event
    ) -> HandlerFailure | None:
        handler = wrap(sub.handler)
        # A handler awaiting publish() already holds a slot; taking another can deadlock
        if _in_handler.get():
            return await self._run(handler, sub, event)
        async with self._semaphore:
            return await self._run(handler, sub, event)

    async def _run(
        self, handler: EventHandler, sub: Subscription, event: Event
    ) -> HandlerFailure | None:
        _in_handler.set(True)
        start = time.perf_counter()
        try:
            await handler(event)
        except Exception as e:
            self._stats.handler_finished(time.perf_counter() - start, failed=True)
            logger.warning(
                "EventBus handler %s failed for event %s/%s: %s",
                sub.id,
                event.type,
                event.id,
                e,
            )
            return HandlerFailure(sub.id, sub.pattern, e)
        self._stats.handler_finished(time.perf_counter() - start, failed=False)
        return None

    def _build_chain(self) -> Callable[[EventHandler], EventHandler]:
        with self._middleware_lock:
            middleware = list(self._middleware)

        def wrap(handler: EventHandler) -> EventHandler:
            for mw in reversed(middleware):
                handler = mw(handler)
            return handler

        return wrap

    async def _persist(self, event: Event) -> None:
        if self._storage is None:
            return
        try:
            await self._storage.save(f"event:{event.id}", event.to_json(), self._persist_ttl)
        except Exception as e:
            self._stats.persistence_failed()
            logger.warning("EventBus: failed to persist event %s/%s: %s", event.type, event.id, e)

    async def load_event(self, event_id: str) -> Event:
        """Read a persisted event back. Raises StorageError if absent or no storage."""
        if self._storage is None:
            raise EventBusError("event bus has no storage configured")
        return Event.from_json(await self._storage.load(f"event:{event_id}"))

    async def replay(self, event_id: str) -> None:
        """Publish a persisted event again, with its original ID and timestamp."""
        await self.publish(await self.load_event(event_id))

    # --- introspection / lifecycle ---

    def get_stats(self) -> EventBusStats:
        return self._stats.snapshot()

    @property
    def subscription_count(self) -> int:
        return len(self._registry)

    def get_event_patterns(self) -> list[str]:
        return self._registry.patterns()

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        """Reject new publishes, cancel pending async publishes and wait for them."""
        self._closed = True
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("EventBus closed (%d pending publish(es) cancelled)", len(pending))

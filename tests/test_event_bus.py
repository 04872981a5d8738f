"""Tests for EventBus: publish, subscribe, priorities, errors, persistence, shutdown."""

import asyncio
import logging

import pytest

from budgetapp.events import (
    Event,
    EventBus,
    EventBusClosedError,
    EventFactory,
    PublishError,
    SubscriptionNotFoundError,
)
from budgetapp.events.models import GenericPayload
from budgetapp.ids import SequentialIdGenerator
from budgetapp.storage import MemoryStorage, StorageError
from budgetapp.storage.base import StorageProvider


@pytest.fixture
async def event_bus(ids: SequentialIdGenerator) -> EventBus:
    bus = EventBus(id_generator=ids)
    yield bus
    await bus.close()


class _FailingStorage(MemoryStorage):
    async def save(self, key: str, value: bytes, ttl: float | None = None) -> None:
        raise StorageError("save", key, "disk full")


class TestEventBusPublishSubscribe:
    """Publish and subscribe basics."""

    @pytest.mark.asyncio
    async def test_no_matching_subscription_is_noop(
        self, event_bus: EventBus, expense_event: Event
    ) -> None:
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        event_bus.subscribe("user.login", handler)
        assert await event_bus.publish(expense_event) is None
        assert received == []
        assert event_bus.get_stats().events_published == 0
        assert event_bus.get_stats().last_event_time is None

    @pytest.mark.asyncio
    async def test_each_subscription_invoked_once(
        self, event_bus: EventBus, expense_event: Event
    ) -> None:
        calls: list[str] = []

        async def first(event: Event) -> None:
            calls.append("first")

        async def second(event: Event) -> None:
            calls.append("second")

        event_bus.subscribe("expense.created", first, priority=10)
        event_bus.subscribe("expense.created", second, priority=5)
        await event_bus.publish(expense_event)

        assert sorted(calls) == ["first", "second"]
        stats = event_bus.get_stats()
        assert stats.events_published == 1
        assert stats.events_processed == 2
        assert stats.events_failed == 0
        assert stats.last_event_time is not None

    @pytest.mark.asyncio
    async def test_handler_under_two_patterns_runs_twice(
        self, event_bus: EventBus, expense_event: Event
    ) -> None:
        received: list[str] = []

        async def handler(event: Event) -> None:
            received.append(event.id)

        event_bus.subscribe_pattern("*", handler)
        event_bus.subscribe_pattern("expense.*", handler)
        await event_bus.publish(expense_event)

        assert received == [expense_event.id, expense_event.id]
        assert event_bus.get_stats().events_processed == 2

    @pytest.mark.asyncio
    async def test_handler_receives_event(self, event_bus: EventBus, expense_event: Event) -> None:
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        event_bus.subscribe("expense.created", handler)
        await event_bus.publish(expense_event)
        assert received == [expense_event]

    @pytest.mark.asyncio
    async def test_prefix_pattern_matching(self, event_bus: EventBus, factory: EventFactory) -> None:
        seen: list[str] = []

        async def handler(event: Event) -> None:
            seen.append(event.type)

        event_bus.subscribe_pattern("foo*", handler)
        for event_type in ("foobar", "foo", "fo", "bar"):
            await event_bus.publish(factory.create(GenericPayload(), "test", event_type=event_type))
        assert seen == ["foobar", "foo"]

    @pytest.mark.asyncio
    async def test_subscription_ids_are_unique(self, event_bus: EventBus) -> None:
        async def handler(event: Event) -> None:
            pass

        sub_ids = {event_bus.subscribe("a", handler) for _ in range(5)}
        assert len(sub_ids) == 5
        assert event_bus.subscription_count == 5
        assert event_bus.get_stats().total_subscriptions == 5

    @pytest.mark.asyncio
    async def test_invalid_patterns_rejected(self, event_bus: EventBus) -> None:
        async def handler(event: Event) -> None:
            pass

        with pytest.raises(ValueError):
            event_bus.subscribe("", handler)
        with pytest.raises(ValueError):
            event_bus.subscribe_pattern("a*b", handler)

    @pytest.mark.asyncio
    async def test_get_event_patterns(self, event_bus: EventBus) -> None:
        async def handler(event: Event) -> None:
            pass

        event_bus.subscribe("expense.created", handler)
        event_bus.subscribe_pattern("*", handler)
        event_bus.subscribe("expense.created", handler)
        assert event_bus.get_event_patterns() == ["*", "expense.created"]


class TestEventBusUnsubscribe:
    """Unsubscribe semantics."""

    @pytest.mark.asyncio
    async def test_unknown_id_raises(self, event_bus: EventBus) -> None:
        with pytest.raises(SubscriptionNotFoundError) as exc_info:
            event_bus.unsubscribe("sub_missing")
        assert isinstance(exc_info.value, LookupError)
        assert exc_info.value.subscription_id == "sub_missing"

    @pytest.mark.asyncio
    async def test_unsubscribed_handler_not_invoked(
        self, event_bus: EventBus, expense_event: Event
    ) -> None:
        calls: list[str] = []

        async def handler(event: Event) -> None:
            calls.append(event.id)

        sub_id = event_bus.subscribe("expense.created", handler)
        event_bus.unsubscribe(sub_id)
        await event_bus.publish(expense_event)

        assert calls == []
        assert event_bus.get_stats().active_subscriptions == 0
        with pytest.raises(SubscriptionNotFoundError):
            event_bus.unsubscribe(sub_id)
        assert event_bus.get_stats().active_subscriptions == 0

    @pytest.mark.asyncio
    async def test_inactive_subscription_still_counts_publish(
        self, event_bus: EventBus, expense_event: Event
    ) -> None:
        async def handler(event: Event) -> None:
            raise AssertionError("inactive subscription invoked")

        sub_id = event_bus.subscribe("expense.created", handler)
        event_bus._registry.get(sub_id).active = False
        await event_bus.publish(expense_event)

        stats = event_bus.get_stats()
        assert stats.events_published == 1
        assert stats.events_processed == 0


class TestEventBusOrdering:
    """Priority scheduling order."""

    @pytest.mark.asyncio
    async def test_sequential_by_priority_then_insertion(
        self, ids: SequentialIdGenerator, expense_event: Event
    ) -> None:
        bus = EventBus(id_generator=ids, max_concurrency=1)
        order: list[str] = []

        def make(name: str):
            async def handler(event: Event) -> None:
                order.append(name)
                await asyncio.sleep(0)

            return handler

        bus.subscribe_pattern("*", make("low"), priority=1)
        bus.subscribe("expense.created", make("high"), priority=10)
        bus.subscribe_pattern("expense.*", make("mid-a"), priority=5)
        bus.subscribe("expense.created", make("mid-b"), priority=5)
        await bus.publish(expense_event)
        await bus.close()

        assert order == ["high", "mid-a", "mid-b", "low"]

    def test_max_concurrency_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            EventBus(max_concurrency=0)

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, ids: SequentialIdGenerator, expense_event: Event) -> None:
        bus = EventBus(id_generator=ids, max_concurrency=2)
        running = 0
        peak = 0

        async def handler(event: Event) -> None:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        for _ in range(6):
            bus.subscribe("expense.created", handler)
        await bus.publish(expense_event)
        await bus.close()

        assert peak == 2
        assert bus.get_stats().events_processed == 6

    @pytest.mark.asyncio
    async def test_handler_can_await_publish_at_concurrency_one(
        self, ids: SequentialIdGenerator, factory: EventFactory, expense_event: Event
    ) -> None:
        bus = EventBus(id_generator=ids, max_concurrency=1)
        order: list[str] = []

        async def outer(event: Event) -> None:
            order.append("outer-start")
            await bus.publish(factory.create(GenericPayload(), "test", event_type="followup"))
            order.append("outer-end")

        async def inner(event: Event) -> None:
            order.append("inner")

        bus.subscribe("expense.created", outer)
        bus.subscribe("followup", inner)
        await asyncio.wait_for(bus.publish(expense_event), timeout=2)
        await bus.close()

        assert order == ["outer-start", "inner", "outer-end"]
        assert bus.get_stats().events_processed == 2

    @pytest.mark.asyncio
    async def test_publish_async_from_handler_waits_for_a_slot(
        self, ids: SequentialIdGenerator, factory: EventFactory, expense_event: Event
    ) -> None:
        bus = EventBus(id_generator=ids, max_concurrency=1)
        running = 0
        peak = 0
        spawned: list[asyncio.Task[None]] = []

        async def track(event: Event) -> None:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        async def outer(event: Event) -> None:
            followup = factory.create(GenericPayload(), "test", event_type="followup")
            spawned.append(bus.publish_async(followup))
            await track(event)

        bus.subscribe("expense.created", outer)
        bus.subscribe("followup", track)
        await bus.publish(expense_event)
        await asyncio.wait_for(spawned[0], timeout=2)
        await bus.close()

        assert peak == 1
        assert bus.get_stats().events_processed == 2


class TestEventBusErrors:
    """Handler failures are aggregated."""

    @pytest.mark.asyncio
    async def test_failing_handler_reported_with_subscription_id(
        self, event_bus: EventBus, expense_event: Event
    ) -> None:
        ok_calls: list[str] = []

        async def ok(event: Event) -> None:
            ok_calls.append(event.id)

        async def broken(event: Event) -> None:
            raise RuntimeError("boom")

        event_bus.subscribe("expense.created", ok)
        bad_id = event_bus.subscribe("expense.created", broken)

        with pytest.raises(PublishError) as exc_info:
            await event_bus.publish(expense_event)

        err = exc_info.value
        assert bad_id in str(err)
        assert "boom" in str(err)
        assert err.subscription_ids == [bad_id]
        assert isinstance(err.failures[0].error, RuntimeError)
        assert err.failures[0].pattern == "expense.created"
        assert ok_calls == [expense_event.id]
        stats = event_bus.get_stats()
        assert stats.events_failed == 1
        assert stats.events_processed == 2

    @pytest.mark.asyncio
    async def test_all_failures_listed(self, event_bus: EventBus, expense_event: Event) -> None:
        async def broken(event: Event) -> None:
            raise ValueError("bad")

        first = event_bus.subscribe("expense.created", broken)
        second = event_bus.subscribe_pattern("*", broken)

        with pytest.raises(PublishError) as exc_info:
            await event_bus.publish(expense_event)
        assert sorted(exc_info.value.subscription_ids) == sorted([first, second])
        assert event_bus.get_stats().events_failed == 2

    @pytest.mark.asyncio
    async def test_slow_sibling_not_cancelled_by_failure(
        self, event_bus: EventBus, expense_event: Event
    ) -> None:
        finished: list[str] = []

        async def slow(event: Event) -> None:
            await asyncio.sleep(0.05)
            finished.append("slow")

        async def broken(event: Event) -> None:
            raise RuntimeError("fast failure")

        event_bus.subscribe("expense.created", slow)
        event_bus.subscribe("expense.created", broken)
        with pytest.raises(PublishError):
            await event_bus.publish(expense_event)
        assert finished == ["slow"]


class TestEventBusStats:
    """Statistics snapshots."""

    @pytest.mark.asyncio
    async def test_counters_under_concurrent_publishes(
        self, event_bus: EventBus, factory: EventFactory
    ) -> None:
        async def handler(event: Event) -> None:
            await asyncio.sleep(0)

        event_bus.subscribe_pattern("*", handler)
        events = [factory.create(GenericPayload(), "test", event_type="tick") for _ in range(20)]
        await asyncio.gather(*(event_bus.publish(e) for e in events))

        stats = event_bus.get_stats()
        assert stats.events_published == 20
        assert stats.events_processed == 20
        assert stats.average_process_time >= 0.0

    @pytest.mark.asyncio
    async def test_average_is_exact_mean(self, event_bus: EventBus, expense_event: Event) -> None:
        async def handler(event: Event) -> None:
            await asyncio.sleep(0.02)

        event_bus.subscribe("expense.created", handler)
        await event_bus.publish(expense_event)
        await event_bus.publish(expense_event)
        avg = event_bus.get_stats().average_process_time
        assert 0.015 <= avg < 0.5

    @pytest.mark.asyncio
    async def test_snapshot_is_immutable(self, event_bus: EventBus) -> None:
        stats = event_bus.get_stats()
        with pytest.raises(AttributeError):
            stats.events_published = 5


class TestEventBusMiddleware:
    """Middleware composition order."""

    @pytest.mark.asyncio
    async def test_first_registered_is_outermost(
        self, event_bus: EventBus, expense_event: Event
    ) -> None:
        trace: list[str] = []

        def tag(name: str):
            def middleware(next_handler):
                async def handler(event: Event) -> None:
                    trace.append(f"{name}:before")
                    await next_handler(event)
                    trace.append(f"{name}:after")

                return handler

            return middleware

        async def handler(event: Event) -> None:
            trace.append("handler")

        event_bus.use(tag("outer"))
        event_bus.use(tag("inner"))
        event_bus.subscribe("expense.created", handler)
        await event_bus.publish(expense_event)

        assert trace == ["outer:before", "inner:before", "handler", "inner:after", "outer:after"]

    @pytest.mark.asyncio
    async def test_middleware_wraps_every_subscription(
        self, event_bus: EventBus, expense_event: Event
    ) -> None:
        wrapped: list[str] = []

        def middleware(next_handler):
            async def handler(event: Event) -> None:
                wrapped.append(event.id)
                await next_handler(event)

            return handler

        async def handler(event: Event) -> None:
            pass

        event_bus.use(middleware)
        event_bus.subscribe("expense.created", handler)
        event_bus.subscribe_pattern("*", handler)
        await event_bus.publish(expense_event)
        assert wrapped == [expense_event.id, expense_event.id]


class TestEventBusPersistence:
    """Events are stored after dispatch; storage errors never reach the publisher."""

    @pytest.mark.asyncio
    async def test_event_persisted_and_replayable(
        self, ids: SequentialIdGenerator, expense_event: Event
    ) -> None:
        storage = MemoryStorage()
        bus = EventBus(storage=storage, id_generator=ids)
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        bus.subscribe("expense.created", handler)
        await bus.publish(expense_event)

        key = f"event:{expense_event.id}"
        assert await storage.exists(key)
        assert 0 < await storage.get_ttl(key) <= 86400
        assert await bus.load_event(expense_event.id) == expense_event

        await bus.replay(expense_event.id)
        assert received == [expense_event, expense_event]
        await bus.close()

    @pytest.mark.asyncio
    async def test_unmatched_event_not_persisted(
        self, ids: SequentialIdGenerator, expense_event: Event
    ) -> None:
        storage = MemoryStorage()
        bus = EventBus(storage=storage, id_generator=ids)
        await bus.publish(expense_event)
        assert not await storage.exists(f"event:{expense_event.id}")

    @pytest.mark.asyncio
    async def test_event_persisted_even_when_handler_fails(
        self, ids: SequentialIdGenerator, expense_event: Event
    ) -> None:
        storage = MemoryStorage()
        bus = EventBus(storage=storage, id_generator=ids)

        async def broken(event: Event) -> None:
            raise RuntimeError("boom")

        bus.subscribe("expense.created", broken)
        with pytest.raises(PublishError):
            await bus.publish(expense_event)
        assert await storage.exists(f"event:{expense_event.id}")

    @pytest.mark.asyncio
    async def test_storage_failure_logged_and_counted(
        self, ids: SequentialIdGenerator, expense_event: Event, caplog: pytest.LogCaptureFixture
    ) -> None:
        storage: StorageProvider = _FailingStorage()
        bus = EventBus(storage=storage, id_generator=ids)

        async def handler(event: Event) -> None:
            pass

        bus.subscribe("expense.created", handler)
        with caplog.at_level(logging.WARNING, logger="budgetapp.events.bus"):
            await bus.publish(expense_event)

        assert bus.get_stats().persistence_failures == 1
        assert "failed to persist" in caplog.text
        assert "disk full" in caplog.text


class TestEventBusAsync:
    """publish_async and close()."""

    @pytest.mark.asyncio
    async def test_publish_async_delivers(self, event_bus: EventBus, expense_event: Event) -> None:
        received: list[str] = []

        async def handler(event: Event) -> None:
            received.append(event.id)

        event_bus.subscribe("expense.created", handler)
        task = event_bus.publish_async(expense_event)
        await task
        assert received == [expense_event.id]

    @pytest.mark.asyncio
    async def test_publish_async_logs_failure(
        self, event_bus: EventBus, expense_event: Event, caplog: pytest.LogCaptureFixture
    ) -> None:
        async def broken(event: Event) -> None:
            raise RuntimeError("async boom")

        event_bus.subscribe("expense.created", broken)
        with caplog.at_level(logging.ERROR, logger="budgetapp.events.bus"):
            await event_bus.publish_async(expense_event)

        assert "Async event publishing failed" in caplog.text
        assert "async boom" in caplog.text

    @pytest.mark.asyncio
    async def test_publish_async_logs_unexpected_error(
        self, event_bus: EventBus, expense_event: Event, caplog: pytest.LogCaptureFixture
    ) -> None:
        async def handler(event: Event) -> None:
            pass

        def broken_middleware(next_handler):
            raise RuntimeError("middleware setup failed")

        event_bus.use(broken_middleware)
        event_bus.subscribe("expense.created", handler)
        with caplog.at_level(logging.ERROR, logger="budgetapp.events.bus"):
            task = event_bus.publish_async(expense_event)
            await task

        assert task.exception() is None
        assert "Async event publishing failed for expense.created" in caplog.text
        assert "middleware setup failed" in caplog.text

    @pytest.mark.asyncio
    async def test_close_cancels_pending_and_rejects_publish(
        self, ids: SequentialIdGenerator, expense_event: Event
    ) -> None:
        bus = EventBus(id_generator=ids)
        started = asyncio.Event()

        async def slow(event: Event) -> None:
            started.set()
            await asyncio.sleep(10)

        bus.subscribe("expense.created", slow)
        task = bus.publish_async(expense_event)
        await started.wait()
        await bus.close()

        assert task.done()
        assert bus.closed
        with pytest.raises(EventBusClosedError):
            await bus.publish(expense_event)

"""Tests for EventService: primary write first, then events."""

import logging

import pytest

from budgetapp.domain import Expense, User, YearMonth
from budgetapp.events import Event, EventBus, EventFactory
from budgetapp.events.models import BudgetExceeded, ExpenseUpdated
from budgetapp.ids import SequentialIdGenerator
from budgetapp.service import BudgetRepository, EventService, RecordNotFoundError


@pytest.fixture
async def event_bus(ids: SequentialIdGenerator) -> EventBus:
    bus = EventBus(id_generator=ids)
    yield bus
    await bus.close()


@pytest.fixture
def received(event_bus: EventBus) -> list[Event]:
    events: list[Event] = []

    async def collect(event: Event) -> None:
        events.append(event)

    event_bus.subscribe_pattern("*", collect)
    return events


@pytest.fixture
def service(event_bus: EventBus, factory: EventFactory) -> EventService:
    return EventService(BudgetRepository(), event_bus, factory)


def _expense(ym: YearMonth, cents: int, category: str = "groceries") -> Expense:
    return Expense(year_month=ym, category=category, description="shop", amount_cents=cents)


class TestEventServiceExpenses:
    """Expense operations and their events."""

    @pytest.mark.asyncio
    async def test_add_expense_publishes_created(
        self, service: EventService, received: list[Event], ym: YearMonth
    ) -> None:
        stored = await service.add_expense(1, _expense(ym, 500))
        await service.flush()

        assert stored.id > 0
        assert [e.type for e in received] == ["expense.created"]
        assert received[0].payload.expense == stored
        assert received[0].user_id == 1
        assert received[0].source == "event_service"

    @pytest.mark.asyncio
    async def test_update_carries_previous(
        self, service: EventService, received: list[Event], ym: YearMonth
    ) -> None:
        stored = await service.add_expense(1, _expense(ym, 500))
        updated = await service.update_expense(1, stored.id, amount_cents=900)
        await service.flush()

        assert updated.amount_cents == 900
        payload = received[-1].payload
        assert isinstance(payload, ExpenseUpdated)
        assert payload.previous.amount_cents == 500
        assert payload.expense.amount_cents == 900

    @pytest.mark.asyncio
    async def test_delete_and_missing(
        self, service: EventService, received: list[Event], ym: YearMonth
    ) -> None:
        stored = await service.add_expense(1, _expense(ym, 500))
        await service.delete_expense(1, stored.id)
        await service.flush()
        assert received[-1].type == "expense.deleted"

        with pytest.raises(RecordNotFoundError):
            await service.delete_expense(1, stored.id)

    @pytest.mark.asyncio
    async def test_other_users_expense_not_found(self, service: EventService, ym: YearMonth) -> None:
        stored = await service.add_expense(1, _expense(ym, 500))
        with pytest.raises(RecordNotFoundError):
            await service.update_expense(2, stored.id, amount_cents=1)


class TestBudgetCheck:
    """budget.exceeded publication."""

    @pytest.mark.asyncio
    async def test_exceeding_budget_publishes(
        self, service: EventService, received: list[Event], ym: YearMonth
    ) -> None:
        await service.create_budget_source(1, "groceries", ym, 1_000)
        await service.add_expense(1, _expense(ym, 600))
        await service.add_expense(1, _expense(ym, 600))
        await service.flush()

        exceeded = [e for e in received if e.type == "budget.exceeded"]
        assert len(exceeded) == 1
        payload = exceeded[0].payload
        assert isinstance(payload, BudgetExceeded)
        assert (payload.budget_cents, payload.spent_cents, payload.excess_cents) == (1_000, 1_200, 200)
        assert payload.category == "groceries"

    @pytest.mark.asyncio
    async def test_no_budget_or_within_budget(
        self, service: EventService, received: list[Event], ym: YearMonth
    ) -> None:
        await service.add_expense(1, _expense(ym, 5_000, category="rent"))
        await service.create_budget_source(1, "groceries", ym, 1_000)
        await service.add_expense(1, _expense(ym, 1_000))
        await service.flush()
        assert not [e for e in received if e.type == "budget.exceeded"]

    @pytest.mark.asyncio
    async def test_other_month_not_counted(
        self, service: EventService, received: list[Event], ym: YearMonth
    ) -> None:
        feb = YearMonth(year=2024, month=2)
        await service.create_budget_source(1, "groceries", ym, 1_000)
        await service.add_expense(1, _expense(feb, 5_000))
        await service.add_expense(1, _expense(ym, 900))
        await service.flush()
        assert not [e for e in received if e.type == "budget.exceeded"]


class TestEventServiceOther:
    """Sources, monthly data, sessions and health."""

    @pytest.mark.asyncio
    async def test_sources_and_monthly_data(
        self, service: EventService, received: list[Event], ym: YearMonth
    ) -> None:
        await service.create_income_source(1, "Salary", ym, 300_000)
        await service.create_budget_source(1, "groceries", ym, 40_000)
        await service.add_expense(1, _expense(ym, 2_500))
        data = await service.get_monthly_data(1, ym)
        await service.flush()

        assert data.total_income_cents == 300_000
        assert data.remaining_cents == 297_500
        types = [e.type for e in received]
        assert types[:2] == ["income_source.created", "budget_source.created"]
        assert types[-1] == "monthly_data.updated"

    @pytest.mark.asyncio
    async def test_user_session_and_health(self, service: EventService, received: list[Event]) -> None:
        await service.register_user(User(id=5, username="ann"))
        service.record_login(5, username="ann", session_id="s1", ip_address="10.0.0.1")
        service.record_logout(5, session_id="s1", session_duration=30.0)
        service.publish_system_health("warning", "slow disk", {"disk": 0.9})
        await service.flush()
        assert [e.type for e in received] == [
            "user.created",
            "user.login",
            "user.logout",
            "system.health",
        ]
        assert "checked_at" in received[-1].metadata

    @pytest.mark.asyncio
    async def test_invalid_event_does_not_fail_operation(
        self, service: EventService, received: list[Event], caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.ERROR, logger="budgetapp.service"):
            service.record_login(0)
            service.publish_system_health("unknown-status")
        await service.flush()
        assert received == []
        assert "could not publish UserLogin" in caplog.text
        assert "could not publish SystemHealth" in caplog.text

    @pytest.mark.asyncio
    async def test_handler_failure_does_not_fail_operation(
        self, service: EventService, event_bus: EventBus, ym: YearMonth,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        async def broken(event: Event) -> None:
            raise RuntimeError("handler down")

        event_bus.subscribe("expense.created", broken)
        stored = await service.add_expense(1, _expense(ym, 100))
        await service.flush()
        assert stored.id > 0
        assert "Async event publishing failed" in caplog.text

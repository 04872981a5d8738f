"""Shared fixtures: deterministic IDs, an event factory and sample domain records."""

from datetime import datetime, timezone

import pytest

from budgetapp.domain import BudgetSource, Expense, IncomeSource, YearMonth
from budgetapp.events.models import EventFactory, ExpenseCreated
from budgetapp.ids import SequentialIdGenerator

FIXED_NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def ids() -> SequentialIdGenerator:
    return SequentialIdGenerator(node="test")


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def factory(ids: SequentialIdGenerator) -> EventFactory:
    return EventFactory(id_generator=ids, clock=lambda: FIXED_NOW)


@pytest.fixture
def ym() -> YearMonth:
    return YearMonth(year=2024, month=1)


@pytest.fixture
def expense(ym: YearMonth) -> Expense:
    return Expense(id=7, year_month=ym, category="groceries", description="Weekly shop", amount_cents=1234)


@pytest.fixture
def income_source(ym: YearMonth) -> IncomeSource:
    return IncomeSource(id=3, user_id=1, name="Salary", year_month=ym, amount_cents=500_000)


@pytest.fixture
def budget_source(ym: YearMonth) -> BudgetSource:
    return BudgetSource(id=4, user_id=1, name="groceries", year_month=ym, amount_cents=40_000)


@pytest.fixture
def expense_event(factory: EventFactory, expense: Expense):
    return factory.create(ExpenseCreated(user_id=1, expense=expense), "test")

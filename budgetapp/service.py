"""Budget operations that publish domain events after the primary write.

The repository write always happens first and its result is returned even when
building or publishing the event fails; such failures are only logged.
"""

import asyncio
import itertools
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from budgetapp.domain import BudgetSource, Expense, IncomeSource, MonthlyData, User, YearMonth
from budgetapp.events.bus import EventBus
from budgetapp.events.models import (
    BudgetExceeded,
    BudgetSourceCreated,
    EventFactory,
    ExpenseCreated,
    ExpenseDeleted,
    ExpenseUpdated,
    IncomeSourceCreated,
    MonthlyDataUpdated,
    SystemHealth,
    UserCreated,
    UserLogin,
    UserLogout,
)

logger = logging.getLogger(__name__)

SOURCE = "event_service"


class RecordNotFoundError(LookupError):
    """Requested budget record does not exist for this user."""


class BudgetRepository:
    """In-memory store of users, expenses and income/budget sources."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self._users: dict[int, User] = {}
        # expense id -> (owner user id, expense)
        self._expenses: dict[int, tuple[int, Expense]] = {}
        self._income: dict[tuple[int, YearMonth], list[IncomeSource]] = defaultdict(list)
        self._budgets: dict[tuple[int, YearMonth], list[BudgetSource]] = defaultdict(list)

    async def add_user(self, user: User) -> User:
        async with self._lock:
            self._users[user.id] = user
        return user

    async def add_expense(self, user_id: int, expense: Expense) -> Expense:
        async with self._lock:
            stored = expense.model_copy(update={"id": next(self._ids)})
            self._expenses[stored.id] = (user_id, stored)
        return stored

    async def get_expense(self, user_id: int, expense_id: int) -> Expense:
        async with self._lock:
            owner, expense = self._expenses.get(expense_id, (None, None))
        if expense is None or owner != user_id:
            raise RecordNotFoundError(f"expense {expense_id} not found for user {user_id}")
        return expense

    async def update_expense(self, user_id: int, expense_id: int, **changes: Any) -> Expense:
        current = await self.get_expense(user_id, expense_id)
        updated = Expense.model_validate({**current.model_dump(), **changes, "id": expense_id})
        async with self._lock:
            self._expenses[expense_id] = (user_id, updated)
        return updated

    async def delete_expense(self, user_id: int, expense_id: int) -> Expense:
        expense = await self.get_expense(user_id, expense_id)
        async with self._lock:
            del self._expenses[expense_id]
        return expense

    async def create_income_source(
        self, user_id: int, name: str, ym: YearMonth, amount_cents: int
    ) -> IncomeSource:
        source = IncomeSource(
            id=next(self._ids), user_id=user_id, name=name, year_month=ym, amount_cents=amount_cents
        )
        async with self._lock:
            self._income[(user_id, ym)].append(source)
        return source

    async def create_budget_source(
        self, user_id: int, name: str, ym: YearMonth, amount_cents: int
    ) -> BudgetSource:
        source = BudgetSource(
            id=next(self._ids), user_id=user_id, name=name, year_month=ym, amount_cents=amount_cents
        )
        async with self._lock:
            self._budgets[(user_id, ym)].append(source)
        return source

    async def get_monthly_data(self, user_id: int, ym: YearMonth) -> MonthlyData:
        async with self._lock:
            return MonthlyData(
                year_month=ym,
                income_sources=list(self._income.get((user_id, ym), [])),
                budget_sources=list(self._budgets.get((user_id, ym), [])),
                expenses=[
                    e for owner, e in self._expenses.values() if owner == user_id and e.year_month == ym
                ],
            )


class EventService:
    """Repository operations plus the domain events they produce."""

    def __init__(
        self, repository: BudgetRepository, bus: EventBus, factory: EventFactory | None = None
    ) -> None:
        self.repository = repository
        self.bus = bus
        self.factory = factory or EventFactory()
        self._tasks: set[asyncio.Task[None]] = set()

    def _emit(self, payload_cls: type, metadata: dict[str, Any] | None = None, **fields: Any) -> None:
        try:
            payload = payload_cls(**fields)
            event = self.factory.create(payload, SOURCE, metadata=metadata)
            task = self.bus.publish_async(event)
        except ValidationError as e:
            logger.error("EventService: could not publish %s: %s", payload_cls.__name__, e)
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug("EventService: published %s (%s)", event.type, event.id)

    async def flush(self) -> None:
        """Wait until every event published so far has been delivered."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- users ---

    async def register_user(self, user: User) -> User:
        stored = await self.repository.add_user(user)
        self._emit(UserCreated, user_id=stored.id, username=stored.username)
        return stored

    def record_login(
        self,
        user_id: int,
        username: str = "",
        session_id: str = "",
        ip_address: str = "",
        user_agent: str = "",
        success: bool = True,
    ) -> None:
        self._emit(
            UserLogin,
            user_id=user_id,
            username=username,
            session_id=session_id,
            ip_address=ip_address,
            user_agent=user_agent,
            success=success,
        )

    def record_logout(self, user_id: int, session_id: str = "", session_duration: float = 0.0) -> None:
        self._emit(
            UserLogout, user_id=user_id, session_id=session_id, session_duration=session_duration
        )

    # --- expenses ---

    async def add_expense(self, user_id: int, expense: Expense) -> Expense:
        stored = await self.repository.add_expense(user_id, expense)
        self._emit(ExpenseCreated, user_id=user_id, expense=stored)
        await self.check_budget_exceeded(user_id, stored)
        return stored

    async def update_expense(self, user_id: int, expense_id: int, **changes: Any) -> Expense:
        previous = await self.repository.get_expense(user_id, expense_id)
        updated = await self.repository.update_expense(user_id, expense_id, **changes)
        self._emit(ExpenseUpdated, user_id=user_id, expense=updated, previous=previous)
        await self.check_budget_exceeded(user_id, updated)
        return updated

    async def delete_expense(self, user_id: int, expense_id: int) -> Expense:
        deleted = await self.repository.delete_expense(user_id, expense_id)
        self._emit(ExpenseDeleted, user_id=user_id, expense=deleted)
        return deleted

    # --- income / budget sources ---

    async def create_income_source(
        self, user_id: int, name: str, ym: YearMonth, amount_cents: int
    ) -> IncomeSource:
        source = await self.repository.create_income_source(user_id, name, ym, amount_cents)
        self._emit(IncomeSourceCreated, user_id=user_id, income_source=source)
        return source

    async def create_budget_source(
        self, user_id: int, name: str, ym: YearMonth, amount_cents: int
    ) -> BudgetSource:
        source = await self.repository.create_budget_source(user_id, name, ym, amount_cents)
        self._emit(BudgetSourceCreated, user_id=user_id, budget_source=source)
        return source

    async def get_monthly_data(self, user_id: int, ym: YearMonth) -> MonthlyData:
        data = await self.repository.get_monthly_data(user_id, ym)
        self._emit(MonthlyDataUpdated, user_id=user_id, data=data)
        return data

    async def check_budget_exceeded(self, user_id: int, expense: Expense) -> bool:
        """Publish budget.exceeded if the expense's category is over its budget source.

        The budget source is the one whose name equals the expense category.
        Returns True when the event was published.
        """
        data = await self.repository.get_monthly_data(user_id, expense.year_month)
        budget = next((b for b in data.budget_sources if b.name == expense.category), None)
        if budget is None or budget.amount_cents == 0:
            return False
        spent = data.spent_in_category(expense.category)
        if spent <= budget.amount_cents:
            return False
        self._emit(
            BudgetExceeded,
            user_id=user_id,
            year_month=expense.year_month,
            category=expense.category,
            budget_cents=budget.amount_cents,
            spent_cents=spent,
        )
        logger.warning(
            "Budget exceeded for user %d in %s/%s: spent %d of %d cents",
            user_id,
            expense.year_month,
            expense.category,
            spent,
            budget.amount_cents,
        )
        return True

    # --- system ---

    def publish_system_health(
        self, status: str, message: str = "", metrics: dict[str, Any] | None = None
    ) -> None:
        self._emit(
            SystemHealth,
            metadata={"checked_at": datetime.now(timezone.utc).isoformat()},
            status=status,
            message=message,
            metrics=metrics or {},
        )

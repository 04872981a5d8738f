"""Usage analytics derived from domain events, kept in memory."""

import asyncio
import logging
import threading
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from budgetapp.events.models import (
    BudgetExceeded,
    BudgetSourceCreated,
    Event,
    ExpenseCreated,
    ExpenseDeleted,
    ExpenseUpdated,
    IncomeSourceCreated,
    SystemHealth,
    UserCreated,
    UserLogin,
    UserLogout,
)
from budgetapp.events.topics import EventTypes
from budgetapp.ids import IdGenerator, UuidIdGenerator

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 1000

HEALTH_SCORES = {"healthy": 1.0, "warning": 0.5, "error": 0.0, "critical": -1.0}


class AnalyticsMetric(BaseModel):
    id: str
    name: str
    value: float
    unit: str
    category: str
    user_id: int | None = None
    time_range: str = "instant"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    dimensions: dict[str, str] = Field(default_factory=dict)


class AnalyticsEvent(BaseModel):
    id: str
    event_type: str
    user_id: int | None = None
    session_id: str = ""
    timestamp: datetime
    properties: dict[str, Any] = Field(default_factory=dict)
    metrics: list[AnalyticsMetric] = Field(default_factory=list)


class AnalyticsService:
    """Stores analytics events and their metrics. Thread-safe."""

    def __init__(
        self,
        id_generator: IdGenerator | None = None,
        latency: float = 0.0,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        if history_limit < 1:
            raise ValueError("history_limit must be >= 1")
        self._ids = id_generator or UuidIdGenerator()
        self._latency = latency
        self._lock = threading.Lock()
        # Sliding window: the oldest events and metrics are dropped past history_limit
        self._metrics: deque[AnalyticsMetric] = deque(maxlen=history_limit)
        self._events: deque[AnalyticsEvent] = deque(maxlen=history_limit)

    def new_id(self, prefix: str = "analytics") -> str:
        return self._ids.new_id(prefix)

    async def process_event(self, event: AnalyticsEvent) -> None:
        logger.debug(
            "Analytics: %s user=%s metrics=%d",
            event.event_type,
            event.user_id,
            len(event.metrics),
        )
        if self._latency > 0:
            await asyncio.sleep(self._latency)
        with self._lock:
            self._events.append(event)
            self._metrics.extend(event.metrics)

    def get_metrics(self) -> dict[str, AnalyticsMetric]:
        with self._lock:
            return {m.id: m for m in self._metrics}

    def get_events(self) -> list[AnalyticsEvent]:
        with self._lock:
            return list(self._events)

    def get_metrics_by_category(self, category: str) -> list[AnalyticsMetric]:
        with self._lock:
            return [m for m in self._metrics if m.category == category]

    def get_metrics_by_user(self, user_id: int) -> list[AnalyticsMetric]:
        with self._lock:
            return [m for m in self._metrics if m.user_id == user_id]

    def totals_by_name(self) -> dict[str, float]:
        """Sum of retained metric values per metric name."""
        totals: dict[str, float] = defaultdict(float)
        with self._lock:
            for m in self._metrics:
                totals[m.name] += m.value
        return dict(totals)


class AnalyticsHandler:
    """Derives AnalyticsEvents with metrics from every event. Subscribe on '*'."""

    def __init__(self, service: AnalyticsService) -> None:
        self._service = service
        self._routes: dict[str, Callable[[Event], Awaitable[None]]] = {
            EventTypes.EXPENSE_CREATED: self._expense_created,
            EventTypes.EXPENSE_UPDATED: self._expense_updated,
            EventTypes.EXPENSE_DELETED: self._expense_deleted,
            EventTypes.INCOME_SOURCE_CREATED: self._income_source_created,
            EventTypes.BUDGET_SOURCE_CREATED: self._budget_source_created,
            EventTypes.USER_LOGIN: self._user_login,
            EventTypes.USER_LOGOUT: self._user_logout,
            EventTypes.USER_CREATED: self._user_created,
            EventTypes.BUDGET_EXCEEDED: self._budget_exceeded,
            EventTypes.SYSTEM_HEALTH: self._system_health,
        }

    async def handle(self, event: Event) -> None:
        route = self._routes.get(event.type, self._generic)
        await route(event)

    __call__ = handle

    def _metric(
        self,
        event: Event,
        name: str,
        value: float,
        unit: str,
        category: str,
        /,
        **dimensions: str,
    ) -> AnalyticsMetric:
        return AnalyticsMetric(
            id=self._service.new_id("metric"),
            name=name,
            value=value,
            unit=unit,
            category=category,
            user_id=event.user_id,
            timestamp=event.timestamp,
            dimensions=dimensions,
        )

    async def _record(
        self,
        event: Event,
        metrics: list[AnalyticsMetric],
        properties: dict[str, Any] | None = None,
        session_id: str = "",
    ) -> None:
        await self._service.process_event(
            AnalyticsEvent(
                id=self._service.new_id(),
                event_type=event.type,
                user_id=event.user_id,
                session_id=session_id,
                timestamp=event.timestamp,
                properties=properties or {},
                metrics=metrics,
            )
        )

    async def _expense_created(self, event: Event) -> None:
        p: ExpenseCreated = event.payload
        category = p.expense.category or "uncategorized"
        await self._record(
            event,
            [
                self._metric(
                    event, "expense_amount", p.expense.amount_cents / 100, "USD", "financial",
                    category=category,
                ),
                self._metric(event, "expense_count", 1, "count", "financial", category=category),
            ],
            {"expense_id": p.expense.id, "category": category},
        )

    async def _expense_updated(self, event: Event) -> None:
        p: ExpenseUpdated = event.payload
        properties: dict[str, Any] = {"expense_id": p.expense.id}
        if p.previous is not None:
            properties["amount_change_cents"] = p.expense.amount_cents - p.previous.amount_cents
        await self._record(
            event,
            [self._metric(event, "expense_update_count", 1, "count", "financial")],
            properties,
        )

    async def _expense_deleted(self, event: Event) -> None:
        p: ExpenseDeleted = event.payload
        await self._record(
            event,
            [self._metric(event, "expense_deletion_count", 1, "count", "financial")],
            {"expense_id": p.expense.id},
        )

    async def _income_source_created(self, event: Event) -> None:
        p: IncomeSourceCreated = event.payload
        await self._record(
            event,
            [
                self._metric(
                    event, "income_amount", p.income_source.amount_cents / 100, "USD", "financial"
                ),
                self._metric(event, "income_source_count", 1, "count", "financial"),
            ],
            {"name": p.income_source.name},
        )

    async def _budget_source_created(self, event: Event) -> None:
        p: BudgetSourceCreated = event.payload
        await self._record(
            event,
            [
                self._metric(
                    event, "budget_amount", p.budget_source.amount_cents / 100, "USD", "financial"
                ),
                self._metric(event, "budget_source_count", 1, "count", "financial"),
            ],
            {"name": p.budget_source.name},
        )

    async def _user_login(self, event: Event) -> None:
        p: UserLogin = event.payload
        await self._record(
            event,
            [
                self._metric(event, "login_count", 1, "count", "user_engagement"),
                self._metric(event, "active_users", 1, "count", "user_engagement"),
            ],
            {"ip_address": p.ip_address, "user_agent": p.user_agent, "success": p.success},
            session_id=p.session_id,
        )

    async def _user_logout(self, event: Event) -> None:
        p: UserLogout = event.payload
        await self._record(
            event,
            [
                self._metric(event, "logout_count", 1, "count", "user_engagement"),
                self._metric(
                    event, "session_duration", p.session_duration, "seconds", "user_engagement"
                ),
            ],
            session_id=p.session_id,
        )

    async def _user_created(self, event: Event) -> None:
        p: UserCreated = event.payload
        await self._record(
            event,
            [
                self._metric(event, "user_registration_count", 1, "count", "user_engagement"),
                self._metric(event, "total_users", 1, "count", "user_engagement"),
            ],
            {"username": p.username},
        )

    async def _budget_exceeded(self, event: Event) -> None:
        p: BudgetExceeded = event.payload
        await self._record(
            event,
            [
                self._metric(
                    event, "budget_exceeded_count", 1, "count", "financial", category=p.category
                ),
                self._metric(
                    event, "budget_exceeded_amount", p.excess_cents / 100, "USD", "financial",
                    category=p.category,
                ),
                self._metric(
                    event, "budget_exceeded_percentage", p.excess_percent, "percent", "financial",
                    category=p.category,
                ),
            ],
            {"category": p.category, "year_month": str(p.year_month)},
        )

    async def _system_health(self, event: Event) -> None:
        p: SystemHealth = event.payload
        await self._record(
            event,
            [
                self._metric(
                    event, "system_health_status", HEALTH_SCORES[p.status], "status", "system",
                    status=p.status,
                )
            ],
            {"message": p.message},
        )

    async def _generic(self, event: Event) -> None:
        await self._record(
            event,
            [
                self._metric(
                    event, "generic_event_count", 1, "count", "system", event_type=event.type
                )
            ],
        )

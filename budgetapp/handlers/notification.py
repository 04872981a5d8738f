"""User and admin notifications derived from domain events.

Email, SMS, push and in-app channels are simulated (a configured latency, then
marked sent). The webhook channel POSTs JSON with httpx when a URL is set.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx
from pydantic import BaseModel, Field

from budgetapp.domain import format_money
from budgetapp.events.models import (
    BudgetExceeded,
    BudgetSourceCreated,
    Event,
    ExpenseCreated,
    ExpenseDeleted,
    ExpenseUpdated,
    IncomeSourceCreated,
    SystemHealth,
    UserLogin,
    UserLogout,
)
from budgetapp.events.topics import EventTypes
from budgetapp.ids import IdGenerator, UuidIdGenerator
from budgetapp.storage.base import StorageProvider

logger = logging.getLogger(__name__)

ADMIN_RECIPIENT = "admin@budgetapp.local"
NOTIFICATION_TTL = 30 * 24 * 60 * 60.0
WEBHOOK_TIMEOUT = 10.0
DEFAULT_HISTORY_LIMIT = 1000


class NotificationType(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    IN_APP = "in_app"
    WEBHOOK = "webhook"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


DEFAULT_LATENCIES: dict[NotificationType, float] = {
    NotificationType.EMAIL: 0.1,
    NotificationType.SMS: 0.05,
    NotificationType.PUSH: 0.03,
    NotificationType.IN_APP: 0.01,
    NotificationType.WEBHOOK: 0.2,
}


class NotificationDeliveryError(Exception):
    """A notification channel failed to deliver."""

    def __init__(self, notification_id: str, channel: str, message: str) -> None:
        super().__init__(f"{channel} delivery failed for {notification_id}: {message}")
        self.notification_id = notification_id
        self.channel = channel


class Notification(BaseModel):
    id: str
    type: NotificationType
    priority: NotificationPriority = NotificationPriority.NORMAL
    recipient: str
    subject: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    sent_at: datetime | None = None
    status: str = "pending"


def is_suspicious_login(ip_address: str, deny_ips: frozenset[str] | set[str]) -> bool:
    """True only when the origin IP is on the configured deny list."""
    return bool(ip_address) and ip_address in deny_ips


class NotificationService:
    """Delivers notifications over the channel named by Notification.type."""

    def __init__(
        self,
        id_generator: IdGenerator | None = None,
        latencies: dict[str, float] | None = None,
        webhook_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        storage: StorageProvider | None = None,
        suspicious_ips: list[str] | None = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        if history_limit < 1:
            raise ValueError("history_limit must be >= 1")
        self._ids = id_generator or UuidIdGenerator()
        self._latencies = dict(DEFAULT_LATENCIES)
        for name, seconds in (latencies or {}).items():
            self._latencies[NotificationType(name)] = float(seconds)
        self._webhook_url = webhook_url
        self._http_client = http_client
        self._storage = storage
        self.suspicious_ips = frozenset(suspicious_ips or ())
        self._sent: deque[Notification] = deque(maxlen=history_limit)
        self._channels: dict[NotificationType, Callable[[Notification], Awaitable[None]]] = {
            NotificationType.EMAIL: self._simulated,
            NotificationType.SMS: self._simulated,
            NotificationType.PUSH: self._simulated,
            NotificationType.IN_APP: self._simulated,
            NotificationType.WEBHOOK: self._webhook,
        }

    def new_id(self) -> str:
        return self._ids.new_id("notif")

    async def send_notification(self, notification: Notification) -> Notification:
        """Deliver and return the notification marked sent. Raises NotificationDeliveryError."""
        logger.info(
            "Sending %s notification %s to %s (priority=%s): %s",
            notification.type.value,
            notification.id,
            notification.recipient,
            notification.priority.value,
            notification.subject,
        )
        await self._channels[notification.type](notification)
        sent = notification.model_copy(
            update={"status": "sent", "sent_at": datetime.now(timezone.utc)}
        )
        if self._storage is not None:
            await self._storage.save(
                f"notification:{sent.recipient}:{sent.id}",
                sent.model_dump_json().encode("utf-8"),
                NOTIFICATION_TTL,
            )
        self._sent.append(sent)
        return sent

    async def _simulated(self, notification: Notification) -> None:
        latency = self._latencies[notification.type]
        if latency > 0:
            await asyncio.sleep(latency)
        logger.debug("%s notification %s delivered", notification.type.value, notification.id)

    async def _webhook(self, notification: Notification) -> None:
        if not self._webhook_url:
            await self._simulated(notification)
            return
        body = notification.model_dump(mode="json")
        try:
            if self._http_client is not None:
                response = await self._http_client.post(self._webhook_url, json=body)
            else:
                async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT) as client:
                    response = await client.post(self._webhook_url, json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise NotificationDeliveryError(
                notification.id, "webhook", f"HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise NotificationDeliveryError(notification.id, "webhook", str(e)) from e

    def sent(self) -> list[Notification]:
        """Most recently delivered notifications, oldest first."""
        return list(self._sent)


def _user_recipient(user_id: int) -> str:
    return f"user_{user_id}"


class NotificationHandler:
    """Routes the event types in ROUTED_TYPES to notifications; others are ignored."""

    ROUTED_TYPES = (
        EventTypes.EXPENSE_CREATED,
        EventTypes.EXPENSE_UPDATED,
        EventTypes.EXPENSE_DELETED,
        EventTypes.BUDGET_EXCEEDED,
        EventTypes.INCOME_SOURCE_CREATED,
        EventTypes.BUDGET_SOURCE_CREATED,
        EventTypes.SYSTEM_HEALTH,
        EventTypes.USER_LOGIN,
        EventTypes.USER_LOGOUT,
    )

    def __init__(self, service: NotificationService) -> None:
        self._service = service
        self._routes: dict[str, Callable[[Event], Awaitable[None]]] = {
            EventTypes.EXPENSE_CREATED: self._expense_created,
            EventTypes.EXPENSE_UPDATED: self._expense_updated,
            EventTypes.EXPENSE_DELETED: self._expense_deleted,
            EventTypes.BUDGET_EXCEEDED: self._budget_exceeded,
            EventTypes.INCOME_SOURCE_CREATED: self._income_source_created,
            EventTypes.BUDGET_SOURCE_CREATED: self._budget_source_created,
            EventTypes.SYSTEM_HEALTH: self._system_health,
            EventTypes.USER_LOGIN: self._user_login,
            EventTypes.USER_LOGOUT: self._user_logout,
        }

    async def handle(self, event: Event) -> None:
        route = self._routes.get(event.type)
        if route is None:
            logger.warning("Unknown notification event type: %s (%s)", event.type, event.id)
            return
        await route(event)

    __call__ = handle

    async def _send(
        self,
        kind: NotificationType,
        priority: NotificationPriority,
        recipient: str,
        subject: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        await self._service.send_notification(
            Notification(
                id=self._service.new_id(),
                type=kind,
                priority=priority,
                recipient=recipient,
                subject=subject,
                message=message,
                data=data or {},
            )
        )

    async def _expense_created(self, event: Event) -> None:
        p: ExpenseCreated = event.payload
        await self._send(
            NotificationType.IN_APP,
            NotificationPriority.NORMAL,
            _user_recipient(p.user_id),
            "Expense Added",
            f"Your expense '{p.expense.description}' for "
            f"{format_money(p.expense.amount_cents)} has been added successfully.",
            {"expense_id": p.expense.id, "amount_cents": p.expense.amount_cents},
        )

    async def _expense_updated(self, event: Event) -> None:
        p: ExpenseUpdated = event.payload
        await self._send(
            NotificationType.IN_APP,
            NotificationPriority.NORMAL,
            _user_recipient(p.user_id),
            "Expense Updated",
            f"Your expense '{p.expense.description}' has been updated successfully.",
            {"expense_id": p.expense.id},
        )

    async def _expense_deleted(self, event: Event) -> None:
        p: ExpenseDeleted = event.payload
        await self._send(
            NotificationType.IN_APP,
            NotificationPriority.NORMAL,
            _user_recipient(p.user_id),
            "Expense Deleted",
            f"Your expense '{p.expense.description}' has been deleted successfully.",
            {"expense_id": p.expense.id},
        )

    async def _budget_exceeded(self, event: Event) -> None:
        p: BudgetExceeded = event.payload
        await self._send(
            NotificationType.EMAIL,
            NotificationPriority.HIGH,
            _user_recipient(p.user_id),
            "Budget Exceeded Alert",
            f"Your '{p.category}' budget for {p.year_month} has been exceeded by "
            f"{format_money(p.excess_cents)} ({p.excess_percent:.1f}%). "
            f"Current expenses: {format_money(p.spent_cents)}, "
            f"Budget: {format_money(p.budget_cents)}",
            {
                "category": p.category,
                "budget_cents": p.budget_cents,
                "spent_cents": p.spent_cents,
                "exceeded_by_cents": p.excess_cents,
                "exceeded_percent": round(p.excess_percent, 2),
            },
        )

    async def _income_source_created(self, event: Event) -> None:
        p: IncomeSourceCreated = event.payload
        await self._send(
            NotificationType.IN_APP,
            NotificationPriority.NORMAL,
            _user_recipient(p.user_id),
            "Income Source Added",
            f"Your income source '{p.income_source.name}' for "
            f"{format_money(p.income_source.amount_cents)} has been added successfully.",
        )

    async def _budget_source_created(self, event: Event) -> None:
        p: BudgetSourceCreated = event.payload
        await self._send(
            NotificationType.IN_APP,
            NotificationPriority.NORMAL,
            _user_recipient(p.user_id),
            "Budget Source Added",
            f"Your budget source '{p.budget_source.name}' for "
            f"{format_money(p.budget_source.amount_cents)} has been added successfully.",
        )

    async def _system_health(self, event: Event) -> None:
        p: SystemHealth = event.payload
        # Only error and critical reach the admin
        if p.status not in ("error", "critical"):
            return
        await self._send(
            NotificationType.EMAIL,
            NotificationPriority.URGENT,
            ADMIN_RECIPIENT,
            f"System Health Alert: {p.status}",
            p.message,
            {"status": p.status, "metrics": dict(p.metrics)},
        )

    async def _user_login(self, event: Event) -> None:
        p: UserLogin = event.payload
        if not is_suspicious_login(p.ip_address, self._service.suspicious_ips):
            return
        await self._send(
            NotificationType.EMAIL,
            NotificationPriority.HIGH,
            _user_recipient(p.user_id),
            "Security Alert: New Login",
            f"A login was detected from IP {p.ip_address}. "
            "If this wasn't you, please secure your account.",
            {"ip_address": p.ip_address, "user_agent": p.user_agent},
        )

    async def _user_logout(self, event: Event) -> None:
        p: UserLogout = event.payload
        logger.info("User %d logged out (session %s)", p.user_id, p.session_id or "-")

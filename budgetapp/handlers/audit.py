"""Audit trail handler: every event becomes an AuditRecord with level and category."""

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from budgetapp.domain import format_money
from budgetapp.events.models import (
    DataExport,
    DataImport,
    Event,
    ExpenseCreated,
    ExpenseDeleted,
    ExpenseUpdated,
    SecurityAlert,
    SystemHealth,
    UserCreated,
    UserLogin,
    UserLogout,
)
from budgetapp.events.topics import EventTypes
from budgetapp.ids import IdGenerator, UuidIdGenerator
from budgetapp.storage.base import StorageProvider

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 1000


class AuditLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditCategory(str, Enum):
    USER = "user"
    FINANCIAL = "financial"
    SYSTEM = "system"
    SECURITY = "security"
    DATA = "data"


_LOG_LEVELS = {
    AuditLevel.INFO: logging.INFO,
    AuditLevel.WARNING: logging.WARNING,
    AuditLevel.ERROR: logging.ERROR,
    AuditLevel.CRITICAL: logging.CRITICAL,
}


class AuditRecord(BaseModel):
    """One audit trail entry."""

    id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    level: AuditLevel
    category: AuditCategory
    event_type: str
    event_id: str = ""
    user_id: int | None = None
    session_id: str = ""
    ip_address: str = ""
    user_agent: str = ""
    resource: str = ""
    action: str = ""
    description: str
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    # Length of the serialized data, not a checksum
    size_tag: str = ""


class AuditService:
    """Writes audit records to the log and, optionally, to storage."""

    def __init__(
        self,
        id_generator: IdGenerator | None = None,
        latency: float = 0.05,
        storage: StorageProvider | None = None,
        retention: float | None = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        if history_limit < 1:
            raise ValueError("history_limit must be >= 1")
        self._ids = id_generator or UuidIdGenerator()
        self._latency = latency
        self._storage = storage
        self._retention = retention
        # Most recent records only; storage, when configured, keeps the full trail
        self._records: deque[AuditRecord] = deque(maxlen=history_limit)

    def new_id(self) -> str:
        return self._ids.new_id("audit")

    async def log_event(self, record: AuditRecord) -> None:
        record = record.model_copy(
            update={"size_tag": f"len_{len(record.model_dump_json(include={'data'}))}"}
        )
        logger.log(
            _LOG_LEVELS[record.level],
            "AUDIT [%s/%s] %s: %s (user=%s resource=%s action=%s)",
            record.level.value,
            record.category.value,
            record.event_type,
            record.description,
            record.user_id,
            record.resource,
            record.action,
        )
        if self._latency > 0:
            await asyncio.sleep(self._latency)
        if self._storage is not None:
            await self._storage.save(
                f"audit:{record.id}", record.model_dump_json().encode("utf-8"), self._retention
            )
        self._records.append(record)

    def records(self) -> list[AuditRecord]:
        """Most recent records, oldest first."""
        return list(self._records)


class AuditHandler:
    """Turns every event into an audit record. Subscribe on '*'."""

    def __init__(self, service: AuditService) -> None:
        self._service = service
        self._routes: dict[str, Callable[[Event], Awaitable[None]]] = {
            EventTypes.EXPENSE_CREATED: self._expense_created,
            EventTypes.EXPENSE_UPDATED: self._expense_updated,
            EventTypes.EXPENSE_DELETED: self._expense_deleted,
            EventTypes.INCOME_SOURCE_CREATED: self._income_source_created,
            EventTypes.INCOME_SOURCE_UPDATED: self._income_source_updated,
            EventTypes.INCOME_SOURCE_DELETED: self._income_source_deleted,
            EventTypes.BUDGET_SOURCE_CREATED: self._budget_source_created,
            EventTypes.BUDGET_SOURCE_UPDATED: self._budget_source_updated,
            EventTypes.BUDGET_SOURCE_DELETED: self._budget_source_deleted,
            EventTypes.USER_LOGIN: self._user_login,
            EventTypes.USER_LOGOUT: self._user_logout,
            EventTypes.USER_CREATED: self._user_created,
            EventTypes.SYSTEM_HEALTH: self._system_health,
            EventTypes.DATA_EXPORT: self._data_export,
            EventTypes.DATA_IMPORT: self._data_import,
            EventTypes.SECURITY_ALERT: self._security_alert,
        }

    async def handle(self, event: Event) -> None:
        route = self._routes.get(event.type, self._generic)
        await route(event)

    __call__ = handle

    def _record(self, event: Event, **fields: Any) -> AuditRecord:
        fields.setdefault("user_id", event.user_id)
        return AuditRecord(
            id=self._service.new_id(),
            timestamp=event.timestamp,
            event_type=event.type,
            event_id=event.id,
            metadata=dict(event.metadata),
            **fields,
        )

    # --- financial ---

    async def _expense_created(self, event: Event) -> None:
        p: ExpenseCreated = event.payload
        e = p.expense
        await self._service.log_event(
            self._record(
                event,
                level=AuditLevel.INFO,
                category=AuditCategory.FINANCIAL,
                resource=f"expense:{e.id}",
                action="create",
                description=f"Expense '{e.description}' created for {format_money(e.amount_cents)}",
                data={
                    "expense_id": e.id,
                    "description": e.description,
                    "amount_cents": e.amount_cents,
                    "category": e.category,
                    "year_month": str(e.year_month),
                },
            )
        )

    async def _expense_updated(self, event: Event) -> None:
        p: ExpenseUpdated = event.payload
        e = p.expense
        data: dict[str, Any] = {
            "expense_id": e.id,
            "description": e.description,
            "amount_cents": e.amount_cents,
        }
        if p.previous is not None:
            data["old_amount_cents"] = p.previous.amount_cents
        await self._service.log_event(
            self._record(
                event,
                level=AuditLevel.INFO,
                category=AuditCategory.FINANCIAL,
                resource=f"expense:{e.id}",
                action="update",
                description=f"Expense '{e.description}' updated",
                data=data,
            )
        )

    async def _expense_deleted(self, event: Event) -> None:
        p: ExpenseDeleted = event.payload
        e = p.expense
        await self._service.log_event(
            self._record(
                event,
                level=AuditLevel.WARNING,
                category=AuditCategory.FINANCIAL,
                resource=f"expense:{e.id}",
                action="delete",
                description=f"Expense '{e.description}' deleted",
                data={"expense_id": e.id, "description": e.description, "amount_cents": e.amount_cents},
            )
        )

    async def _source_event(
        self, event: Event, kind: str, label: str, action: str, level: AuditLevel
    ) -> None:
        source = getattr(event.payload, kind)
        if action == "create":
            description = f"{label} '{source.name}' created for {format_money(source.amount_cents)}"
        else:
            description = f"{label} '{source.name}' {action}d"
        await self._service.log_event(
            self._record(
                event,
                level=level,
                category=AuditCategory.FINANCIAL,
                resource=f"{kind}:{source.id}",
                action=action,
                description=description,
                data={
                    f"{kind}_id": source.id,
                    "name": source.name,
                    "amount_cents": source.amount_cents,
                    "year_month": str(source.year_month),
                },
            )
        )

    async def _income_source_created(self, event: Event) -> None:
        await self._source_event(event, "income_source", "Income source", "create", AuditLevel.INFO)

    async def _income_source_updated(self, event: Event) -> None:
        await self._source_event(event, "income_source", "Income source", "update", AuditLevel.INFO)

    async def _income_source_deleted(self, event: Event) -> None:
        await self._source_event(
            event, "income_source", "Income source", "delete", AuditLevel.WARNING
        )

    async def _budget_source_created(self, event: Event) -> None:
        await self._source_event(event, "budget_source", "Budget source", "create", AuditLevel.INFO)

    async def _budget_source_updated(self, event: Event) -> None:
        await self._source_event(event, "budget_source", "Budget source", "update", AuditLevel.INFO)

    async def _budget_source_deleted(self, event: Event) -> None:
        await self._source_event(
            event, "budget_source", "Budget source", "delete", AuditLevel.WARNING
        )

    # --- users / security ---

    async def _user_login(self, event: Event) -> None:
        p: UserLogin = event.payload
        await self._service.log_event(
            self._record(
                event,
                level=AuditLevel.INFO if p.success else AuditLevel.WARNING,
                category=AuditCategory.SECURITY,
                session_id=p.session_id,
                ip_address=p.ip_address,
                user_agent=p.user_agent,
                resource=f"user:{p.user_id}",
                action="login",
                description=f"User {p.user_id} logged in from {p.ip_address or 'unknown'}"
                if p.success
                else f"Failed login for user {p.user_id} from {p.ip_address or 'unknown'}",
                data={"username": p.username, "success": p.success},
            )
        )

    async def _user_logout(self, event: Event) -> None:
        p: UserLogout = event.payload
        await self._service.log_event(
            self._record(
                event,
                level=AuditLevel.INFO,
                category=AuditCategory.SECURITY,
                session_id=p.session_id,
                resource=f"user:{p.user_id}",
                action="logout",
                description=f"User {p.user_id} logged out",
                data={"session_duration": p.session_duration},
            )
        )

    async def _user_created(self, event: Event) -> None:
        p: UserCreated = event.payload
        await self._service.log_event(
            self._record(
                event,
                level=AuditLevel.INFO,
                category=AuditCategory.USER,
                resource=f"user:{p.user_id}",
                action="create",
                description=f"User '{p.username}' created",
                data={"username": p.username},
            )
        )

    async def _security_alert(self, event: Event) -> None:
        p: SecurityAlert = event.payload
        level = AuditLevel.CRITICAL if p.severity in ("high", "critical") else AuditLevel.WARNING
        await self._service.log_event(
            self._record(
                event,
                level=level,
                category=AuditCategory.SECURITY,
                ip_address=p.ip_address,
                resource="security",
                action="alert",
                description=f"Security alert: {p.alert_type} - {p.description}",
                data={"alert_type": p.alert_type, "severity": p.severity},
            )
        )

    # --- system / data ---

    async def _system_health(self, event: Event) -> None:
        p: SystemHealth = event.payload
        level = AuditLevel.ERROR if p.status in ("error", "critical") else AuditLevel.INFO
        await self._service.log_event(
            self._record(
                event,
                level=level,
                category=AuditCategory.SYSTEM,
                resource="system",
                action="health_check",
                description=f"System health check: {p.status} - {p.message}",
                data={"status": p.status, "metrics": dict(p.metrics)},
            )
        )

    async def _data_export(self, event: Event) -> None:
        p: DataExport = event.payload
        await self._service.log_event(
            self._record(
                event,
                level=AuditLevel.INFO,
                category=AuditCategory.DATA,
                resource="data",
                action="export",
                description=f"Data export: {p.export_type} ({p.record_count} records)",
                data={"export_type": p.export_type, "format": p.format, "record_count": p.record_count},
            )
        )

    async def _data_import(self, event: Event) -> None:
        p: DataImport = event.payload
        await self._service.log_event(
            self._record(
                event,
                level=AuditLevel.WARNING,
                category=AuditCategory.DATA,
                resource="data",
                action="import",
                description=f"Data import: {p.import_type} ({p.record_count} records)",
                data={"import_type": p.import_type, "record_count": p.record_count},
            )
        )

    async def _generic(self, event: Event) -> None:
        await self._service.log_event(
            self._record(
                event,
                level=AuditLevel.INFO,
                category=AuditCategory.SYSTEM,
                resource="system",
                action="event",
                description=f"Generic event: {event.type}",
                data=event.payload.model_dump(mode="json", exclude={"kind"}),
            )
        )

"""Entry point: wire storage, event bus and handlers, then run a demo budget session."""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from budgetapp.domain import Expense, User, YearMonth, format_money
from budgetapp.events import EventBus, EventTypes, MATCH_ALL
from budgetapp.events.middleware import logging_middleware
from budgetapp.handlers import (
    AnalyticsHandler,
    AnalyticsService,
    AuditHandler,
    AuditService,
    NotificationHandler,
    NotificationService,
)
from budgetapp.ids import IdGenerator, UuidIdGenerator
from budgetapp.logging_config import setup_logging
from budgetapp.service import BudgetRepository, EventService
from budgetapp.settings import get_setting, load_settings
from budgetapp.storage import CompositeStorage, MemoryStorage, SQLiteStorage, StorageProvider

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parent.parent

AUDIT_PRIORITY = 100
NOTIFICATION_PRIORITY = 50
ANALYTICS_PRIORITY = 10


@dataclass
class DefaultHandlers:
    """Services behind the default subscriptions, plus their subscription IDs."""

    audit: AuditService | None = None
    notification: NotificationService | None = None
    analytics: AnalyticsService | None = None
    subscription_ids: list[str] | None = None


def build_storage(settings: dict[str, Any], project_root: Path = _PROJECT_ROOT) -> StorageProvider:
    cfg = settings.get("storage", {})
    provider = cfg.get("provider", "memory")
    if provider == "memory":
        return MemoryStorage()
    sqlite = SQLiteStorage(
        project_root / cfg.get("db_path", "data/storage.db"),
        busy_timeout=cfg.get("busy_timeout", 5000),
    )
    if provider == "sqlite":
        return sqlite
    if provider == "composite":
        return CompositeStorage(sqlite, MemoryStorage())
    raise ValueError(f"unknown storage provider: {provider!r}")


def build_event_bus(
    settings: dict[str, Any],
    storage: StorageProvider | None = None,
    id_generator: IdGenerator | None = None,
) -> EventBus:
    eb_cfg = settings.get("event_bus", {})
    return EventBus(
        storage=storage if eb_cfg.get("persist_events", True) else None,
        id_generator=id_generator,
        max_concurrency=eb_cfg.get("max_concurrency", 32),
        persist_ttl=float(eb_cfg.get("persist_ttl", 86400)),
    )


def register_default_handlers(
    bus: EventBus,
    settings: dict[str, Any],
    storage: StorageProvider | None = None,
    id_generator: IdGenerator | None = None,
) -> DefaultHandlers:
    """Subscribe audit ('*'), notification (its routed types) and analytics ('*')."""
    ids = id_generator or UuidIdGenerator()
    result = DefaultHandlers(subscription_ids=[])

    if get_setting(settings, "handlers.audit.enabled", True):
        result.audit = AuditService(
            id_generator=ids,
            latency=get_setting(settings, "handlers.audit.latency", 0.05),
            storage=storage,
            retention=get_setting(settings, "handlers.audit.retention"),
            history_limit=get_setting(settings, "handlers.audit.history_limit", 1000),
        )
        audit = AuditHandler(result.audit)
        result.subscription_ids.append(
            bus.subscribe_pattern(MATCH_ALL, audit.handle, priority=AUDIT_PRIORITY)
        )

    if get_setting(settings, "handlers.notification.enabled", True):
        result.notification = NotificationService(
            id_generator=ids,
            latencies=get_setting(settings, "handlers.notification.latencies"),
            webhook_url=get_setting(settings, "handlers.notification.webhook_url"),
            storage=storage,
            suspicious_ips=get_setting(settings, "handlers.notification.suspicious_ips", []),
            history_limit=get_setting(settings, "handlers.notification.history_limit", 1000),
        )
        notification = NotificationHandler(result.notification)
        for event_type in NotificationHandler.ROUTED_TYPES:
            result.subscription_ids.append(
                bus.subscribe(event_type, notification.handle, priority=NOTIFICATION_PRIORITY)
            )

    if get_setting(settings, "handlers.analytics.enabled", True):
        result.analytics = AnalyticsService(
            id_generator=ids,
            latency=get_setting(settings, "handlers.analytics.latency", 0.1),
            history_limit=get_setting(settings, "handlers.analytics.history_limit", 1000),
        )
        analytics = AnalyticsHandler(result.analytics)
        result.subscription_ids.append(
            bus.subscribe_pattern(MATCH_ALL, analytics.handle, priority=ANALYTICS_PRIORITY)
        )

    logger.info(
        "Registered %d default subscriptions over patterns %s",
        len(result.subscription_ids),
        bus.get_event_patterns(),
    )
    return result


async def run_demo(service: EventService) -> None:
    """Create a budget, add expenses until the budget is exceeded."""
    ym = YearMonth(year=2024, month=1)
    user = await service.register_user(User(id=1, username="demo", email="demo@budgetapp.local"))
    service.record_login(user.id, username=user.username, session_id="demo-session")
    await service.create_income_source(user.id, "Salary", ym, 500_000)
    await service.create_budget_source(user.id, "groceries", ym, 40_000)
    for description, cents in (("Weekly shop", 15_000), ("Farmers market", 12_000), ("Party", 18_000)):
        await service.add_expense(
            user.id,
            Expense(year_month=ym, category="groceries", description=description, amount_cents=cents),
        )
    data = await service.get_monthly_data(user.id, ym)
    service.record_logout(user.id, session_id="demo-session", session_duration=120.0)
    service.publish_system_health("healthy", "demo complete")
    await service.flush()
    logger.info(
        "Demo month %s: income %s, expenses %s, remaining %s",
        ym,
        format_money(data.total_income_cents),
        format_money(data.total_expense_cents),
        format_money(data.remaining_cents),
    )


async def main_async() -> None:
    """Bootstrap: settings -> logging -> storage -> bus -> handlers -> demo -> shutdown."""
    settings = load_settings()
    setup_logging(_PROJECT_ROOT, settings)
    storage = build_storage(settings)
    bus = build_event_bus(settings, storage)
    bus.use(logging_middleware())
    handlers = register_default_handlers(bus, settings, storage)
    service = EventService(BudgetRepository(), bus)
    try:
        await run_demo(service)
        stats = bus.get_stats()
        logger.info(
            "EventBus stats: published=%d processed=%d failed=%d persistence_failures=%d avg=%.4fs",
            stats.events_published,
            stats.events_processed,
            stats.events_failed,
            stats.persistence_failures,
            stats.average_process_time,
        )
        if handlers.analytics is not None:
            logger.info("Analytics totals: %s", handlers.analytics.totals_by_name())
        if (
            handlers.notification is not None
            and any(n.subject == "Budget Exceeded Alert" for n in handlers.notification.sent())
        ):
            logger.info("Budget alert delivered for %s", EventTypes.BUDGET_EXCEEDED)
    finally:
        await bus.close()
        await storage.close()


def main() -> None:
    """Synchronous entry for python -m budgetapp."""
    load_dotenv(_PROJECT_ROOT / ".env")
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        pass


__all__ = ["build_event_bus", "build_storage", "main", "register_default_handlers"]

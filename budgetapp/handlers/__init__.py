"""Domain event handlers: audit trail, notifications, analytics, composition."""

from budgetapp.handlers.analytics import (
    AnalyticsEvent,
    AnalyticsHandler,
    AnalyticsMetric,
    AnalyticsService,
)
from budgetapp.handlers.audit import (
    AuditCategory,
    AuditHandler,
    AuditLevel,
    AuditRecord,
    AuditService,
)
from budgetapp.handlers.composite import CompositeConfig, CompositeHandler, CompositeHandlerError
from budgetapp.handlers.notification import (
    Notification,
    NotificationDeliveryError,
    NotificationHandler,
    NotificationPriority,
    NotificationService,
    NotificationType,
    is_suspicious_login,
)

__all__ = [
    "AnalyticsEvent",
    "AnalyticsHandler",
    "AnalyticsMetric",
    "AnalyticsService",
    "AuditCategory",
    "AuditHandler",
    "AuditLevel",
    "AuditRecord",
    "AuditService",
    "CompositeConfig",
    "CompositeHandler",
    "CompositeHandlerError",
    "Notification",
    "NotificationDeliveryError",
    "NotificationHandler",
    "NotificationPriority",
    "NotificationService",
    "NotificationType",
    "is_suspicious_login",
]

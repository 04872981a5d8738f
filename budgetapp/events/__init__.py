"""Event bus: typed domain events, pattern subscriptions, middleware."""

from budgetapp.events.bus import EventBus
from budgetapp.events.errors import (
    EventBusClosedError,
    EventBusError,
    HandlerFailure,
    PublishError,
    SubscriptionNotFoundError,
)
from budgetapp.events.models import Event, EventFactory
from budgetapp.events.stats import EventBusStats
from budgetapp.events.subscriptions import EventHandler, Subscription, matches_pattern
from budgetapp.events.topics import MATCH_ALL, EventTypes

__all__ = [
    "Event",
    "EventBus",
    "EventBusClosedError",
    "EventBusError",
    "EventBusStats",
    "EventFactory",
    "EventHandler",
    "EventTypes",
    "HandlerFailure",
    "MATCH_ALL",
    "PublishError",
    "Subscription",
    "SubscriptionNotFoundError",
    "matches_pattern",
]

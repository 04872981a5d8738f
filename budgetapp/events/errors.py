"""Event bus errors."""

from dataclasses import dataclass

__all__ = [
    "EventBusClosedError",
    "EventBusError",
    "HandlerFailure",
    "PublishError",
    "SubscriptionNotFoundError",
]


class EventBusError(Exception):
    """Base class for event bus errors."""


class SubscriptionNotFoundError(EventBusError, LookupError):
    """Unsubscribe was called with an unknown subscription ID."""

    def __init__(self, subscription_id: str) -> None:
        super().__init__(f"subscription not found: {subscription_id}")
        self.subscription_id = subscription_id


class EventBusClosedError(EventBusError):
    """Publish was called after close()."""


@dataclass(frozen=True)
class HandlerFailure:
    """One failed handler invocation within a publish."""

    subscription_id: str
    pattern: str
    error: BaseException

    def __str__(self) -> str:
        return f"handler {self.subscription_id} failed: {self.error!r}"


class PublishError(EventBusError):
    """One or more handlers failed for a published event.

    ``failures`` lists every failed invocation so callers can tell which
    subscriptions failed without parsing the message.
    """

    def __init__(self, event_id: str, event_type: str, failures: list[HandlerFailure]) -> None:
        self.event_id = event_id
        self.event_type = event_type
        self.failures = list(failures)
        details = "; ".join(str(f) for f in self.failures)
        super().__init__(
            f"{len(self.failures)} handler(s) failed for {event_type} ({event_id}): {details}"
        )

    @property
    def subscription_ids(self) -> list[str]:
        return [f.subscription_id for f in self.failures]

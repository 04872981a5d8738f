"""Subscription records, pattern matching and the pattern-bucketed registry."""

import itertools
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from budgetapp.events.errors import SubscriptionNotFoundError
from budgetapp.events.models import Event

EventHandler = Callable[[Event], Awaitable[None]]

__all__ = ["EventHandler", "Subscription", "SubscriptionRegistry", "matches_pattern"]


def matches_pattern(event_type: str, pattern: str) -> bool:
    """Exact match, '*' for everything, or 'prefix*' for a string-prefix match."""
    if pattern == event_type or pattern == "*":
        return True
    if len(pattern) > 1 and pattern.endswith("*"):
        return event_type.startswith(pattern[:-1])
    return False


@dataclass
class Subscription:
    """A registered interest in events matching ``pattern``."""

    id: str
    pattern: str
    handler: EventHandler
    priority: int = 0
    active: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)
    seq: int = 0

    def sort_key(self) -> tuple[int, int]:
        # Higher priority first; equal priorities keep insertion order
        return (-self.priority, self.seq)


class SubscriptionRegistry:
    """Maps pattern -> subscriptions ordered by priority, then insertion."""

    def __init__(self) -> None:
        self._buckets: dict[str, list[Subscription]] = defaultdict(list)
        self._seq = itertools.count()
        self._lock = threading.RLock()

    def add(self, subscription: Subscription) -> Subscription:
        with self._lock:
            subscription.seq = next(self._seq)
            bucket = self._buckets[subscription.pattern]
            bucket.append(subscription)
            bucket.sort(key=Subscription.sort_key)
        return subscription

    def remove(self, subscription_id: str) -> Subscription:
        """Remove the first subscription with this ID. Raises SubscriptionNotFoundError."""
        with self._lock:
            for pattern, bucket in self._buckets.items():
                for i, sub in enumerate(bucket):
                    if sub.id == subscription_id:
                        del bucket[i]
                        if not bucket:
                            del self._buckets[pattern]
                        return sub
        raise SubscriptionNotFoundError(subscription_id)

    def get(self, subscription_id: str) -> Subscription | None:
        with self._lock:
            for bucket in self._buckets.values():
                for sub in bucket:
                    if sub.id == subscription_id:
                        return sub
        return None

    def match(self, event_type: str) -> list[Subscription]:
        """All subscriptions (active or not) whose pattern accepts event_type, in dispatch order."""
        with self._lock:
            matched = [
                sub
                for pattern, bucket in self._buckets.items()
                if matches_pattern(event_type, pattern)
                for sub in bucket
            ]
        matched.sort(key=Subscription.sort_key)
        return matched

    def patterns(self) -> list[str]:
        with self._lock:
            return sorted(self._buckets)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(b) for b in self._buckets.values())

"""Identifier generation for events, subscriptions and derived records.

Generators are injected into the components that mint IDs, so tests can use a
deterministic sequence and production can use UUIDs.
"""

import itertools
import threading
import uuid
from typing import Protocol, runtime_checkable


@runtime_checkable
class IdGenerator(Protocol):
    """Mints unique string identifiers with a readable prefix."""

    def new_id(self, prefix: str) -> str:
        """Return a new identifier, e.g. 'evt_3f2a...'."""


class UuidIdGenerator:
    """Random UUID4-based identifiers. Safe under high-frequency publishing."""

    def new_id(self, prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex}"


class SequentialIdGenerator:
    """Monotonic counter + node identity. Thread-safe and deterministic."""

    def __init__(self, node: str = "local", start: int = 1) -> None:
        self._node = node
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def new_id(self, prefix: str) -> str:
        with self._lock:
            n = next(self._counter)
        return f"{prefix}_{self._node}_{n}"

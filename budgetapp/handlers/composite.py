"""Run several handlers as one subscription, with optional timeout and retry."""

import asyncio
import logging
from dataclasses import dataclass

from budgetapp.events.models import Event
from budgetapp.events.subscriptions import EventHandler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompositeConfig:
    continue_on_error: bool = True
    timeout: float | None = None
    max_retries: int = 0
    retry_delay: float = 0.0


class CompositeHandlerError(Exception):
    """One or more wrapped handlers failed after all attempts."""

    def __init__(self, errors: list[Exception]) -> None:
        self.errors = list(errors)
        super().__init__(
            f"composite handler errors ({len(self.errors)}): "
            + "; ".join(repr(e) for e in self.errors)
        )


class CompositeHandler:
    """Calls handlers sequentially in the given order."""

    def __init__(self, handlers: list[EventHandler], config: CompositeConfig | None = None) -> None:
        self._handlers = list(handlers)
        self._config = config or CompositeConfig()
        if self._config.max_retries < 0:
            raise ValueError("max_retries must be >= 0")

    async def handle(self, event: Event) -> None:
        errors: list[Exception] = []
        for handler in self._handlers:
            try:
                await self._run_with_retry(handler, event)
            except Exception as e:
                errors.append(e)
                if not self._config.continue_on_error:
                    break
        if errors:
            raise CompositeHandlerError(errors)

    __call__ = handle

    async def _attempt(self, handler: EventHandler, event: Event) -> None:
        if self._config.timeout:
            await asyncio.wait_for(handler(event), timeout=self._config.timeout)
        else:
            await handler(event)

    async def _run_with_retry(self, handler: EventHandler, event: Event) -> None:
        attempts = self._config.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                await self._attempt(handler, event)
                return
            except Exception as e:
                if attempt == attempts:
                    raise
                logger.debug(
                    "Composite: attempt %d/%d failed for %s: %s", attempt, attempts, event.type, e
                )
                if self._config.retry_delay > 0:
                    await asyncio.sleep(self._config.retry_delay)

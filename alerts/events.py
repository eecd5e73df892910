"""Publish/subscribe for domain events, passed explicitly to the components that emit them."""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Union

Handler = Callable[["DomainEvent"], Union[None, Awaitable[None]]]

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class DomainEvent:
    name: str
    payload: dict[str, Any]
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EventPublisher:
    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, name: str, handler: Handler) -> None:
        """Registers a handler for one event name, or '*' for every event."""
        self._handlers[name].append(handler)

    async def publish(self, name: str, payload: dict[str, Any]) -> DomainEvent:
        event = DomainEvent(name=name, payload=payload)
        for handler in [*self._handlers.get(name, ()), *self._handlers.get('*', ())]:
            try:
                outcome = handler(event)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception:
                # a failing subscriber must not stop delivery to the others
                logger.exception("Handler for %s failed", name)
        return event

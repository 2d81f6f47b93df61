"""Event Bus — progress events and operator alerts raised while migrating.

Topics emitted by strata:

    upgrade.started / upgrade.unit_applied / upgrade.completed
    upgrade.failed / upgrade.waiting
    cleanup.unit_cleaned / cleanup.failed
    lock.lost / lock.stuck

Handlers subscribe with shell-style patterns ("lock.*") and run one after
another in subscription order.
"""

from __future__ import annotations

import fnmatch
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, Field

from strata.types import new_id

_logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], Awaitable[None]]


class Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    topic: str
    data: dict[str, Any] = Field(default_factory=dict)
    source: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EventBus:
    """In-process dispatcher that also keeps the most recent events.

    A handler that raises is logged and skipped; the emitter (an executor
    mid-migration, a lock renewer) never sees the error.
    """

    def __init__(self, history_limit: int = 500) -> None:
        self._subscriptions: list[tuple[str, EventHandler]] = []
        self._recent: deque[Event] = deque(maxlen=history_limit)

    def subscribe(self, pattern: str, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler`` for topics matching ``pattern``.

        Returns a callable that removes the subscription again.
        """
        entry = (pattern, handler)
        self._subscriptions.append(entry)

        def _cancel() -> None:
            if entry in self._subscriptions:
                self._subscriptions.remove(entry)

        return _cancel

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        self._subscriptions = [
            s for s in self._subscriptions if s != (pattern, handler)
        ]

    async def emit(self, topic: str, data: dict | None = None, source: str = "") -> Event:
        event = Event(topic=topic, data=data or {}, source=source)
        self._recent.append(event)

        for pattern, handler in list(self._subscriptions):
            if not fnmatch.fnmatchcase(topic, pattern):
                continue
            try:
                await handler(event)
            except Exception as e:
                _logger.warning(
                    "Handler %s for %s failed: %s",
                    getattr(handler, "__name__", handler), topic, e,
                )
        return event

    def history(self, topic_filter: str = "*", limit: int = 50) -> list[Event]:
        """Recent events matching ``topic_filter``, newest first."""
        matched = [e for e in reversed(self._recent) if fnmatch.fnmatchcase(e.topic, topic_filter)]
        return matched[:limit]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

ALL_EVENTS = "*"


@dataclass(frozen=True, slots=True)
class StoryEvent:
    type: str
    payload: dict[str, Any]
    ts: datetime

    @staticmethod
    def now(*, type: str, payload: dict[str, Any]) -> "StoryEvent":
        return StoryEvent(type=type, payload=payload, ts=datetime.now(timezone.utc))


Handler = Callable[[StoryEvent], None]


class EventChannel:
    """Synchronous publish/subscribe channel owned by a single component.

    Handlers run inline, in subscription order, before `emit` returns. That keeps
    listeners in the same logical step as the mutation that produced the event.
    """

    def __init__(self, *, name: str):
        self.name = name
        self._handlers: dict[str, list[Handler]] = {}

    def subscribe(self, event_type: str, handler: Handler) -> Callable[[], None]:
        self._handlers.setdefault(event_type, []).append(handler)

        def _unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def subscribe_all(self, handler: Handler) -> Callable[[], None]:
        return self.subscribe(ALL_EVENTS, handler)

    def emit(self, event_type: str, payload: dict[str, Any] | None = None) -> StoryEvent:
        event = StoryEvent.now(type=event_type, payload=dict(payload or {}))
        logger.debug("[%s] %s %s", self.name, event_type, event.payload)

        # Copy so handlers may unsubscribe while being notified.
        for handler in list(self._handlers.get(event_type, ())):
            handler(event)
        for handler in list(self._handlers.get(ALL_EVENTS, ())):
            handler(event)
        return event

    def clear(self) -> None:
        self._handlers.clear()

from __future__ import annotations

import logging
from collections import defaultdict, deque
from typing import Any, Callable, Protocol


logger = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any]], None]


class EventBus(Protocol):
    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        ...

    def publish(self, event_type: str, envelope: dict[str, Any]) -> None:
        ...


class InMemoryEventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self.published: deque[dict[str, Any]] = deque(maxlen=10000)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def publish(self, event_type: str, envelope: dict[str, Any]) -> None:
        self.published.append(envelope)
        handlers = list(self._subscribers.get(event_type, [])) + list(self._subscribers.get("*", []))
        for handler in handlers:
            # A failing subscriber must not undo a committed state change.
            try:
                handler(envelope)
            except Exception:
                logger.exception("Event handler failed for %s", event_type)

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [e for e in self.published if e.get("event_type") == event_type]

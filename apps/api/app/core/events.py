import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


logger = logging.getLogger("app.events")


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out bus. A failing handler is logged and does not stop the others."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        with self._lock:
            if handler not in self._subscribers[event_name]:
                self._subscribers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        with self._lock:
            handlers = self._subscribers.get(event_name, [])
            if handler in handlers:
                handlers.remove(handler)

    def handlers_for(self, event_name: str) -> list[EventHandler]:
        with self._lock:
            return list(self._subscribers.get(event_name, []))

    def publish(self, event_name: str, payload: dict[str, Any]) -> int:
        event = InternalEvent(name=event_name, payload=payload)
        delivered = 0
        for handler in self.handlers_for(event_name):
            try:
                handler(event)
            except Exception as exc:
                logger.exception("event.handler_failed", extra={"event_name": event_name, "error": str(exc)[:500]})
                continue
            delivered += 1
        return delivered


event_bus = InProcessEventBus()

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass
class DomainEvent:
    name: str
    envelope: dict[str, Any]


EventHandler = Callable[[DomainEvent], None]


class InProcessEventBus:
    """Synchronous fan-out of published CRM events to in-process subscribers."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        self._subscribers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event_name: str, envelope: dict[str, Any]) -> None:
        event = DomainEvent(name=event_name, envelope=envelope)
        for handler in list(self._subscribers.get(event_name, [])):
            handler(event)


event_bus = InProcessEventBus()

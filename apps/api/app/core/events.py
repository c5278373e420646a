from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out. Handlers subscribe to an exact name or to a dotted prefix such as ``crm.``."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self._prefix_subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        self._subscribers[event_name].append(handler)

    def subscribe_prefix(self, prefix: str, handler: EventHandler) -> None:
        self._prefix_subscribers[prefix].append(handler)

    def clear(self) -> None:
        self._subscribers.clear()
        self._prefix_subscribers.clear()

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        handlers = list(self._subscribers.get(event_name, []))
        for prefix, prefix_handlers in self._prefix_subscribers.items():
            if event_name.startswith(prefix):
                handlers.extend(prefix_handlers)
        for handler in handlers:
            handler(event)


event_bus = InProcessEventBus()

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from app.metrics import observe_event_handler_failure


logger = logging.getLogger("app.events")


@dataclass(frozen=True)
class DomainEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[DomainEvent], None]


def _handler_name(handler: EventHandler) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


class InProcessEventBus:
    """Synchronous fan-out to subscribers registered in this process.

    Events are published after the originating change has committed, so a
    subscriber that raises is logged and counted and the remaining
    subscribers still run. Nothing propagates back to the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        self._subscribers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event_name: str, payload: dict[str, Any]) -> int:
        """Deliver the event and return how many subscribers failed."""

        event = DomainEvent(name=event_name, payload=payload)
        failures = 0
        for handler in list(self._subscribers.get(event_name, [])):
            try:
                handler(event)
            except Exception:
                failures += 1
                observe_event_handler_failure(event_name)
                logger.exception(
                    "event.handler_failed",
                    extra={"event_type": event_name, "handler": _handler_name(handler)},
                )
        return failures


event_bus = InProcessEventBus()

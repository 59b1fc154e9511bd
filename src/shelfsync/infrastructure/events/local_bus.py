"""In-process event bus.

Hey future me - this is the bus the coordinators subscribe on. The SSE bridge
publishes backend events into it; tests publish directly. Dispatch is synchronous
on the event loop thread, in subscription order, so events for one operation are
delivered in the order they were published.
"""

import logging
from collections import defaultdict
from typing import Any

from shelfsync.domain.ports import EventHandler, IEventBus, Unsubscribe

logger = logging.getLogger(__name__)


class LocalEventBus(IEventBus):
    """Simple publish/subscribe bus keyed by event name."""

    def __init__(self) -> None:
        self._handlers: defaultdict[str, list[EventHandler]] = defaultdict(list)
        self._published = 0

    def subscribe(self, event_name: str, handler: EventHandler) -> Unsubscribe:
        self._handlers[event_name].append(handler)
        subscribed = True

        def unsubscribe() -> None:
            nonlocal subscribed
            if not subscribed:
                return
            subscribed = False
            handlers = self._handlers.get(event_name)
            if handlers and handler in handlers:
                handlers.remove(handler)
            if not handlers:
                self._handlers.pop(event_name, None)

        return unsubscribe

    def publish(self, event_name: str, payload: Any = None) -> int:
        """Deliver `payload` to every handler of `event_name`.

        A handler that raises is logged and skipped - the others still run.

        Returns:
            Number of handlers invoked
        """
        self._published += 1
        # Snapshot: handlers may unsubscribe while we dispatch
        handlers = list(self._handlers.get(event_name, ()))
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                logger.exception("Handler for event '%s' raised", event_name)
        return len(handlers)

    def subscriber_count(self, event_name: str) -> int:
        return len(self._handlers.get(event_name, ()))

    @property
    def published_count(self) -> int:
        return self._published

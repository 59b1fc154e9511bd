"""Event bus adapters."""

from shelfsync.infrastructure.events.local_bus import LocalEventBus
from shelfsync.infrastructure.events.sse_bridge import (
    ServerSentEvent,
    SseEventBridge,
    iter_sse_events,
)

__all__ = ["LocalEventBus", "ServerSentEvent", "SseEventBridge", "iter_sse_events"]

# Hey future me - die Brücke zwischen Backend-Events und dem lokalen Bus!
#
# Das Backend streamt seine Events als Server-Sent Events:
#
#   event: enrich-progress
#   data: {"itemId": "b1", "status": "processing", "current": 1, "total": 3}
#
#   event: enrich-error
#   data: metadata source unreachable
#
# Wir lesen den Stream mit httpx, bauen pro Leerzeile ein Event zusammen und
# publizieren es auf dem LocalEventBus. Bei Verbindungsabbruch: kurz warten,
# neu verbinden, bis stop() kommt.
"""SSE bridge - republishes backend events on the local event bus."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx

from shelfsync.config.settings import BackendSettings
from shelfsync.infrastructure.events.local_bus import LocalEventBus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServerSentEvent:
    """One decoded SSE frame."""

    event: str
    data: Any


def _decode_data(raw: str) -> Any:
    # N-error reasons travel as plain strings, everything else as JSON
    try:
        return json.loads(raw)
    except ValueError:
        return raw


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[ServerSentEvent]:
    """Group text/event-stream lines into events.

    Handles `event:` / `data:` fields, multi-line data, and `:` comments
    (keep-alives). Frames without data are dropped.
    """
    event_name = "message"
    data_lines: list[str] = []

    async for line in lines:
        if not line:
            if data_lines:
                yield ServerSentEvent(event=event_name, data=_decode_data("\n".join(data_lines)))
            event_name = "message"
            data_lines = []
            continue
        if line.startswith(":"):
            continue

        field_name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field_name == "event":
            event_name = value or "message"
        elif field_name == "data":
            data_lines.append(value)

    if data_lines:
        yield ServerSentEvent(event=event_name, data=_decode_data("\n".join(data_lines)))


class SseEventBridge:
    """Background task streaming backend events onto a LocalEventBus.

    Usage:
        bridge = SseEventBridge(settings.backend, bus)
        await bridge.start()
        ...
        await bridge.stop()
    """

    def __init__(
        self,
        settings: BackendSettings,
        bus: LocalEventBus,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self._bus = bus
        self._client = client
        self._owns_client = client is None
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._stats: dict[str, int] = {"events": 0, "connects": 0, "errors": 0}

    async def start(self) -> None:
        """Start streaming in a background task."""
        if self._running:
            logger.warning("SseEventBridge already running")
            return
        if self._client is None:
            # No read timeout - the stream is idle between operations
            self._client = httpx.AsyncClient(
                base_url=self.settings.base_url,
                timeout=httpx.Timeout(None),
            )
        self._running = True
        self._task = asyncio.create_task(self._stream_loop(), name="sse-event-bridge")
        logger.info("SSE event bridge started (%s)", self.settings.events_path)

    async def stop(self) -> None:
        """Stop streaming and close the client we own."""
        if not self._running:
            return
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        logger.info(
            "SSE event bridge stopped (%d events, %d errors)",
            self._stats["events"],
            self._stats["errors"],
        )

    async def _stream_loop(self) -> None:
        while self._running:
            try:
                await self.stream_once()
            except asyncio.CancelledError:
                raise
            except httpx.HTTPError as e:
                self._stats["errors"] += 1
                logger.warning("Event stream interrupted: %s", e)
            if self._running:
                await asyncio.sleep(self.settings.reconnect_delay)

    async def stream_once(self) -> int:
        """Consume the event stream until the server closes it.

        Returns:
            Number of events published

        Raises:
            httpx.HTTPError: Connection failed or non-2xx status
        """
        if self._client is None:
            raise RuntimeError("SseEventBridge not started")

        published = 0
        async with self._client.stream(
            "GET",
            self.settings.events_path,
            headers={"Accept": "text/event-stream"},
        ) as response:
            response.raise_for_status()
            self._stats["connects"] += 1
            async for event in iter_sse_events(response.aiter_lines()):
                self._bus.publish(event.event, event.data)
                self._stats["events"] += 1
                published += 1
        return published

    def get_status(self) -> dict[str, Any]:
        return {"running": self._running, **self._stats}

    @property
    def is_running(self) -> bool:
        return self._running

"""Tests for the SSE event bridge."""

import asyncio

import httpx
import pytest
from pytest_httpx import HTTPXMock

from shelfsync.config import BackendSettings
from shelfsync.infrastructure.events import LocalEventBus, SseEventBridge
from shelfsync.infrastructure.events.sse_bridge import ServerSentEvent, iter_sse_events

BASE_URL = "http://backend.test"

STREAM = (
    b": keep-alive\n"
    b"\n"
    b"event: scan-progress\n"
    b'data: {"itemId": "b1", "status": "processing", "current": 1, "total": 2}\n'
    b"\n"
    b"event: scan-error\n"
    b"data: library folder vanished\n"
    b"\n"
)


async def _lines(*lines: str):
    for line in lines:
        yield line


async def _collect(lines) -> list[ServerSentEvent]:
    return [event async for event in iter_sse_events(lines)]


class TestParsing:
    """Test text/event-stream framing."""

    async def test_json_and_plain_data(self):
        events = await _collect(
            _lines("event: sync-complete", 'data: {"total": 1}', "", "event: sync-error", "data: nope", "")
        )

        assert events == [
            ServerSentEvent(event="sync-complete", data={"total": 1}),
            ServerSentEvent(event="sync-error", data="nope"),
        ]

    async def test_multiline_data_and_default_event(self):
        events = await _collect(_lines("data: first", "data: second", ""))

        assert events == [ServerSentEvent(event="message", data="first\nsecond")]

    async def test_comments_and_empty_frames_are_skipped(self):
        events = await _collect(_lines(": ping", "", "event: scan-progress", ""))

        assert events == []

    async def test_trailing_frame_without_blank_line(self):
        events = await _collect(_lines("event: enrich-cancelled", "data: null"))

        assert events == [ServerSentEvent(event="enrich-cancelled", data=None)]


class TestBridge:
    """Test republishing onto the local bus."""

    async def test_stream_once_publishes_events(self, httpx_mock: HTTPXMock):
        httpx_mock.add_response(method="GET", url=f"{BASE_URL}/events", content=STREAM)
        bus = LocalEventBus()
        received = []
        bus.subscribe("scan-progress", received.append)
        bus.subscribe("scan-error", received.append)

        async with httpx.AsyncClient(base_url=BASE_URL) as client:
            bridge = SseEventBridge(BackendSettings(base_url=BASE_URL), bus, client=client)
            published = await bridge.stream_once()

        assert published == 2
        assert received == [
            {"itemId": "b1", "status": "processing", "current": 1, "total": 2},
            "library folder vanished",
        ]
        assert httpx_mock.get_request().headers["Accept"] == "text/event-stream"
        assert bridge.get_status()["connects"] == 1

    async def test_stream_once_raises_on_http_error(self, httpx_mock: HTTPXMock):
        httpx_mock.add_response(url=f"{BASE_URL}/events", status_code=503)

        async with httpx.AsyncClient(base_url=BASE_URL) as client:
            bridge = SseEventBridge(BackendSettings(base_url=BASE_URL), LocalEventBus(), client=client)
            with pytest.raises(httpx.HTTPStatusError):
                await bridge.stream_once()

    async def test_stream_once_requires_client(self):
        bridge = SseEventBridge(BackendSettings(base_url=BASE_URL), LocalEventBus())

        with pytest.raises(RuntimeError):
            await bridge.stream_once()

    async def test_loop_reconnects_after_error(self, mocker):
        settings = BackendSettings(base_url=BASE_URL, reconnect_delay=0)
        client = httpx.AsyncClient(base_url=BASE_URL)
        bridge = SseEventBridge(settings, LocalEventBus(), client=client)
        connected = asyncio.Event()
        attempts = 0

        async def fake_stream_once():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise httpx.ConnectError("connection refused")
            connected.set()
            await asyncio.Event().wait()

        mocker.patch.object(bridge, "stream_once", side_effect=fake_stream_once)

        await bridge.start()
        await asyncio.wait_for(connected.wait(), timeout=1)
        assert bridge.is_running

        await bridge.stop()

        assert not bridge.is_running
        assert attempts == 2
        assert bridge.get_status()["errors"] == 1
        assert not client.is_closed
        await client.aclose()

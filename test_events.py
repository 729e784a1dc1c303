"""Tests for tunnel events and listener delivery."""

import asyncio

import pytest

from ikspoz.tunnel.events import (
    Closed,
    Closing,
    Connected,
    Connecting,
    RequestDescriptor,
    RequestReceived,
    TunnelEvent,
    TunnelEvents,
    TunnelListener,
    deliver,
)


class RecordingListener(TunnelListener):
    def __init__(self):
        self.seen = []

    def on_connecting(self, event):
        self.seen.append("connecting")

    def on_connected(self, event):
        self.seen.append(f"connected {event.public_url}")

    def on_request_received(self, event):
        self.seen.append(f"received {event.request.method} {event.request.url}")

    def on_closed(self, event):
        self.seen.append("closed")


class BrokenListener(TunnelListener):
    def on_connecting(self, event):
        raise RuntimeError("listener bug")


class TestTunnelEvents:
    def test_emit_and_drain(self):
        events = TunnelEvents()
        events.emit(Connecting())
        events.emit(Connected("https://relay.example"))

        assert events.pending() == 2
        assert events.drain() == [Connecting(), Connected("https://relay.example")]
        assert events.pending() == 0

    def test_full_queue_drops_events(self):
        events = TunnelEvents(maxsize=2)
        events.emit(Connecting())
        events.emit(Connected("https://relay.example"))
        events.emit(Closing())

        assert events.dropped == 1
        assert events.drain() == [Connecting(), Connected("https://relay.example")]

    @pytest.mark.asyncio
    async def test_pump_stops_after_closed(self):
        events = TunnelEvents()
        listener = RecordingListener()
        request = RequestDescriptor("req-1", "GET", "http://target/items")

        events.emit(Connecting())
        events.emit(Connected("https://relay.example"))
        events.emit(RequestReceived(request))
        events.emit(Closing())
        events.emit(Closed())

        await asyncio.wait_for(events.pump([listener]), timeout=1)

        assert listener.seen == [
            "connecting",
            "connected https://relay.example",
            "received GET http://target/items",
            "closed",
        ]

    @pytest.mark.asyncio
    async def test_pump_waits_for_events(self):
        events = TunnelEvents()
        listener = RecordingListener()
        pump = asyncio.create_task(events.pump([listener]))

        await asyncio.sleep(0)
        assert not pump.done()

        events.emit(Closed())
        await asyncio.wait_for(pump, timeout=1)
        assert listener.seen == ["closed"]


class TestDeliver:
    def test_broken_listener_does_not_stop_others(self):
        listener = RecordingListener()

        deliver(Connecting(), [BrokenListener(), listener])

        assert listener.seen == ["connecting"]

    def test_unhandled_hooks_are_noops(self):
        listener = TunnelListener()
        deliver(Closing(), [listener])
        deliver(TunnelEvent(), [listener])

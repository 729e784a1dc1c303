"""Tests for the tunnel connection lifecycle."""

import asyncio

import httpx
import pytest

from conftest import RELAY_BASE_URL, BlockingStream, FakeChannel, mock_client, target_response
from ikspoz.tunnel import ConnectionState, TunnelEngine
from ikspoz.tunnel.channel import RelayedRequest
from ikspoz.tunnel.errors import (
    TUNNEL_CLOSING,
    ChannelError,
    ChannelNotFound,
    IllegalStateTransition,
    OpenFailed,
)
from ikspoz.tunnel.events import (
    Closed,
    Closing,
    Connected,
    Connecting,
    RequestForwarded,
    RequestReceived,
    ResponseReceived,
    TunnelEvents,
)


def make_engine(channel, handler=None, events=None):
    client = mock_client(handler or (lambda request: target_response(200)))
    return TunnelEngine(channel, "http://target", events=events or TunnelEvents(), http_client=client)


# ---------------------------------------------------------------------------
# Open
# ---------------------------------------------------------------------------


class TestOpen:
    @pytest.mark.asyncio
    async def test_open_returns_public_url(self):
        channel = FakeChannel()
        engine = make_engine(channel)

        public_url = await engine.open("Endpoint=wss://relay.example;Entity=demo")

        assert public_url == RELAY_BASE_URL
        assert engine.state is ConnectionState.OPEN
        assert engine.public_url == RELAY_BASE_URL
        assert channel.connection_string == "Endpoint=wss://relay.example;Entity=demo"

        emitted = engine.events.drain()
        assert emitted == [Connecting(), Connected(RELAY_BASE_URL)]

    @pytest.mark.asyncio
    async def test_open_twice_is_rejected(self):
        channel = FakeChannel()
        engine = make_engine(channel)
        await engine.open("cs")

        with pytest.raises(IllegalStateTransition):
            await engine.open("cs")

        assert engine.state is ConnectionState.OPEN
        assert channel.open_calls == 1

    @pytest.mark.asyncio
    async def test_channel_not_found(self):
        engine = make_engine(FakeChannel(open_error=ChannelError("no such entity", not_found=True)))

        with pytest.raises(ChannelNotFound):
            await engine.open("cs")

        assert engine.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_channel_error_is_open_failed(self):
        engine = make_engine(FakeChannel(open_error=ChannelError("authentication failed")))

        with pytest.raises(OpenFailed) as exc_info:
            await engine.open("cs")

        assert "authentication failed" in str(exc_info.value)
        assert engine.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_unexpected_error_is_open_failed(self):
        engine = make_engine(FakeChannel(open_error=OSError("network unreachable")))

        with pytest.raises(OpenFailed):
            await engine.open("cs")

        assert engine.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_open_again_after_failure(self):
        channel = FakeChannel(open_error=ChannelError("temporary"))
        engine = make_engine(channel)

        with pytest.raises(OpenFailed):
            await engine.open("cs")

        channel.open_error = None
        assert await engine.open("cs") == RELAY_BASE_URL
        assert engine.state is ConnectionState.OPEN


# ---------------------------------------------------------------------------
# Close
# ---------------------------------------------------------------------------


class TestClose:
    @pytest.mark.asyncio
    async def test_close(self):
        channel = FakeChannel()
        engine = make_engine(channel)
        await engine.open("cs")
        engine.events.drain()

        await engine.close()

        assert engine.state is ConnectionState.CLOSED
        assert channel.closed
        assert engine.events.drain() == [Closing(), Closed()]

    @pytest.mark.asyncio
    async def test_close_twice_is_rejected(self):
        engine = make_engine(FakeChannel())
        await engine.open("cs")
        await engine.close()

        with pytest.raises(IllegalStateTransition):
            await engine.close()

        assert engine.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_close_before_open_is_rejected(self):
        engine = make_engine(FakeChannel())

        with pytest.raises(IllegalStateTransition) as exc_info:
            await engine.close()

        assert "closed" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_close_during_body_copy(self):
        stream = BlockingStream()
        channel = FakeChannel()
        headers = {"Content-Length": "7", "Content-Type": "application/json"}
        engine = make_engine(channel, lambda request: httpx.Response(200, headers=headers, stream=stream))
        await engine.open("cs")

        sink = channel.deliver(RelayedRequest("GET", f"{RELAY_BASE_URL}/slow"))
        await asyncio.wait_for(stream.started.wait(), timeout=1)
        assert not sink.headers_sent

        await engine.close()
        await asyncio.wait_for(sink.finished.wait(), timeout=1)

        assert sink.status_code == 500
        assert sink.reason == TUNNEL_CLOSING
        assert sink.headers == []
        assert sink.finished_with_head is False
        assert sink.close_count == 1
        assert stream.closed

    @pytest.mark.asyncio
    async def test_wait_closed(self):
        engine = make_engine(FakeChannel())
        await engine.open("cs")

        waiter = asyncio.create_task(engine.wait_closed())
        await asyncio.sleep(0)
        assert not waiter.done()

        await engine.close()
        await asyncio.wait_for(waiter, timeout=1)

    @pytest.mark.asyncio
    async def test_channel_loss_closes_engine(self):
        channel = FakeChannel()
        engine = make_engine(channel)
        await engine.open("cs")

        channel.lose(ConnectionError("relay went away"))
        await asyncio.wait_for(engine.wait_closed(), timeout=1)

        assert engine.state is ConnectionState.CLOSED
        assert channel.closed

    @pytest.mark.asyncio
    async def test_reopen_after_close(self):
        channel = FakeChannel()
        engine = make_engine(channel)
        await engine.open("cs")
        await engine.close()

        await engine.open("cs")

        assert engine.state is ConnectionState.OPEN
        assert channel.open_calls == 2


# ---------------------------------------------------------------------------
# Dispatching requests
# ---------------------------------------------------------------------------


class TestDispatch:
    @pytest.mark.asyncio
    async def test_request_tunneled(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return target_response(200, {"Content-Type": "text/plain"}, b"pong")

        channel = FakeChannel()
        engine = make_engine(channel, handler)
        await engine.open("cs")
        engine.events.drain()

        sink = channel.deliver(RelayedRequest("GET", f"{RELAY_BASE_URL}/ping?x=1"))
        await asyncio.wait_for(sink.finished.wait(), timeout=1)

        assert seen == ["http://target/ping?x=1"]
        assert sink.status_code == 200
        assert bytes(sink.body) == b"pong"

        emitted = engine.events.drain()
        assert [type(event) for event in emitted] == [RequestReceived, RequestForwarded, ResponseReceived]
        request_ids = {
            emitted[0].request.request_id,
            emitted[1].request.request_id,
            emitted[2].response.request_id,
        }
        assert len(request_ids) == 1

    @pytest.mark.asyncio
    async def test_requests_run_concurrently(self):
        stream = BlockingStream(chunks=(b"slow",))

        def handler(request):
            if request.url.path == "/slow":
                return httpx.Response(200, stream=stream)
            return target_response(200, body=b"fast")

        channel = FakeChannel()
        engine = make_engine(channel, handler)
        await engine.open("cs")

        slow = channel.deliver(RelayedRequest("GET", f"{RELAY_BASE_URL}/slow"))
        await asyncio.wait_for(stream.started.wait(), timeout=1)
        fast = channel.deliver(RelayedRequest("GET", f"{RELAY_BASE_URL}/fast"))

        await asyncio.wait_for(fast.finished.wait(), timeout=1)
        await asyncio.sleep(0.01)
        assert bytes(fast.body) == b"fast"
        assert not slow.closed
        assert engine.in_flight == 1

        stream.release.set()
        await asyncio.wait_for(slow.finished.wait(), timeout=1)
        assert bytes(slow.body) == b"slow"

    @pytest.mark.asyncio
    async def test_request_after_close_is_dropped(self):
        seen = []

        def handler(request):
            seen.append(request)
            return target_response(200)

        channel = FakeChannel()
        engine = make_engine(channel, handler)
        await engine.open("cs")
        await engine.close()

        sink = channel.deliver(RelayedRequest("GET", f"{RELAY_BASE_URL}/late"))
        await asyncio.sleep(0)

        assert seen == []
        assert engine.in_flight == 0
        assert not sink.closed

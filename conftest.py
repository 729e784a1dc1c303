"""Shared test fakes: an in-memory relay channel, a recording sink and target helpers."""

import asyncio
from typing import List, Optional

import httpx
import pytest

from ikspoz.tunnel.channel import RelayChannel, RelayedRequest, ResponseSink
from ikspoz.tunnel.events import TunnelEvents
from ikspoz.tunnel.translator import RequestTranslator, ShutdownSignal

RELAY_BASE_URL = "https://relay.example"
TARGET_BASE_URL = "http://target"


class FakeSink(ResponseSink):
    """Records what the tunnel writes to it."""

    def __init__(self):
        super().__init__()
        self.head = None
        self.body = bytearray()
        self.close_count = 0
        self.finished_with_head = None
        self.finished = asyncio.Event()

    async def _send_head(self):
        self.head = (self.status_code, self.reason, list(self.headers))

    async def _send_body(self, data: bytes):
        self.body.extend(data)

    async def _finish(self, head_sent: bool):
        self.close_count += 1
        self.finished_with_head = head_sent
        self.finished.set()

    def header_values(self, name: str) -> List[str]:
        return [value for key, value in self.headers if key.lower() == name.lower()]


class FakeChannel(RelayChannel):
    """In-memory relay channel; tests push requests with deliver()."""

    def __init__(self, open_error: Optional[BaseException] = None, public_url: str = RELAY_BASE_URL):
        self.open_error = open_error
        self.public_url = public_url
        self.handler = None
        self.on_lost = None
        self.open_calls = 0
        self.closed = False

    @property
    def base_url(self) -> str:
        return self.public_url

    async def open(self, connection_string, handler, on_lost=None):
        self.open_calls += 1
        if self.open_error is not None:
            raise self.open_error
        self.connection_string = connection_string
        self.handler = handler
        self.on_lost = on_lost
        self.closed = False
        return self.public_url

    async def close(self):
        self.closed = True

    def deliver(self, request: RelayedRequest) -> FakeSink:
        sink = FakeSink()
        self.handler(request, sink)
        return sink

    def lose(self, error: Optional[BaseException] = None):
        self.on_lost(error)


class BlockingStream(httpx.AsyncByteStream):
    """Response body that yields nothing until released."""

    def __init__(self, chunks=(b"late",)):
        self.chunks = chunks
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.closed = False

    async def __aiter__(self):
        self.started.set()
        await self.release.wait()
        for chunk in self.chunks:
            yield chunk

    async def aclose(self):
        self.closed = True


class FailingStream(httpx.AsyncByteStream):
    """Response body that breaks after its first chunk."""

    async def __aiter__(self):
        yield b"part"
        raise httpx.ReadError("connection reset by target")


def target_response(status_code: int = 200, headers=None, body: bytes = b"") -> httpx.Response:
    """A target response that still has to be streamed, like one read off the network."""
    return httpx.Response(status_code, headers=headers, stream=httpx.ByteStream(body))


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_translator(client: httpx.AsyncClient, shutdown: Optional[ShutdownSignal] = None,
                    events: Optional[TunnelEvents] = None) -> RequestTranslator:
    return RequestTranslator(
        target_base_url=TARGET_BASE_URL,
        channel_base_url=RELAY_BASE_URL,
        client=client,
        shutdown=shutdown or ShutdownSignal(),
        events=events or TunnelEvents(),
    )


@pytest.fixture
def fake_channel():
    return FakeChannel()

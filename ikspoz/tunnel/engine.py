"""
Tunnel connection lifecycle.

The engine opens a relay channel, registers itself as the channel's request
handler, and runs one independent RequestTranslator task per relayed request
until it is closed. It is driven by a single caller: open() and close() are
not reentrant.
"""

import asyncio
import enum
import logging
import uuid
from typing import Optional, Set

import httpx

from ..config import Config
from .channel import RelayChannel, RelayedRequest, ResponseSink
from .errors import ChannelError, ChannelNotFound, IllegalStateTransition, OpenFailed
from .events import (
    Closed,
    Closing,
    Connected,
    Connecting,
    RequestDescriptor,
    RequestReceived,
    TunnelEvents,
)
from .translator import RequestTranslator, ShutdownSignal

logger = logging.getLogger(__name__)


class ConnectionState(enum.Enum):
    CLOSED = "closed"
    OPENING = "opening"
    OPEN = "open"
    CLOSING = "closing"


class TunnelEngine:
    def __init__(
        self,
        channel: RelayChannel,
        target_base_url: str,
        events: Optional[TunnelEvents] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.channel = channel
        self.target_base_url = target_base_url
        self.events = events if events is not None else TunnelEvents()
        self.state = ConnectionState.CLOSED
        self.public_url: Optional[str] = None

        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._shutdown: Optional[ShutdownSignal] = None
        self._translator: Optional[RequestTranslator] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closed_event = asyncio.Event()
        self._lost_task: Optional[asyncio.Task] = None

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def open(self, connection_string: str) -> str:
        """Open the relay channel and start tunneling. Returns the public URL."""
        if self.state is not ConnectionState.CLOSED:
            raise IllegalStateTransition("open", self.state)

        self.state = ConnectionState.OPENING
        self.events.emit(Connecting())

        shutdown = ShutdownSignal()
        try:
            public_url = await self.channel.open(connection_string, self._dispatch, self._on_channel_lost)
        except ChannelError as e:
            self.state = ConnectionState.CLOSED
            if e.not_found:
                raise ChannelNotFound(str(e)) from e
            raise OpenFailed(str(e)) from e
        except Exception as e:
            self.state = ConnectionState.CLOSED
            raise OpenFailed(str(e)) from e

        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=Config.REQUEST_TIMEOUT)
            self._owns_http_client = True

        self._shutdown = shutdown
        self._translator = RequestTranslator(
            target_base_url=self.target_base_url,
            channel_base_url=self.channel.base_url,
            client=self._http_client,
            shutdown=shutdown,
            events=self.events,
        )
        self._closed_event.clear()
        self.public_url = public_url
        self.state = ConnectionState.OPEN

        logger.debug(f"Tunnel open: {public_url} -> {self.target_base_url}")
        self.events.emit(Connected(public_url))
        return public_url

    async def close(self):
        """Cancel in-flight translations and close the relay channel."""
        if self.state is not ConnectionState.OPEN:
            raise IllegalStateTransition("close", self.state)

        self.state = ConnectionState.CLOSING
        self.events.emit(Closing())
        self._shutdown.set()

        try:
            await self.channel.close()
        finally:
            if self._owns_http_client and self._http_client is not None:
                await self._http_client.aclose()
                self._http_client = None
            self._translator = None
            self.state = ConnectionState.CLOSED
            self._closed_event.set()
            self.events.emit(Closed())

    async def wait_closed(self):
        """Wait until an open tunnel has been closed, by close() or channel loss."""
        await self._closed_event.wait()

    def _dispatch(self, request: RelayedRequest, sink: ResponseSink):
        translator = self._translator
        if self.state is not ConnectionState.OPEN or translator is None:
            # The channel should stop delivering once closing starts
            logger.warning(f"Dropping {request.method} {request.url} received while tunnel is {self.state.value}")
            return

        request_id = str(uuid.uuid4())
        self.events.emit(RequestReceived(
            RequestDescriptor(request_id, request.method, request.url, tuple(request.headers))
        ))

        task = asyncio.create_task(translator.tunnel(request, sink, request_id))
        self._tasks.add(task)
        task.add_done_callback(self._translation_done)

    def _translation_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Unexpected error while tunneling request: {error!r}")

    def _on_channel_lost(self, error: Optional[BaseException] = None):
        if self.state is not ConnectionState.OPEN:
            return
        if error is not None:
            logger.warning(f"Relay channel lost: {error}")
        else:
            logger.warning("Relay channel lost")
        self._lost_task = asyncio.create_task(self._close_after_loss())

    async def _close_after_loss(self):
        if self.state is not ConnectionState.OPEN:
            return
        try:
            await self.close()
        except Exception as e:
            logger.error(f"Error closing tunnel after channel loss: {e}")

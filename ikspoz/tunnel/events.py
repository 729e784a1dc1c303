"""
Tunnel notifications for the presentation layer.

The engine and translator emit TunnelEvent values into a bounded queue;
emitting never blocks and never raises. Whoever presents the tunnel (console,
request log, status API) drains the queue with TunnelEvents.pump() and gets
each event delivered to its TunnelListener.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from ..config import Config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestDescriptor:
    request_id: str
    method: str
    url: str
    headers: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class ResponseDescriptor:
    request_id: str
    status_code: int
    reason: str
    headers: Tuple[Tuple[str, str], ...] = ()
    content_length: Optional[int] = None
    elapsed_ms: Optional[float] = None


class TunnelEvent:
    """Base class for everything emitted by the tunnel."""


@dataclass(frozen=True)
class Connecting(TunnelEvent):
    pass


@dataclass(frozen=True)
class Connected(TunnelEvent):
    public_url: str


@dataclass(frozen=True)
class RequestReceived(TunnelEvent):
    request: RequestDescriptor


@dataclass(frozen=True)
class RequestForwarded(TunnelEvent):
    request: RequestDescriptor


@dataclass(frozen=True)
class ResponseReceived(TunnelEvent):
    response: ResponseDescriptor


@dataclass(frozen=True)
class RequestError(TunnelEvent):
    request_id: str
    error: BaseException = field(compare=False)


@dataclass(frozen=True)
class ResponseError(TunnelEvent):
    request_id: str
    error: BaseException = field(compare=False)


@dataclass(frozen=True)
class Closing(TunnelEvent):
    pass


@dataclass(frozen=True)
class Closed(TunnelEvent):
    pass


class TunnelListener:
    """
    Receives tunnel events. Override the hooks you care about.

    A hook that raises is logged and ignored; it never reaches the tunnel.
    """

    def on_connecting(self, event: Connecting): ...
    def on_connected(self, event: Connected): ...
    def on_request_received(self, event: RequestReceived): ...
    def on_request_forwarded(self, event: RequestForwarded): ...
    def on_response_received(self, event: ResponseReceived): ...
    def on_request_error(self, event: RequestError): ...
    def on_response_error(self, event: ResponseError): ...
    def on_closing(self, event: Closing): ...
    def on_closed(self, event: Closed): ...

    def handle(self, event: TunnelEvent):
        hook = _HOOKS.get(type(event))
        if hook is not None:
            getattr(self, hook)(event)


_HOOKS = {
    Connecting: "on_connecting",
    Connected: "on_connected",
    RequestReceived: "on_request_received",
    RequestForwarded: "on_request_forwarded",
    ResponseReceived: "on_response_received",
    RequestError: "on_request_error",
    ResponseError: "on_response_error",
    Closing: "on_closing",
    Closed: "on_closed",
}


class TunnelEvents:
    """Bounded, non-blocking event queue between the tunnel and its listeners."""

    def __init__(self, maxsize: Optional[int] = None):
        self._queue: asyncio.Queue = asyncio.Queue(
            maxsize=Config.EVENT_QUEUE_SIZE if maxsize is None else maxsize
        )
        self.dropped = 0

    def emit(self, event: TunnelEvent):
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Event queue full, dropping {type(event).__name__} event")

    def pending(self) -> int:
        return self._queue.qsize()

    def drain(self) -> List[TunnelEvent]:
        """Take every queued event without waiting."""
        events = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    async def pump(self, listeners: Iterable[TunnelListener]):
        """Deliver events to listeners until a Closed event has been delivered."""
        listeners = list(listeners)
        while True:
            event = await self._queue.get()
            deliver(event, listeners)
            if isinstance(event, Closed):
                return


def deliver(event: TunnelEvent, listeners: Iterable[TunnelListener]):
    for listener in listeners:
        try:
            listener.handle(event)
        except Exception:
            logger.exception(f"Listener {type(listener).__name__} failed handling {type(event).__name__}")

"""
Relay channel abstraction consumed by the tunnel engine.

A relay channel owns the public side of the tunnel: it opens the long-lived
connection, hands every inbound request to a single handler together with a
ResponseSink, and closes the connection again. The wire protocol behind it is
the channel's business.
"""

import abc
from dataclasses import dataclass
from typing import AsyncIterable, Callable, List, Optional, Tuple

from .errors import ChannelError  # noqa: F401  re-exported for channel implementations

Headers = Tuple[Tuple[str, str], ...]


@dataclass(frozen=True)
class RelayedRequest:
    """One inbound request delivered by the relay channel."""
    method: str
    url: str
    headers: Headers = ()
    body: Optional[AsyncIterable[bytes]] = None

    def header_values(self, name: str) -> List[str]:
        lowered = name.lower()
        return [value for key, value in self.headers if key.lower() == lowered]


class ResponseSink(abc.ABC):
    """
    Where the response to one relayed request is written.

    Status, reason and headers can be changed until the head is flushed, which
    happens on the first body write (or on close when nothing was written).
    After that they are ignored. The head only counts as flushed once
    _send_head() has returned, so a head send that is cancelled midway still
    leaves room for a replacement response. close() is idempotent.
    """

    def __init__(self):
        self.status_code: int = 200
        self.reason: str = "OK"
        self.headers: List[Tuple[str, str]] = []
        self._headers_sent = False
        self._closed = False

    @property
    def headers_sent(self) -> bool:
        return self._headers_sent

    @property
    def closed(self) -> bool:
        return self._closed

    def set_status(self, status_code: int, reason: str) -> bool:
        """Set status and reason; returns False if the head was already flushed."""
        if self._headers_sent:
            return False
        self.status_code = status_code
        self.reason = reason
        return True

    def reset(self, status_code: int, reason: str) -> bool:
        """Replace an unflushed head with a bare status line, dropping any headers."""
        if self._headers_sent:
            return False
        self.headers = []
        return self.set_status(status_code, reason)

    def add_header(self, name: str, value: str) -> bool:
        if self._headers_sent:
            return False
        self.headers.append((name, value))
        return True

    async def write(self, data: bytes):
        if self._closed:
            raise RuntimeError("Response sink is already closed")
        if not data:
            return
        if not self._headers_sent:
            await self._send_head()
            self._headers_sent = True
        await self._send_body(data)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        await self._finish(head_sent=self._headers_sent)

    @abc.abstractmethod
    async def _send_head(self):
        """Flush status, reason and headers ahead of the first body chunk."""

    @abc.abstractmethod
    async def _send_body(self, data: bytes):
        """Send one body chunk."""

    @abc.abstractmethod
    async def _finish(self, head_sent: bool):
        """Complete the response. If head_sent is False, the head was never flushed."""


# handler(request, sink) is called once per inbound request and must not block
RequestHandler = Callable[[RelayedRequest, ResponseSink], None]

# on_lost(error) is called when the channel drops without close() being called
ConnectionLostHandler = Callable[[Optional[BaseException]], None]


class RelayChannel(abc.ABC):
    """A bidirectional relay connection identified by a public URL."""

    @property
    @abc.abstractmethod
    def base_url(self) -> str:
        """Base address that every RelayedRequest.url is relative to."""

    @abc.abstractmethod
    async def open(
        self,
        connection_string: str,
        handler: RequestHandler,
        on_lost: Optional[ConnectionLostHandler] = None,
    ) -> str:
        """Open the channel and return its public URL. Raises ChannelError."""

    @abc.abstractmethod
    async def close(self):
        """Stop accepting requests and wait for the connection to shut down."""


async def iter_body(data: bytes) -> AsyncIterable[bytes]:
    """Expose an already-received body as a stream."""
    if data:
        yield data

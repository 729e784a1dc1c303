"""
Per-request translation between the relay channel and the target server.

Each relayed request becomes exactly one outbound httpx request against the
target base URL; the target's response is streamed back onto the request's
ResponseSink. Failures are mapped to synthetic 500 responses, never retried.
"""

import asyncio
import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterable, List, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from .channel import RelayedRequest, ResponseSink
from .errors import ERROR_TUNNELING_REQUEST, TUNNEL_CLOSING, TunnelClosing
from .events import (
    RequestDescriptor,
    RequestError,
    RequestForwarded,
    ResponseDescriptor,
    ResponseError,
    ResponseReceived,
    TunnelEvents,
)
from .headers import partition_headers

logger = logging.getLogger(__name__)


class ShutdownSignal:
    """Cancellation signal shared by every in-flight translation; set once on close."""

    def __init__(self):
        self._event = asyncio.Event()

    def set(self):
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self):
        await self._event.wait()

    async def guard(self, awaitable):
        """
        Await `awaitable` unless the signal fires first.

        When the signal wins, the awaitable is cancelled and TunnelClosing is
        raised.
        """
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise TunnelClosing()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        # Let the cancelled work unwind before reporting
        await asyncio.wait({task})
        raise TunnelClosing()


class TranslationOutcome(enum.Enum):
    COMPLETED = "completed"
    REQUEST_FAILED = "request-failed"
    RESPONSE_FAILED = "response-failed"
    TUNNEL_CLOSING = "tunnel-closing"


@dataclass
class SendResult:
    response: Optional[httpx.Response] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.response is not None


@dataclass
class CopyResult:
    error: Optional[BaseException] = None
    closing: bool = False


@dataclass
class TunneledRequest:
    """Outbound request with general and content-specific headers kept apart."""
    method: str
    url: str
    headers: List[Tuple[str, str]] = field(default_factory=list)
    content_headers: List[Tuple[str, str]] = field(default_factory=list)
    content: Optional[AsyncIterable[bytes]] = None

    def all_headers(self) -> List[Tuple[str, str]]:
        return self.headers + self.content_headers

    def describe(self, request_id: str) -> RequestDescriptor:
        return RequestDescriptor(request_id, self.method, self.url, tuple(self.all_headers()))

    def to_httpx(self) -> httpx.Request:
        return httpx.Request(
            method=self.method,
            url=self.url,
            headers=self.all_headers(),
            content=self.content,
        )


def relative_path(url: str, base_url: str) -> str:
    """
    Return the path and query of `url` relative to `base_url`.

    The result always starts with '/'. Percent-encoding is left untouched.
    """
    parts = urlsplit(url)
    base_path = urlsplit(base_url).path.rstrip("/")
    path = parts.path

    if base_path and (path == base_path or path.startswith(base_path + "/")):
        path = path[len(base_path):]
    if not path.startswith("/"):
        path = "/" + path

    if parts.query:
        return f"{path}?{parts.query}"
    return path


def target_url(target_base_url: str, relative: str) -> str:
    return target_base_url.rstrip("/") + relative


class RequestTranslator:
    def __init__(
        self,
        target_base_url: str,
        channel_base_url: str,
        client: httpx.AsyncClient,
        shutdown: ShutdownSignal,
        events: TunnelEvents,
    ):
        self.target_base_url = target_base_url
        self.channel_base_url = channel_base_url
        self.client = client
        self.shutdown = shutdown
        self.events = events

    def build_request(self, request: RelayedRequest) -> TunneledRequest:
        general, content = partition_headers(request.headers)
        relative = relative_path(request.url, self.channel_base_url)
        return TunneledRequest(
            method=request.method,
            url=target_url(self.target_base_url, relative),
            headers=general,
            content_headers=content,
            content=request.body,
        )

    async def tunnel(
        self,
        request: RelayedRequest,
        sink: ResponseSink,
        request_id: Optional[str] = None,
    ) -> TranslationOutcome:
        """Forward one relayed request and relay the response. Always closes `sink`."""
        request_id = request_id or str(uuid.uuid4())
        started = time.monotonic()

        try:
            if self.shutdown.is_set():
                logger.debug(f"[{request_id}] Tunnel closing, not forwarding {request.method} {request.url}")
                sink.reset(500, TUNNEL_CLOSING)
                return TranslationOutcome.TUNNEL_CLOSING

            try:
                outbound = self.build_request(request)
                http_request = outbound.to_httpx()
            except Exception as e:
                logger.debug(f"[{request_id}] Could not build outbound request: {e}")
                self.events.emit(RequestError(request_id, e))
                sink.reset(500, ERROR_TUNNELING_REQUEST)
                return TranslationOutcome.REQUEST_FAILED

            if self.shutdown.is_set():
                sink.reset(500, TUNNEL_CLOSING)
                return TranslationOutcome.TUNNEL_CLOSING

            self.events.emit(RequestForwarded(outbound.describe(request_id)))
            logger.debug(f"[{request_id}] Sending {outbound.method} {outbound.url}")

            result = await self._send(http_request)
            if not result.ok:
                logger.debug(f"[{request_id}] Error tunneling request: {result.error!r}")
                self.events.emit(RequestError(request_id, result.error))
                sink.reset(500, ERROR_TUNNELING_REQUEST)
                return TranslationOutcome.REQUEST_FAILED

            response = result.response
            try:
                self.events.emit(ResponseReceived(
                    describe_response(request_id, response, (time.monotonic() - started) * 1000)
                ))
                sink.set_status(response.status_code, response.reason_phrase)
                for name, value in raw_headers(response):
                    sink.add_header(name, value)

                copy = await self._relay_body(response, sink)
            finally:
                await response.aclose()

            if copy.closing:
                logger.debug(f"[{request_id}] Tunnel closing during response body copy")
                sink.reset(500, TUNNEL_CLOSING)
                return TranslationOutcome.TUNNEL_CLOSING
            if copy.error is not None:
                logger.debug(f"[{request_id}] Error tunneling response: {copy.error!r}")
                self.events.emit(ResponseError(request_id, copy.error))
                return TranslationOutcome.RESPONSE_FAILED

            logger.debug(f"[{request_id}] Completed with status {response.status_code}")
            return TranslationOutcome.COMPLETED
        finally:
            try:
                await sink.close()
            except Exception as e:
                logger.warning(f"[{request_id}] Failed to close response sink: {e}")

    async def _send(self, http_request: httpx.Request) -> SendResult:
        try:
            response = await self.shutdown.guard(self.client.send(http_request, stream=True))
        except Exception as e:
            return SendResult(error=e)
        return SendResult(response=response)

    async def _relay_body(self, response: httpx.Response, sink: ResponseSink) -> CopyResult:
        try:
            await self.shutdown.guard(copy_body(response, sink))
        except TunnelClosing:
            return CopyResult(closing=True)
        except Exception as e:
            return CopyResult(error=e)
        return CopyResult()


async def copy_body(response: httpx.Response, sink: ResponseSink):
    # Raw bytes: Content-Encoding is forwarded, so the body must stay encoded
    async for chunk in response.aiter_raw():
        await sink.write(chunk)


def raw_headers(response: httpx.Response) -> List[Tuple[str, str]]:
    """Response headers in server order, original casing, repeats kept."""
    encoding = response.headers.encoding
    return [(key.decode(encoding), value.decode(encoding)) for key, value in response.headers.raw]


def describe_response(request_id: str, response: httpx.Response, elapsed_ms: Optional[float] = None) -> ResponseDescriptor:
    content_length = response.headers.get("content-length")
    try:
        length = int(content_length) if content_length is not None else None
    except ValueError:
        length = None
    return ResponseDescriptor(
        request_id=request_id,
        status_code=response.status_code,
        reason=response.reason_phrase,
        headers=tuple(raw_headers(response)),
        content_length=length,
        elapsed_ms=elapsed_ms,
    )

import asyncio
import base64
import json
import logging
import time
from typing import Optional, Set
from urllib.parse import urlencode

import websockets
from websockets.asyncio.client import connect

from ..config import Config
from ..streaming import ChunkedStreamer, StreamMessage
from ..tunnel.channel import (
    ConnectionLostHandler,
    RelayChannel,
    RelayedRequest,
    RequestHandler,
    ResponseSink,
    iter_body,
)
from ..tunnel.errors import ChannelError
from .connection_string import RelayConnectionInfo, parse_connection_string

logger = logging.getLogger("ikspoz")

# How long close() waits for in-flight responses to be flushed to the relay
CLOSE_GRACE_PERIOD = 2.0


class WebSocketResponseSink(ResponseSink):
    """Writes one response back to the relay as JSON messages."""

    def __init__(self, channel: "WebSocketRelayChannel", request_id: str):
        super().__init__()
        self.channel = channel
        self.request_id = request_id
        self._streamer: Optional[ChunkedStreamer] = None

    def _header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None

    async def _send_head(self):
        self._streamer = ChunkedStreamer(chunk_size=Config.CHUNK_SIZE)
        content_length = self._header("content-length")
        total_size = int(content_length) if content_length and content_length.isdigit() else 0

        logger.debug(f"[{self.request_id}] Streaming response {self.status_code} as stream {self._streamer.stream_id}")
        await self.channel.send_message(StreamMessage.response_init(
            request_id=self.request_id,
            status_code=self.status_code,
            reason=self.reason,
            headers=self.headers,
            stream_id=self._streamer.stream_id,
            total_size=total_size,
            content_type=self._header("content-type") or "",
        ))

    async def _send_body(self, data: bytes):
        for message in self._streamer.chunks(data):
            await self.channel.send_message(message)

    async def _finish(self, head_sent: bool):
        try:
            if head_sent:
                await self.channel.send_message(self._streamer.complete())
            else:
                await self.channel.send_message(StreamMessage.response(
                    self.request_id, self.status_code, self.reason, self.headers
                ))
        finally:
            self.channel.release(self)


class WebSocketRelayChannel(RelayChannel):
    """
    Relay channel over a websocket connection to a tunnel relay server.

    The relay assigns a public hostname, forwards every HTTP request it
    receives there as a JSON message, and expects the response back on the same
    socket.
    """

    def __init__(self, local_endpoint: Optional[str] = None):
        self.local_endpoint = local_endpoint
        self.websocket = None
        self.assigned_hostname: Optional[str] = None
        self.public_url: Optional[str] = None
        self.closing = False
        self.last_keepalive: Optional[float] = None
        self.keepalive_timeout = Config.KEEPALIVE_TIMEOUT
        self.websocket_send_lock = asyncio.Lock()  # Lock for WebSocket sends

        self._handler: Optional[RequestHandler] = None
        self._on_lost: Optional[ConnectionLostHandler] = None
        self._listen_task: Optional[asyncio.Task] = None
        self._open_sinks: Set[WebSocketResponseSink] = set()
        self._background: Set[asyncio.Task] = set()

    @property
    def base_url(self) -> str:
        if self.public_url is None:
            raise RuntimeError("Relay channel is not open")
        return self.public_url

    async def open(
        self,
        connection_string: str,
        handler: RequestHandler,
        on_lost: Optional[ConnectionLostHandler] = None,
    ) -> str:
        info = parse_connection_string(connection_string)
        ws_url = info.ws_url

        # Prepare headers with the shared access key if provided
        headers = {}
        if info.shared_access_key:
            headers["Authorization"] = f"Bearer {info.shared_access_key}"

        try:
            logger.debug(f"Connecting to relay at {ws_url}...")
            self.websocket = await connect(
                ws_url,
                additional_headers=headers,
                open_timeout=Config.CONNECT_TIMEOUT,
                ping_interval=10,  # Send ping every 10 seconds
                ping_timeout=20,   # Wait 20 seconds for pong
                close_timeout=10,  # Wait 10 seconds for close handshake
                max_size=Config.MAX_MESSAGE_SIZE,
            )
        except websockets.exceptions.InvalidURI:
            logger.error(f"Invalid WebSocket URL: {ws_url}")
            raise ChannelError(f"Invalid WebSocket URL: {ws_url}")
        except websockets.exceptions.InvalidStatus as e:
            status_code = e.response.status_code
            logger.error(f"Relay rejected the WebSocket connection with status {status_code}")
            if status_code == 404:
                raise ChannelError(
                    "The specified relay connection was not found. Check that the connection string "
                    "names an existing Entity.",
                    not_found=True,
                )
            if status_code == 401:
                raise ChannelError("Invalid shared access key - authentication failed")
            raise ChannelError(f"WebSocket connection failed with status {status_code}")
        except (websockets.exceptions.WebSocketException, OSError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to connect to relay at {ws_url}: {e}")
            raise ChannelError(f"Failed to connect to relay: {e}")

        try:
            self.assigned_hostname = await self._handshake(info)
        except BaseException:
            await self._discard_websocket()
            raise

        self.public_url = f"https://{self.assigned_hostname}"
        self.closing = False
        self.last_keepalive = time.time()
        self._handler = handler
        self._on_lost = on_lost
        self._listen_task = asyncio.create_task(self._listen())

        logger.debug(f"Connected to relay with hostname: {self.assigned_hostname}")
        return self.public_url

    async def _handshake(self, info: RelayConnectionInfo) -> str:
        # Send local endpoint information to the relay
        endpoint_info = {
            "type": "client_info",
            "local_endpoint": self.local_endpoint,
        }
        if info.entity:
            endpoint_info["subdomain"] = info.entity

        try:
            async with self.websocket_send_lock:
                await self.websocket.send(json.dumps(endpoint_info))

            # Wait for hostname assignment with timeout
            hostname_message = await asyncio.wait_for(self.websocket.recv(), timeout=Config.CONNECT_TIMEOUT)
        except asyncio.TimeoutError:
            raise ChannelError("Timeout waiting for hostname assignment from relay")
        except websockets.exceptions.ConnectionClosedError as e:
            # Policy violation (1008) is how the relay rejects credentials
            if e.rcvd is not None and e.rcvd.code == 1008:
                raise ChannelError("Invalid shared access key - authentication failed")
            raise ChannelError(f"WebSocket connection closed: {e}")
        except websockets.exceptions.WebSocketException as e:
            raise ChannelError(f"WebSocket error during connection: {e}")

        try:
            hostname_data = json.loads(hostname_message)
        except json.JSONDecodeError:
            raise ChannelError("Relay sent an invalid hostname assignment")

        if hostname_data.get("type") == "hostname_assigned" and hostname_data.get("hostname"):
            return hostname_data["hostname"]

        if hostname_data.get("type") == "error":
            message = hostname_data.get("error") or "Relay refused the connection"
            raise ChannelError(message, not_found=hostname_data.get("code") == "not_found")

        raise ChannelError("Did not receive hostname assignment from relay")

    async def close(self):
        self.closing = True

        # Give in-flight responses a moment to reach the relay
        deadline = time.monotonic() + CLOSE_GRACE_PERIOD
        while self._open_sinks and time.monotonic() < deadline:
            await asyncio.sleep(0.05)
        if self._open_sinks:
            logger.warning(f"Closing relay with {len(self._open_sinks)} response(s) still in flight")

        await self._discard_websocket()

        if self._listen_task is not None:
            try:
                await self._listen_task
            except Exception as e:
                logger.debug(f"Listener ended with error during close: {e}")
            self._listen_task = None

    async def _discard_websocket(self):
        websocket = self.websocket
        if websocket is None:
            return
        try:
            await websocket.close()
        except Exception as e:
            logger.debug(f"Error closing websocket: {e}")
        finally:
            self.websocket = None

    async def send_message(self, message: dict):
        async with self.websocket_send_lock:
            # Check inside the lock, close() may have dropped the socket
            if self.websocket is None:
                raise ConnectionError("Relay connection is closed")
            await self.websocket.send(json.dumps(message))

    def release(self, sink: WebSocketResponseSink):
        self._open_sinks.discard(sink)

    async def monitor_keepalive(self):
        """Monitor keepalive messages and detect dead relay connections"""
        while not self.closing and self.websocket:
            await asyncio.sleep(5)  # Check every 5 seconds

            if self.last_keepalive and time.time() - self.last_keepalive > self.keepalive_timeout:
                logger.warning(f"No keepalive received for {self.keepalive_timeout} seconds, connection may be dead")
                # Closing the socket ends the listen loop, which reports the loss
                if self.websocket:
                    await self.websocket.close()
                break

    async def _listen(self):
        monitor_task = asyncio.create_task(self.monitor_keepalive())
        error: Optional[BaseException] = None

        try:
            while not self.closing and self.websocket:
                message = await self.websocket.recv()

                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Ignoring malformed message from relay")
                    continue

                if data.get("type") == "keepalive":
                    async with self.websocket_send_lock:
                        if self.websocket:
                            await self.websocket.send(json.dumps({"type": "keepalive_ack"}))
                    self.last_keepalive = time.time()
                    continue

                if data.get("type"):
                    logger.debug(f"Ignoring relay control message: {data.get('type')}")
                    continue

                self._handle_request(data)
        except websockets.exceptions.ConnectionClosed as e:
            if not self.closing:
                logger.info("WebSocket connection closed")
                error = e
        except Exception as e:
            logger.error(f"Error in message loop: {e}")
            error = e
        finally:
            monitor_task.cancel()
            try:
                await monitor_task
            except asyncio.CancelledError:
                pass

        if not self.closing and self._on_lost is not None:
            self._on_lost(error)

    def _handle_request(self, data: dict):
        request_id = data.get("request_id")
        if not request_id:
            logger.warning("Ignoring relay request without request_id")
            return

        sink = WebSocketResponseSink(self, request_id)
        self._open_sinks.add(sink)

        if self.closing or self._handler is None:
            sink.set_status(503, "Service Unavailable")
            self._spawn(sink.close())
            return

        try:
            request = self.relayed_request(data)
        except (ValueError, TypeError) as e:
            logger.warning(f"[{request_id}] Malformed relay request: {e}")
            sink.set_status(400, "Bad Request")
            self._spawn(sink.close())
            return

        logger.debug(f"[{request_id}] Received {request.method} {request.url}")
        self._handler(request, sink)

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def relayed_request(self, data: dict) -> RelayedRequest:
        """Build a RelayedRequest from a relay request message."""
        method = data.get("method") or "GET"
        path = data.get("path") or "/"
        if not path.startswith("/"):
            path = "/" + path

        # raw_query_string keeps the caller's encoding, query_params is the fallback
        query = data.get("raw_query_string") or ""
        if not query and data.get("query_params"):
            query = urlencode(data["query_params"], doseq=True)

        url = self.base_url.rstrip("/") + path
        if query:
            url = f"{url}?{query}"

        headers = data.get("headers") or {}
        if isinstance(headers, dict):
            header_pairs = tuple((str(k), str(v)) for k, v in headers.items())
        else:
            header_pairs = tuple((str(k), str(v)) for k, v in headers)

        body = data.get("body") or ""
        if data.get("is_binary") and body:
            body_bytes = base64.b64decode(body)
        else:
            body_bytes = body.encode("utf-8")

        return RelayedRequest(
            method=method,
            url=url,
            headers=header_pairs,
            body=iter_body(body_bytes) if body_bytes else None,
        )


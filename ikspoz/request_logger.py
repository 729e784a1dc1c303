"""Request logging system for detailed tunneled request/response logging to a single file."""

import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from .tunnel.events import (
    Closed,
    RequestDescriptor,
    RequestError,
    RequestForwarded,
    RequestReceived,
    ResponseDescriptor,
    ResponseError,
    ResponseReceived,
    TunnelListener,
)

logger = logging.getLogger("ikspoz")


class RequestLogger(TunnelListener):
    """Writes one block per tunneled request to a flat log file, keyed by request ID."""

    def __init__(self, log_file: Optional[str] = None):
        """Initialize the request logger.

        Args:
            log_file: Path to the request log file. If not provided, checks IKSPOZ_REQUEST_LOG env var.
        """
        log_path = log_file or os.getenv("IKSPOZ_REQUEST_LOG")
        if not log_path:
            raise ValueError("Request logger requires a log file path")

        self.log_file = Path(log_path)
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        self.lock = threading.Lock()
        self._received: Dict[str, RequestDescriptor] = {}
        self._forwarded: Dict[str, RequestDescriptor] = {}

    def on_request_received(self, event: RequestReceived):
        with self.lock:
            self._received[event.request.request_id] = event.request

    def on_request_forwarded(self, event: RequestForwarded):
        with self.lock:
            self._forwarded[event.request.request_id] = event.request

    def on_response_received(self, event: ResponseReceived):
        response = event.response
        with self.lock:
            received = self._received.pop(response.request_id, None)
            forwarded = self._forwarded.pop(response.request_id, None)
        self.log_request(response.request_id, received, forwarded, response=response)
        if forwarded is not None:
            logger.info(self.format_access_log(forwarded, response.status_code, response.elapsed_ms))

    def on_request_error(self, event: RequestError):
        with self.lock:
            received = self._received.pop(event.request_id, None)
            forwarded = self._forwarded.pop(event.request_id, None)
        self.log_request(event.request_id, received, forwarded, error=event.error)

    def on_closed(self, event: Closed):
        # Requests cut off by the close never get a response or error event
        with self.lock:
            pending = len(self._received)
            self._received.clear()
            self._forwarded.clear()
        if pending:
            logger.debug(f"Dropped {pending} unanswered request(s) from the request log")

    def on_response_error(self, event: ResponseError):
        self._write([
            "=" * 80,
            f"REQUEST ID: {event.request_id}",
            f"TIMESTAMP: {datetime.now(timezone.utc).isoformat()}",
            f"RESPONSE BODY ERROR: {event.error!r}",
            "",
        ])

    def log_request(
        self,
        request_id: str,
        received: Optional[RequestDescriptor],
        forwarded: Optional[RequestDescriptor],
        response: Optional[ResponseDescriptor] = None,
        error: Optional[BaseException] = None,
    ) -> str:
        """Log a complete request/response (or request failure) to the log file.

        Returns:
            The request ID that was logged
        """
        timestamp = datetime.now(timezone.utc)

        # Format the log entry
        log_lines = []
        log_lines.append("=" * 80)
        log_lines.append(f"REQUEST ID: {request_id}")
        log_lines.append(f"TIMESTAMP: {timestamp.isoformat()}")
        log_lines.append("")

        if received is not None:
            log_lines.append(f"RECEIVED: {received.method} {received.url}")
        if forwarded is not None:
            log_lines.append(f"FORWARDED: {forwarded.method} {forwarded.url}")
            if forwarded.headers:
                log_lines.append("REQUEST HEADERS:")
                for key, value in forwarded.headers:
                    log_lines.append(f"  {key}: {value}")

        log_lines.append("")

        if error is not None:
            log_lines.append(f"ERROR: {error!r}")
        elif response is not None:
            log_lines.append(f"RESPONSE: {response.status_code} {response.reason}")
            if response.headers:
                log_lines.append("RESPONSE HEADERS:")
                for key, value in response.headers:
                    log_lines.append(f"  {key}: {value}")

        log_lines.append("")
        self._write(log_lines)
        return request_id

    def _write(self, log_lines):
        with self.lock:
            with open(self.log_file, 'a', encoding='utf-8') as f:
                f.write('\n'.join(log_lines) + '\n')

    def format_access_log(self, request: RequestDescriptor, status_code: int,
                          duration_ms: Optional[float] = None) -> str:
        """Format a concise access log entry for console output.

        Format: [timestamp] request_id METHOD url -> status_code (duration)
        """
        timestamp = datetime.now().strftime("%H:%M:%S")
        duration_str = f" {duration_ms:.0f}ms" if duration_ms is not None else ""
        return f"[{timestamp}] {request.request_id} {request.method} {request.url} -> {status_code}{duration_str}"

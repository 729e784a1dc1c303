"""Local JSON status API for a running tunnel, fed by tunnel events."""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional

import uvicorn
from fastapi import FastAPI

from .tunnel.events import (
    Closed,
    Closing,
    Connected,
    Connecting,
    RequestError,
    RequestReceived,
    ResponseError,
    ResponseReceived,
    TunnelListener,
)

logger = logging.getLogger("ikspoz")


class TunnelHistory(TunnelListener):
    """Keeps connection status and the most recent tunneled requests."""

    def __init__(self, target_base_url: str, max_history: int = 100):
        self.target_base_url = target_base_url
        self.max_history = max_history
        self.lock = threading.Lock()
        self.state = "closed"
        self.public_url: Optional[str] = None
        self.connection_start_time: Optional[datetime] = None
        self.requests: List[Dict] = []
        self._by_id: Dict[str, Dict] = {}

    def on_connecting(self, event: Connecting):
        with self.lock:
            self.state = "opening"

    def on_connected(self, event: Connected):
        with self.lock:
            self.state = "open"
            self.public_url = event.public_url
            self.connection_start_time = datetime.now(timezone.utc)

    def on_closing(self, event: Closing):
        with self.lock:
            self.state = "closing"

    def on_closed(self, event: Closed):
        with self.lock:
            self.state = "closed"
            self.connection_start_time = None

    def on_request_received(self, event: RequestReceived):
        record = {
            "request_id": event.request.request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "method": event.request.method,
            "url": event.request.url,
            "status_code": None,
            "duration_ms": None,
            "error": None,
            "_started": time.monotonic(),
        }
        with self.lock:
            self.requests.insert(0, record)  # Insert at beginning
            self._by_id[record["request_id"]] = record
            if len(self.requests) > self.max_history:
                oldest = self.requests.pop()  # Remove oldest
                self._by_id.pop(oldest["request_id"], None)

    def on_response_received(self, event: ResponseReceived):
        with self.lock:
            record = self._by_id.get(event.response.request_id)
            if record is not None:
                record["status_code"] = event.response.status_code
                record["duration_ms"] = (time.monotonic() - record["_started"]) * 1000

    def on_request_error(self, event: RequestError):
        self._record_error(event.request_id, 500, event.error)

    def on_response_error(self, event: ResponseError):
        self._record_error(event.request_id, None, event.error)

    def _record_error(self, request_id: str, status_code: Optional[int], error: BaseException):
        with self.lock:
            record = self._by_id.get(request_id)
            if record is not None:
                if status_code is not None:
                    record["status_code"] = status_code
                record["error"] = str(error) or type(error).__name__

    def recent(self, limit: int = 10) -> List[Dict]:
        with self.lock:
            items = self.requests[:limit] if limit > 0 else list(self.requests)
            return [{k: v for k, v in item.items() if not k.startswith("_")} for item in items]


def create_status_app(history: TunnelHistory) -> FastAPI:
    """Create simple JSON API application"""
    api_app = FastAPI(title="ikspoz Status API", version="1.0.0")

    @api_app.get("/status")
    async def get_status():
        """Get current tunnel status"""
        with history.lock:
            uptime_seconds = None
            if history.connection_start_time:
                uptime_seconds = (datetime.now(timezone.utc) - history.connection_start_time).total_seconds()

            return {
                "state": history.state,
                "connected": history.state == "open",
                "public_url": history.public_url,
                "target_base_url": history.target_base_url,
                "request_count": len(history.requests),
                "uptime_seconds": uptime_seconds,
            }

    @api_app.get("/requests")
    async def get_requests(limit: int = 10):
        """Get recent tunneled requests"""
        items = history.recent(limit)
        with history.lock:
            total = len(history.requests)
        return {"requests": items, "total_count": total, "limit": limit}

    @api_app.get("/requests/stats")
    async def get_request_stats():
        """Get tunneled request statistics"""
        items = history.recent(0)
        status_codes: Dict[str, int] = {}
        methods: Dict[str, int] = {}
        errors = 0

        for item in items:
            status = item.get("status_code")
            status_codes[str(status)] = status_codes.get(str(status), 0) + 1
            methods[item["method"]] = methods.get(item["method"], 0) + 1
            if item.get("error"):
                errors += 1

        return {
            "total_count": len(items),
            "status_codes": status_codes,
            "methods": methods,
            "errors": errors,
            "latest_request": items[0] if items else None,
        }

    @api_app.get("/health")
    async def health_check():
        """Simple health check"""
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    return api_app


def serve_status_api(app: FastAPI, port: int, host: str = "127.0.0.1") -> uvicorn.Server:
    """Run the status API on a daemon thread; signals stay with the main thread."""
    config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_level="warning",
        access_log=False,
    )
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, name="ikspoz-status-api", daemon=True)
    thread.start()
    logger.info(f"Status API available at: http://{host}:{port}")
    return server

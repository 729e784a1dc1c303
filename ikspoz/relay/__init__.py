from .connection_string import RelayConnectionInfo, parse_connection_string
from .websocket import WebSocketRelayChannel, WebSocketResponseSink

__all__ = [
    "RelayConnectionInfo",
    "WebSocketRelayChannel",
    "WebSocketResponseSink",
    "parse_connection_string",
]

"""Relay connection strings.

Format: ``Endpoint=<url>;Entity=<tunnel name>;SharedAccessKey=<key>``. Keys are
case-insensitive and only Endpoint is required. A bare URL is accepted as a
shorthand for ``Endpoint=<url>``.
"""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from ..tunnel.errors import ChannelError


@dataclass(frozen=True)
class RelayConnectionInfo:
    endpoint: str
    entity: Optional[str] = None
    shared_access_key: Optional[str] = None

    @property
    def ws_url(self) -> str:
        parsed = urlparse(self.endpoint)
        ws_scheme = "wss" if parsed.scheme in ("https", "wss") else "ws"
        path = parsed.path.rstrip("/")
        if not path.endswith("/ws"):
            path = f"{path}/ws"
        return f"{ws_scheme}://{parsed.netloc}{path}"


def parse_connection_string(connection_string: str) -> RelayConnectionInfo:
    value = (connection_string or "").strip()
    if not value:
        raise ChannelError("Connection string is empty")

    if "://" in value.split("=", 1)[0]:
        fields = {"endpoint": value}
    else:
        fields = {}
        for part in value.split(";"):
            part = part.strip()
            if not part:
                continue
            key, sep, field_value = part.partition("=")
            if not sep:
                raise ChannelError(f"Malformed connection string segment: {part!r}")
            fields[key.strip().lower()] = field_value.strip()

    endpoint = fields.get("endpoint")
    if not endpoint:
        raise ChannelError("Connection string is missing Endpoint")

    parsed = urlparse(endpoint)
    if parsed.scheme not in ("http", "https", "ws", "wss") or not parsed.netloc:
        raise ChannelError(f"Invalid relay endpoint: {endpoint}")

    return RelayConnectionInfo(
        endpoint=endpoint,
        entity=fields.get("entity") or None,
        shared_access_key=fields.get("sharedaccesskey") or None,
    )

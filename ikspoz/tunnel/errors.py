"""Errors raised by the tunnel engine and its relay channels."""

# Reason phrases for the synthetic responses written by the tunnel itself
ERROR_TUNNELING_REQUEST = "ikspoz: Error tunneling request"
TUNNEL_CLOSING = "ikspoz: Tunnel closing"


class TunnelError(Exception):
    """Base class for tunnel errors."""


class ChannelNotFound(TunnelError):
    """The relay channel named by the connection string does not exist."""

    def __init__(self, detail: str = "The specified relay channel was not found"):
        super().__init__(detail)
        self.detail = detail


class OpenFailed(TunnelError):
    """Opening the relay channel failed for a reason other than not-found."""

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class IllegalStateTransition(TunnelError):
    def __init__(self, operation: str, state):
        super().__init__(f"Cannot {operation} a tunnel connection that is {state.value}")
        self.operation = operation
        self.state = state


class TunnelClosing(TunnelError):
    """Raised inside a translation when the shutdown signal fires."""

    def __init__(self):
        super().__init__(TUNNEL_CLOSING)


class ChannelError(Exception):
    """Raised by relay channel implementations when opening fails."""

    def __init__(self, message: str, not_found: bool = False):
        super().__init__(message)
        self.not_found = not_found

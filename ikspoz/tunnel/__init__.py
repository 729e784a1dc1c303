from .channel import RelayChannel, RelayedRequest, ResponseSink
from .engine import ConnectionState, TunnelEngine
from .errors import (
    ChannelError,
    ChannelNotFound,
    IllegalStateTransition,
    OpenFailed,
    TunnelClosing,
    TunnelError,
)
from .events import TunnelEvent, TunnelEvents, TunnelListener
from .headers import HeaderTreatment, classify_header
from .translator import RequestTranslator, ShutdownSignal, TranslationOutcome

__all__ = [
    "ChannelError",
    "ChannelNotFound",
    "ConnectionState",
    "HeaderTreatment",
    "IllegalStateTransition",
    "OpenFailed",
    "RelayChannel",
    "RelayedRequest",
    "RequestTranslator",
    "ResponseSink",
    "ShutdownSignal",
    "TranslationOutcome",
    "TunnelClosing",
    "TunnelEngine",
    "TunnelError",
    "TunnelEvent",
    "TunnelEvents",
    "TunnelListener",
    "classify_header",
]

"""
zrdp - remote debugging protocol client for a running Zotero instance.

Drives the application's embedded debugging server: frames packets, matches
responses to requests, discovers and caches the console actor, decodes grips
and recovers from dropped connections.  Each concern lives in its own module:

    framing.py     → length-prefixed packet codec
    correlator.py  → FIFO request/response matching, event routing
    actors.py      → execution-actor discovery and TTL cache
    client.py      → connection lifecycle, keepalive, retry
    grips.py       → remote value decoding
    events.py      → notification bus
    commands.py    → typed console helpers
"""

from .config import ClientConfig  # noqa: F401
from .errors import (  # noqa: F401
    ActorError,
    ErrorKind,
    EvaluationError,
    FramingError,
    ProtocolError,
    RDPConnectionError,
    RDPError,
    RequestTimeoutError,
    ResolutionError,
    backoff_delay,
    classify_error,
)
from .framing import PacketBuffer, encode_packet  # noqa: F401
from .correlator import MessageCorrelator, PendingRequest  # noqa: F401
from .actors import ActorCache, ConnectionState, RootInfo, TargetInfo  # noqa: F401
from .grips import (  # noqa: F401
    GripKind,
    OpaquePlaceholder,
    RemoteSymbol,
    classify_grip,
    decode_grip,
    is_long_string,
    is_placeholder,
)
from .events import (  # noqa: F401
    BaseEvent,
    ConsoleAPICallEvent,
    EventBus,
    EventSubscription,
    PageErrorEvent,
    TabNavigatedEvent,
    parse_event,
)
from .client import EvaluationResult, RDPClient  # noqa: F401
from .commands import ConsoleClient, ConsoleMessage  # noqa: F401

__all__ = [
    "ClientConfig",
    "RDPError",
    "FramingError",
    "ProtocolError",
    "ActorError",
    "RDPConnectionError",
    "RequestTimeoutError",
    "ResolutionError",
    "EvaluationError",
    "ErrorKind",
    "classify_error",
    "backoff_delay",
    "PacketBuffer",
    "encode_packet",
    "MessageCorrelator",
    "PendingRequest",
    "ActorCache",
    "ConnectionState",
    "RootInfo",
    "TargetInfo",
    "GripKind",
    "OpaquePlaceholder",
    "RemoteSymbol",
    "classify_grip",
    "decode_grip",
    "is_long_string",
    "is_placeholder",
    "EventBus",
    "EventSubscription",
    "BaseEvent",
    "TabNavigatedEvent",
    "ConsoleAPICallEvent",
    "PageErrorEvent",
    "parse_event",
    "RDPClient",
    "EvaluationResult",
    "ConsoleClient",
    "ConsoleMessage",
]

__version__ = "0.1.0"

"""Event bus utilities and typed event helpers for zrdp.

Two kinds of events travel over the bus: unsolicited protocol notifications
received from the server (``tabNavigated``, ``consoleAPICall``, ...) and the
client's own lifecycle notifications (``connected``, ``reconnecting``, ...).
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Union


logger = logging.getLogger(__name__)

EventHandler = Callable[["BaseEvent"], None]

# unsolicited server notifications
PROTOCOL_EVENT_TYPES = frozenset(
    {
        "frameUpdate",
        "tabNavigated",
        "newSource",
        "tabDetached",
        "workerListChanged",
        "documentEvent",
        "pageError",
        "consoleAPICall",
        "reflowActivity",
        "styleSheetsAdded",
        "styleSheetsRemoved",
    }
)

ACTOR_INVALIDATING_EVENT_TYPES = frozenset(
    {
        "tabNavigated",
        "tabDetached",
        "frameUpdate",
        "workerListChanged",
    }
)

CONNECTED = "connected"
DISCONNECTED = "disconnected"
RECONNECTING = "reconnecting"
ACTORS_INVALIDATED = "actorsInvalidated"
KEEPALIVE_FAILED = "keepaliveFailed"
KEEPALIVE_RECONNECTED = "keepaliveReconnected"
TRANSPORT_ERROR = "error"

CLIENT_EVENT_TYPES = frozenset(
    {
        CONNECTED,
        DISCONNECTED,
        RECONNECTING,
        ACTORS_INVALIDATED,
        KEEPALIVE_FAILED,
        KEEPALIVE_RECONNECTED,
        TRANSPORT_ERROR,
    }
)

_seq_counter = itertools.count(1)


def _to_int(value: Any) -> Optional[int]:
    try:
        if value is None:
            return None
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def parse_event(event: Dict[str, Any]) -> "BaseEvent":
    """Convert a raw event dictionary into a typed dataclass."""

    event_type = str(event.get("type") or "")
    seq = next(_seq_counter)
    ts = time.time()
    source = event.get("from")
    data = {k: v for k, v in event.items() if k not in {"type", "from"}}

    if event_type == "tabNavigated":
        return TabNavigatedEvent(
            seq=seq,
            ts=ts,
            type=event_type,
            source=source,
            data=data,
            url=event.get("url"),
            title=event.get("title"),
            state=event.get("state"),
            is_frame_switching=bool(event.get("isFrameSwitching")),
        )
    if event_type == "consoleAPICall":
        message = _as_dict(event.get("message"))
        return ConsoleAPICallEvent(
            seq=seq,
            ts=ts,
            type=event_type,
            source=source,
            data=data,
            level=message.get("level"),
            arguments=list(message.get("arguments") or []),
            filename=message.get("filename"),
            line_number=_to_int(message.get("lineNumber")),
        )
    if event_type == "pageError":
        page_error = _as_dict(event.get("pageError"))
        return PageErrorEvent(
            seq=seq,
            ts=ts,
            type=event_type,
            source=source,
            data=data,
            error_message=page_error.get("errorMessage"),
            source_name=page_error.get("sourceName"),
            line_number=_to_int(page_error.get("lineNumber")),
            category=page_error.get("category"),
            is_warning=bool(page_error.get("warning")),
        )
    if event_type in ACTOR_INVALIDATING_EVENT_TYPES:
        return TargetChangedEvent(seq=seq, ts=ts, type=event_type, source=source, data=data)
    if event_type in CLIENT_EVENT_TYPES:
        return _parse_client_event(event_type, event, seq=seq, ts=ts, source=source, data=data)
    return BaseEvent(seq=seq, ts=ts, type=event_type, source=source, data=data)


def _parse_client_event(event_type: str, event: Dict[str, Any], **common: Any) -> "BaseEvent":
    if event_type == ACTORS_INVALIDATED:
        return ActorsInvalidatedEvent(type=event_type, reason=event.get("reason"), **common)
    if event_type in (KEEPALIVE_FAILED, KEEPALIVE_RECONNECTED):
        return KeepaliveEvent(type=event_type, healthy=event_type == KEEPALIVE_RECONNECTED, **common)
    if event_type == TRANSPORT_ERROR:
        return TransportErrorEvent(
            type=event_type,
            error=event.get("error"),
            message=str(event.get("message") or ""),
            **common,
        )
    # connected / disconnected / reconnecting
    return ConnectionEvent(
        type=event_type,
        address=event.get("address"),
        attempt=_to_int(event.get("attempt")),
        reason=event.get("reason"),
        **common,
    )


@dataclass
class BaseEvent:
    seq: int
    ts: float
    type: str
    source: Optional[str]
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TabNavigatedEvent(BaseEvent):
    url: Optional[str] = None
    title: Optional[str] = None
    state: Optional[str] = None
    is_frame_switching: bool = False


@dataclass
class TargetChangedEvent(BaseEvent):
    """frameUpdate / tabDetached / workerListChanged."""


@dataclass
class ConsoleAPICallEvent(BaseEvent):
    level: Optional[str] = None
    arguments: List[Any] = field(default_factory=list)
    filename: Optional[str] = None
    line_number: Optional[int] = None


@dataclass
class PageErrorEvent(BaseEvent):
    error_message: Optional[str] = None
    source_name: Optional[str] = None
    line_number: Optional[int] = None
    category: Optional[str] = None
    is_warning: bool = False


@dataclass
class ConnectionEvent(BaseEvent):
    address: Optional[str] = None
    attempt: Optional[int] = None
    reason: Optional[str] = None


@dataclass
class ActorsInvalidatedEvent(BaseEvent):
    reason: Optional[str] = None


@dataclass
class KeepaliveEvent(BaseEvent):
    healthy: bool = False


@dataclass
class TransportErrorEvent(BaseEvent):
    error: Any = None
    message: str = ""


@dataclass
class EventSubscription:
    """Filtered, bounded mailbox for one subscriber.

    Events are queued on the publishing thread (usually the reader thread)
    and handed to ``handler`` only when the bus is pumped.  When the mailbox
    is full the oldest event is discarded and counted in ``dropped``.
    """

    handler: EventHandler
    categories: Optional[Iterable[str]] = None
    source: Optional[str] = None
    queue_size: int = 256
    dropped: int = field(default=0, init=False)
    _pending: Deque[BaseEvent] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.categories is not None:
            self.categories = frozenset(self.categories)
        self._pending = deque(maxlen=max(1, self.queue_size))

    def matches(self, event: BaseEvent) -> bool:
        if self.categories and event.type not in self.categories:
            return False
        return self.source is None or event.source == self.source

    def offer(self, event: BaseEvent) -> bool:
        """Queue ``event`` if it passes the filters."""

        if not self.matches(event):
            return False
        if len(self._pending) == self._pending.maxlen:
            self.dropped += 1
            logger.debug("subscriber mailbox full; dropping oldest %s", self._pending[0].type)
        self._pending.append(event)
        return True

    def drain(self) -> int:
        delivered = 0
        while True:
            try:
                event = self._pending.popleft()
            except IndexError:
                return delivered
            delivered += 1
            try:
                self.handler(event)
            except Exception:
                logger.exception("event handler failed for %s", event.type)


class EventBus:
    """Fans protocol events and client notifications out to subscribers.

    Delivery is pull-based: ``pump()`` runs handlers on the calling thread,
    ``start()`` runs a background thread that pumps on an interval.
    """

    def __init__(self) -> None:
        self._subs: Dict[int, EventSubscription] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.Lock()
        self._worker: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._interval = 0.01

    def _snapshot(self) -> List[EventSubscription]:
        with self._lock:
            return list(self._subs.values())

    def subscribe(self, sub: EventSubscription) -> int:
        with self._lock:
            token = next(self._tokens)
            self._subs[token] = sub
        return token

    def unsubscribe(self, token: int) -> None:
        with self._lock:
            self._subs.pop(token, None)

    def publish(self, event: Union[Dict[str, Any], BaseEvent]) -> BaseEvent:
        parsed = event if isinstance(event, BaseEvent) else parse_event(event)
        for sub in self._snapshot():
            sub.offer(parsed)
        return parsed

    def pump(self) -> int:
        """Deliver queued events; returns how many handlers ran."""
        return sum(sub.drain() for sub in self._snapshot())

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def start(self, interval: float = 0.01) -> None:
        self._interval = interval
        if self.running:
            return
        self._stop_event.clear()
        self._worker = threading.Thread(target=self._run, name="zrdp-event-bus", daemon=True)
        self._worker.start()

    def stop(self) -> None:
        self._stop_event.set()
        worker = self._worker
        if worker and worker.is_alive() and worker is not threading.current_thread():
            worker.join(timeout=0.5)
        self._worker = None

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            self.pump()
        # flush whatever arrived before stop()
        self.pump()

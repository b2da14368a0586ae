"""Request/response correlation for the remote debugging protocol.

The protocol carries no client-assigned request ids: a response is matched to
the oldest outstanding request.  Responses on one connection therefore resolve
pending requests strictly in send order.

Known limitation: a timeout does not cancel anything on the server.  If the
response to a timed-out request arrives later it is attributed to whichever
request is oldest at that moment.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .errors import ProtocolError, RequestTimeoutError
from .events import ACTOR_INVALIDATING_EVENT_TYPES, PROTOCOL_EVENT_TYPES


logger = logging.getLogger(__name__)

EventCallback = Callable[[Dict[str, Any]], None]
InvalidateCallback = Callable[[str], None]

DISPATCH_EVENT = "event"
DISPATCH_ACK = "ack"
DISPATCH_RESPONSE = "response"


@dataclass
class PendingRequest:
    request_id: int
    to: str
    type: str
    deadline: float
    response: Optional[Dict[str, Any]] = field(default=None, repr=False)
    error: Optional[BaseException] = field(default=None, repr=False)
    done: bool = False

    def resolve(self, response: Dict[str, Any]) -> None:
        self.response = response
        self.done = True

    def reject(self, error: BaseException) -> None:
        self.error = error
        self.done = True


def is_evaluation_ack(message: Dict[str, Any]) -> bool:
    """``evaluateJSAsync`` first answers ``{from, resultID}``; the result follows."""

    return (
        "resultID" in message
        and "type" not in message
        and "result" not in message
        and len(message) <= 2
    )


class MessageCorrelator:
    """Matches inbound messages to outstanding requests in FIFO order."""

    def __init__(
        self,
        *,
        on_event: Optional[EventCallback] = None,
        on_invalidate: Optional[InvalidateCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._on_event = on_event
        self._on_invalidate = on_invalidate
        self._clock = clock
        self._pending: "OrderedDict[int, PendingRequest]" = OrderedDict()
        self._cv = threading.Condition(threading.Lock())
        self._next_id = 1

    def __len__(self) -> int:
        with self._cv:
            return len(self._pending)

    def register(self, to: str, request_type: str, timeout: float) -> PendingRequest:
        with self._cv:
            request = PendingRequest(
                request_id=self._next_id,
                to=to,
                type=request_type,
                deadline=self._clock() + timeout,
            )
            self._next_id += 1
            self._pending[request.request_id] = request
            return request

    def discard(self, request: PendingRequest) -> None:
        with self._cv:
            self._pending.pop(request.request_id, None)

    def wait(self, request: PendingRequest) -> Dict[str, Any]:
        """Block until ``request`` is resolved, rejected or times out."""

        with self._cv:
            while not request.done:
                remaining = request.deadline - self._clock()
                if remaining <= 0:
                    self._pending.pop(request.request_id, None)
                    raise RequestTimeoutError(
                        f"request timeout for {request.type} to {request.to}",
                        to=request.to,
                        request_type=request.type,
                    )
                self._cv.wait(timeout=remaining)
        if request.error is not None:
            raise request.error
        assert request.response is not None
        return request.response

    def fail_all(self, make_error: Callable[[], BaseException]) -> int:
        """Reject every outstanding request with a fresh ``make_error()``."""

        with self._cv:
            requests = list(self._pending.values())
            self._pending.clear()
            for request in requests:
                request.reject(make_error())
            self._cv.notify_all()
        return len(requests)

    def dispatch(self, message: Dict[str, Any]) -> str:
        message_type = message.get("type")
        if isinstance(message_type, str) and message_type in PROTOCOL_EVENT_TYPES:
            if message_type in ACTOR_INVALIDATING_EVENT_TYPES:
                self._invalidate(message_type)
            self._emit(message)
            return DISPATCH_EVENT

        if is_evaluation_ack(message):
            logger.debug("skipping evaluation ack %s", message.get("resultID"))
            return DISPATCH_ACK

        with self._cv:
            request: Optional[PendingRequest] = None
            if self._pending:
                _, request = self._pending.popitem(last=False)
                if "error" in message:
                    request.reject(ProtocolError.from_response(message))
                else:
                    request.resolve(message)
                self._cv.notify_all()
        if request is None:
            # nothing outstanding: unsolicited
            self._emit(message)
            return DISPATCH_EVENT
        return DISPATCH_RESPONSE

    def _emit(self, message: Dict[str, Any]) -> None:
        callback = self._on_event
        if callback is None:
            return
        try:
            callback(message)
        except Exception:
            # Event handlers should not disrupt correlation.
            logger.exception("event callback failed")

    def _invalidate(self, reason: str) -> None:
        callback = self._on_invalidate
        if callback is None:
            return
        try:
            callback(reason)
        except Exception:
            logger.exception("actor invalidation callback failed")

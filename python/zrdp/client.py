"""Connection & retry engine for zrdp.

``RDPClient`` owns one TCP connection to the application's debugging server.
Connection phases::

    disconnected -> connecting -> awaiting_intro -> ready
          ^______________________________________|   (any transport error)

The connection only counts as usable once the server's unsolicited intro
packet (the one carrying ``applicationType``) has arrived.  Requests are
correlated in FIFO order by ``MessageCorrelator``; the execution actor is
resolved and cached by ``ActorCache``.

Nothing in flight during a reconnect is replayed: pending requests are rejected
with a "connection closed" error and may be retried through ``with_retry``.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from .actors import ActorCache, ConnectionState, RootInfo
from .config import ClientConfig
from .correlator import MessageCorrelator
from .errors import (
    ErrorKind,
    FramingError,
    RDPConnectionError,
    RDPError,
    backoff_delay,
    classify_error,
    remediation_text,
)
from .events import (
    ACTORS_INVALIDATED,
    CONNECTED,
    DISCONNECTED,
    KEEPALIVE_FAILED,
    KEEPALIVE_RECONNECTED,
    RECONNECTING,
    TRANSPORT_ERROR,
    EventBus,
    EventHandler,
    EventSubscription,
)
from .framing import PacketBuffer, encode_packet
from .grips import decode_grip


logger = logging.getLogger(__name__)

T = TypeVar("T")

STATE_DISCONNECTED = "disconnected"
STATE_CONNECTING = "connecting"
STATE_AWAITING_INTRO = "awaiting_intro"
STATE_READY = "ready"

DEFAULT_MESSAGE_TYPES = ("ConsoleAPI", "PageError")


@dataclass
class EvaluationResult:
    """Reply to ``evaluateJSAsync``; ``result``/``exception`` are raw grips."""

    result: Any = None
    exception: Any = None
    exception_message: Optional[str] = None
    input: Optional[str] = None
    timestamp: Optional[float] = None
    result_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def has_exception(self) -> bool:
        return self.exception is not None or bool(self.exception_message)

    @classmethod
    def from_response(cls, response: Dict[str, Any]) -> "EvaluationResult":
        return cls(
            result=response.get("result"),
            exception=response.get("exception"),
            exception_message=response.get("exceptionMessage"),
            input=response.get("input"),
            timestamp=response.get("timestamp"),
            result_id=response.get("resultID"),
            raw=dict(response),
        )


@dataclass
class _Connection:
    sock: socket.socket
    buffer: PacketBuffer
    intro: threading.Event = field(default_factory=threading.Event)
    intro_error: Optional[BaseException] = None
    reader: Optional[threading.Thread] = None


def _close_socket(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    try:
        sock.close()
    except OSError:
        pass


class RDPClient:
    """Remote debugging protocol client for a single target application."""

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or ClientConfig()
        self.event_bus = event_bus if event_bus is not None else EventBus()
        self._clock = clock
        self._sleep = sleep
        self.actors = ActorCache(
            ttl=self.config.actor_cache_ttl,
            home_prefix=self.config.home_document_prefix,
            app_name=self.config.application_name,
            clock=clock,
            host=self.config.host,
            port=self.config.port,
        )
        self._correlator = MessageCorrelator(
            on_event=self._handle_event,
            on_invalidate=self._handle_invalidating_event,
            clock=clock,
        )

        self._conn: Optional[_Connection] = None
        self._phase = STATE_DISCONNECTED
        self._root: Optional[RootInfo] = None
        self._state_lock = threading.Lock()
        self._connect_lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._reconnect_lock = threading.RLock()

        self._closed = False
        self._last_success = 0.0
        self._consecutive_failures = 0
        self._reconnect_attempts = 0
        self._reconnect_timer: Optional[threading.Timer] = None
        self._keepalive_enabled = self.config.keepalive_enabled
        self._keepalive_thread: Optional[threading.Thread] = None
        self._keepalive_stop = threading.Event()

    #
    # Connection lifecycle
    #
    @property
    def phase(self) -> str:
        with self._state_lock:
            return self._phase

    @property
    def root(self) -> Optional[RootInfo]:
        with self._state_lock:
            return self._root

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def pending_requests(self) -> int:
        return len(self._correlator)

    def connect(self) -> None:
        """Open the transport and wait for the server's intro packet."""

        self._closed = False
        self._connect()

    def _connect(self, *, auto: bool = False) -> bool:
        """Connect; automatic attempts give up once the client has been closed."""

        with self._connect_lock:
            if auto and self._closed:
                logger.debug("client closed; skipping automatic reconnect")
                return False
            if self.is_connected():
                return True
            host, port = self.config.host, self.config.port
            self._set_phase(STATE_CONNECTING)
            try:
                sock = socket.create_connection((host, port), timeout=self.config.connect_timeout)
            except OSError as exc:
                self._set_phase(STATE_DISCONNECTED)
                raise RDPConnectionError(
                    f"cannot connect to RDP server at {host}:{port}: {exc}\n{remediation_text(host, port)}",
                    host=host,
                    port=port,
                ) from exc
            try:
                # detect a vanished server faster than the OS default
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
            except OSError:
                logger.debug("could not enable TCP keepalive", exc_info=True)
            sock.settimeout(self.config.request_timeout)

            conn = _Connection(sock=sock, buffer=PacketBuffer(on_error=self._handle_framing_error))
            with self._state_lock:
                self._conn = conn
                self._phase = STATE_AWAITING_INTRO
            conn.reader = threading.Thread(target=self._reader_loop, args=(conn,), name="zrdp-reader", daemon=True)
            conn.reader.start()

            if not conn.intro.wait(self.config.request_timeout):
                self._teardown(conn, self._closed_error("no intro packet received"))
                raise RDPConnectionError(
                    f"no intro packet from {host}:{port} within {self.config.request_timeout:.1f}s",
                    host=host,
                    port=port,
                )
            if conn.intro_error is not None:
                raise conn.intro_error

            with self._state_lock:
                if self._conn is not conn:
                    raise self._closed_error("connection lost during handshake")()
                abandoned = auto and self._closed
                if not abandoned:
                    self._phase = STATE_READY
                root = self._root
            if abandoned:
                self._teardown(conn, self._closed_error("closed by client"))
                return False
            self._reconnect_attempts = 0
            self._consecutive_failures = 0
            self._last_success = self._clock()

        logger.info(
            "connected to %s (%s)",
            self.config.address,
            root.application_type if root else "unknown application",
        )
        self._publish({"type": CONNECTED, "address": self.config.address})
        self._start_keepalive()
        return True

    def disconnect(self) -> None:
        """Close the connection, reject pending requests and forget all state."""

        self._closed = True
        self._cancel_auto_reconnect()
        self._stop_keepalive()
        was_ready = self.is_connected()
        self.actors.invalidate()
        self._teardown(None, self._closed_error("closed by client"))
        if was_ready:
            self._publish({"type": DISCONNECTED, "address": self.config.address, "reason": "closed by client"})

    def is_connected(self) -> bool:
        with self._state_lock:
            conn = self._conn
            ready = self._phase == STATE_READY
        if not ready or conn is None:
            return False
        return conn.sock.fileno() != -1

    def reconnect(self) -> None:
        """Drop the connection and every cached actor, then connect again."""

        with self._reconnect_lock:
            logger.info("reconnecting to %s", self.config.address)
            self._publish({"type": RECONNECTING, "address": self.config.address, "reason": "reconnect"})
            self.actors.invalidate()
            self._teardown(None, self._closed_error("reconnecting"))
            self._sleep(self.config.reconnect_grace)
            self.connect()
            self._last_success = self._clock()

    def get_state(self) -> ConnectionState:
        state = ConnectionState(connected=self.is_connected(), root=self.root)
        return self.actors.snapshot_into(state)

    def subscribe(
        self,
        handler: EventHandler,
        categories: Optional[List[str]] = None,
        *,
        source: Optional[str] = None,
    ) -> int:
        return self.event_bus.subscribe(EventSubscription(categories=categories, source=source, handler=handler))

    def unsubscribe(self, token: int) -> None:
        self.event_bus.unsubscribe(token)

    #
    # Requests
    #
    def send_raw(
        self,
        actor: str,
        request_type: str,
        *,
        timeout: Optional[float] = None,
        **fields: Any,
    ) -> Dict[str, Any]:
        """Send ``{"to": actor, "type": request_type, **fields}`` and wait for its reply."""

        message: Dict[str, Any] = dict(fields)
        message["to"] = actor
        message["type"] = request_type
        packet = encode_packet(message)
        window = self.config.request_timeout if timeout is None else timeout
        send_error: Optional[OSError] = None
        with self._send_lock:
            conn = self._require_connection()
            request = self._correlator.register(actor, request_type, window)
            try:
                conn.sock.sendall(packet)
            except OSError as exc:
                self._correlator.discard(request)
                send_error = exc
        if send_error is not None:
            self._handle_transport_lost(conn, send_error)
            raise RDPConnectionError(
                f"send failed for {request_type} to {actor}: {send_error}",
                host=self.config.host,
                port=self.config.port,
            ) from send_error
        return self._correlator.wait(request)

    def get_root(self) -> Optional[RootInfo]:
        response = self.send_raw("root", "getRoot")
        if "applicationType" in response:
            root = RootInfo.from_packet(response)
            with self._state_lock:
                self._root = root
            return root
        return self.root

    def list_tabs(self) -> List[Dict[str, Any]]:
        return list(self.send_raw("root", "listTabs").get("tabs") or [])

    def list_processes(self) -> List[Dict[str, Any]]:
        return list(self.send_raw("root", "listProcesses").get("processes") or [])

    def get_target(self, actor: str) -> Dict[str, Any]:
        return self.send_raw(actor, "getTarget")

    def attach_to_tab(self, actor: str) -> Dict[str, Any]:
        return self.send_raw(actor, "attach")

    def ensure_execution_actor(self) -> str:
        if self.root is None:
            self.get_root()
        return self.actors.ensure(self.send_raw)

    def invalidate_actor_cache(self, reason: Optional[str] = None) -> None:
        had_actor = self.actors.invalidate()
        if reason:
            logger.debug("actor cache invalidated (%s, had actor: %s)", reason, had_actor)
            self._publish({"type": ACTORS_INVALIDATED, "reason": reason})

    def evaluate(self, code: str, *, max_retries: Optional[int] = None) -> "EvaluationResult":
        """Evaluate ``code`` in the target with health checks and automatic retry."""

        if self.is_connected() and self._should_check_health() and not self.check_health():
            logger.info("idle connection failed health check; reconnecting before evaluate")
            try:
                self.reconnect()
            except RDPConnectionError as exc:
                # with_retry gets another go at it
                logger.warning("pre-evaluate reconnect failed: %s", exc)
        return self.with_retry(
            lambda: self._evaluate_once(code),
            max_retries=max_retries,
            operation_name="evaluate",
        )

    def _evaluate_once(self, code: str) -> "EvaluationResult":
        actor = self.ensure_execution_actor()
        response = self.send_raw(actor, "evaluateJSAsync", text=code, mapped={"await": True})
        return EvaluationResult.from_response(response)

    def get_cached_messages(self, types: Sequence[str] = DEFAULT_MESSAGE_TYPES) -> Dict[str, Any]:
        actor = self.ensure_execution_actor()
        return self.send_raw(actor, "getCachedMessages", messageTypes=list(types))

    def fetch_long_string(self, actor: str, length: int) -> str:
        response = self.send_raw(actor, "substring", start=0, end=int(length))
        return str(response.get("substring") or "")

    def resolve_value(self, grip: Any) -> Any:
        """Decode ``grip`` locally; truncated long strings come back as raw grips."""
        return decode_grip(grip)

    def resolve_value_full(self, grip: Any) -> Any:
        """Decode ``grip``, fetching the remainder of any long string from the server."""
        return decode_grip(grip, fetch_long_string=self.fetch_long_string)

    #
    # Retry
    #
    def with_retry(
        self,
        operation: Callable[[], T],
        *,
        max_retries: Optional[int] = None,
        invalidate_actors: bool = False,
        operation_name: str = "operation",
    ) -> T:
        """Run ``operation`` and recover from actor and connection failures.

        Actor errors invalidate the actor cache and retry after a short linear
        delay, and connection errors back off exponentially and reconnect.
        Anything else is raised immediately.  With ``invalidate_actors`` every
        failure is handled as an actor failure.
        """

        retries = self.config.max_retries if max_retries is None else max_retries
        last_error: Optional[BaseException] = None
        for attempt in range(retries + 1):
            try:
                if not self.is_connected():
                    if attempt >= retries:
                        raise RDPConnectionError(
                            f"not connected to {self.config.address}\n"
                            + remediation_text(self.config.host, self.config.port),
                            host=self.config.host,
                            port=self.config.port,
                        )
                    self.reconnect()
                result = operation()
            except Exception as exc:
                last_error = exc
                self._consecutive_failures += 1
                kind = classify_error(exc)
                if attempt >= retries:
                    break
                if kind is ErrorKind.ACTOR or invalidate_actors:
                    logger.warning("%s failed (%s); refreshing actors and retrying", operation_name, exc)
                    self.invalidate_actor_cache(reason="noSuchActor" if kind is ErrorKind.ACTOR else operation_name)
                    self._sleep(self.config.actor_retry_delay * (attempt + 1))
                    continue
                if kind is ErrorKind.CONNECTION:
                    delay = backoff_delay(self._consecutive_failures, self.config.backoff_base, self.config.backoff_cap)
                    logger.warning("%s failed (%s); reconnecting in %.2fs", operation_name, exc, delay)
                    self._sleep(delay)
                    try:
                        self.reconnect()
                    except RDPConnectionError as reconnect_exc:
                        logger.warning("reconnect failed: %s", reconnect_exc)
                        last_error = reconnect_exc
                    continue
                break
            else:
                self._mark_success()
                return result
        assert last_error is not None
        raise last_error

    #
    # Health
    #
    def check_health(self) -> bool:
        """Round-trip ``getRoot``; returns False instead of raising."""

        if not self.is_connected():
            return False
        try:
            self.get_root()
        except RDPError as exc:
            self._consecutive_failures += 1
            logger.debug("health check failed: %s", exc)
            return False
        self._mark_success()
        return True

    def keepalive_tick(self) -> bool:
        """One keepalive check; reconnects proactively when it fails."""

        if self.check_health():
            return True
        logger.warning("keepalive check failed for %s; reconnecting", self.config.address)
        self._publish({"type": KEEPALIVE_FAILED, "address": self.config.address})
        try:
            self.reconnect()
        except RDPError as exc:
            # the next caller-issued operation retries
            logger.warning("keepalive reconnect failed: %s", exc)
            return False
        self._publish({"type": KEEPALIVE_RECONNECTED, "address": self.config.address})
        return True

    def set_keepalive_enabled(self, enabled: bool) -> None:
        self._keepalive_enabled = enabled
        if not enabled:
            self._stop_keepalive()
        elif self.is_connected():
            self._start_keepalive()

    #
    # Internal helpers
    #
    def _mark_success(self) -> None:
        self._last_success = self._clock()
        self._consecutive_failures = 0

    def _should_check_health(self) -> bool:
        return (self._clock() - self._last_success) > self.config.health_check_threshold

    def _closed_error(self, reason: str) -> Callable[[], RDPConnectionError]:
        host, port = self.config.host, self.config.port

        def make() -> RDPConnectionError:
            return RDPConnectionError(f"connection closed ({reason})", host=host, port=port)

        return make

    def _set_phase(self, phase: str) -> None:
        with self._state_lock:
            if self._phase == phase:
                return
            self._phase = phase
        logger.debug("connection phase -> %s", phase)

    def _require_connection(self) -> _Connection:
        with self._state_lock:
            conn = self._conn
            ready = self._phase == STATE_READY
        if conn is None or not ready:
            raise RDPConnectionError(
                f"not connected to {self.config.address}\n"
                + remediation_text(self.config.host, self.config.port),
                host=self.config.host,
                port=self.config.port,
            )
        return conn

    def _teardown(self, conn: Optional[_Connection], make_error: Callable[[], BaseException]) -> bool:
        """Discard ``conn`` (or the current connection) and reject pending requests."""

        with self._state_lock:
            if conn is not None and self._conn is not conn:
                return False
            conn = self._conn
            self._conn = None
            self._phase = STATE_DISCONNECTED
            self._root = None
        if conn is not None:
            _close_socket(conn.sock)
            if not conn.intro.is_set():
                conn.intro_error = make_error()
                conn.intro.set()
        rejected = self._correlator.fail_all(make_error)
        if rejected:
            logger.debug("rejected %d pending request(s) on teardown", rejected)
        return conn is not None

    def _reader_loop(self, conn: _Connection) -> None:
        error: Optional[OSError] = None
        while self._conn is conn:
            try:
                chunk = conn.sock.recv(65536)
            except socket.timeout:
                continue
            except OSError as exc:
                error = exc
                break
            if not chunk:
                break
            for message in conn.buffer.feed(chunk):
                if self._conn is not conn:
                    return
                self._handle_packet(conn, message)
        self._handle_transport_lost(conn, error)

    def _handle_packet(self, conn: _Connection, message: Dict[str, Any]) -> None:
        if not conn.intro.is_set() and "applicationType" in message:
            with self._state_lock:
                if self._conn is not conn:
                    return
                self._root = RootInfo.from_packet(message)
            conn.intro.set()
            return
        self._correlator.dispatch(message)

    def _handle_transport_lost(self, conn: _Connection, exc: Optional[BaseException]) -> None:
        with self._state_lock:
            if self._conn is not conn:
                return
            was_ready = self._phase == STATE_READY
        reason = str(exc) if exc is not None else "closed by peer"
        if not self._teardown(conn, self._closed_error(reason)):
            return
        self.actors.invalidate()
        if exc is not None:
            self._publish({"type": TRANSPORT_ERROR, "error": type(exc).__name__, "message": reason})
        if was_ready:
            logger.info("connection to %s lost: %s", self.config.address, reason)
            self._publish({"type": DISCONNECTED, "address": self.config.address, "reason": reason})
            self._schedule_auto_reconnect()

    def _schedule_auto_reconnect(self) -> None:
        limit = self.config.max_reconnect_attempts
        if self._closed or limit <= 0:
            return
        if self._reconnect_attempts >= limit:
            logger.warning("giving up automatic reconnect after %d attempt(s)", self._reconnect_attempts)
            return
        self._reconnect_attempts += 1
        timer = threading.Timer(self.config.reconnect_delay, self._auto_reconnect, args=(self._reconnect_attempts,))
        timer.daemon = True
        self._reconnect_timer = timer
        timer.start()

    def _cancel_auto_reconnect(self) -> None:
        timer = self._reconnect_timer
        self._reconnect_timer = None
        if timer is not None:
            timer.cancel()

    def _auto_reconnect(self, attempt: int) -> None:
        if self._closed or self.is_connected():
            return
        self._publish({"type": RECONNECTING, "address": self.config.address, "attempt": attempt})
        try:
            self._connect(auto=True)
        except RDPConnectionError as exc:
            logger.debug("automatic reconnect attempt %d failed: %s", attempt, exc)
            self._schedule_auto_reconnect()

    def _handle_event(self, message: Dict[str, Any]) -> None:
        self._publish(message)

    def _handle_invalidating_event(self, event_type: str) -> None:
        self.invalidate_actor_cache(reason=event_type)

    def _handle_framing_error(self, error: FramingError) -> None:
        self._publish({"type": TRANSPORT_ERROR, "error": "FramingError", "message": str(error)})

    def _publish(self, event: Dict[str, Any]) -> None:
        try:
            self.event_bus.publish(event)
        except Exception:
            logger.exception("event bus publish failed")

    def _start_keepalive(self) -> None:
        if not self._keepalive_enabled or self.config.keepalive_interval <= 0:
            return
        if self._keepalive_thread and self._keepalive_thread.is_alive():
            return
        self._keepalive_stop.clear()
        self._keepalive_thread = threading.Thread(target=self._keepalive_loop, name="zrdp-keepalive", daemon=True)
        self._keepalive_thread.start()

    def _stop_keepalive(self) -> None:
        self._keepalive_stop.set()
        thread = self._keepalive_thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=0.5)
        self._keepalive_thread = None

    def _keepalive_loop(self) -> None:
        while not self._keepalive_stop.wait(self.config.keepalive_interval):
            if not self.is_connected() or not self._should_check_health():
                continue
            try:
                self.keepalive_tick()
            except Exception:
                logger.exception("keepalive check crashed")

"""Error taxonomy and failure classification for zrdp."""

from __future__ import annotations

import enum
from typing import Any, Dict, Optional


class RDPError(RuntimeError):
    """Base class for every error raised by the protocol client."""


class FramingError(RDPError):
    """Malformed length prefix or payload on the wire (recovered in place)."""

    def __init__(self, message: str, payload: bytes = b"") -> None:
        super().__init__(message)
        self.payload = payload


class ProtocolError(RDPError):
    """Well-formed message that explicitly carries an ``error`` field."""

    def __init__(self, message: str, *, error: str = "", actor: Optional[str] = None, response: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.error = error
        self.actor = actor
        self.response = response or {}

    @classmethod
    def from_response(cls, response: Dict[str, Any]) -> "ProtocolError":
        """Build the matching error type for an error response."""

        code = str(response.get("error") or "")
        text = str(response.get("message") or code or "unknown protocol error")
        actor = response.get("from")
        if is_no_such_actor(code, text):
            return ActorError(text, error=code, actor=actor, response=response)
        return ProtocolError(text, error=code, actor=actor, response=response)


class ActorError(ProtocolError):
    """The referenced actor no longer exists on the server."""


class RDPConnectionError(RDPError, ConnectionError):
    """The transport is refused, reset, broken, closed or not open."""

    def __init__(self, message: str, *, host: Optional[str] = None, port: Optional[int] = None) -> None:
        super().__init__(message)
        self.host = host
        self.port = port

    @property
    def remediation(self) -> str:
        return remediation_text(self.host, self.port)


class RequestTimeoutError(RDPError, TimeoutError):
    """No response arrived within the per-request window."""

    def __init__(self, message: str, *, to: str = "", request_type: str = "") -> None:
        super().__init__(message)
        self.to = to
        self.request_type = request_type


class ResolutionError(RDPError):
    """No usable execution actor was found via any discovery path."""

    def __init__(self, message: str, *, attempts: Optional[Dict[str, str]] = None, host: Optional[str] = None, port: Optional[int] = None) -> None:
        super().__init__(message)
        self.attempts = dict(attempts or {})
        self.host = host
        self.port = port

    @property
    def remediation(self) -> str:
        return remediation_text(self.host, self.port, restart_hint=True)


class EvaluationError(RDPError):
    """Remote evaluation completed but threw an exception."""

    def __init__(self, message: str, *, stack: Optional[str] = None, exception: Any = None, response: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.stack = stack
        self.exception = exception
        self.response = response or {}


class ErrorKind(enum.Enum):
    ACTOR = "actor"
    CONNECTION = "connection"
    UNKNOWN = "unknown"


_ACTOR_TOKENS = ("no such actor", "nosuchactor")
_CONNECTION_TOKENS = (
    "not connected",
    "connection closed",
    "connection reset",
    "connection refused",
    "broken pipe",
    "timed out",
    "econnreset",
    "epipe",
    "etimedout",
)


def is_no_such_actor(code: str, text: str = "") -> bool:
    combined = f"{code} {text}".lower()
    return any(token in combined for token in _ACTOR_TOKENS)


def classify_error(exc: BaseException) -> ErrorKind:
    """Decide how the retry wrapper should react to ``exc``."""

    if isinstance(exc, ActorError):
        return ErrorKind.ACTOR
    # request timeouts take no transport action; failed discovery and
    # thrown evaluations end the operation
    if isinstance(exc, (RequestTimeoutError, ResolutionError, EvaluationError)):
        return ErrorKind.UNKNOWN
    if isinstance(exc, RDPConnectionError):
        return ErrorKind.CONNECTION
    if isinstance(exc, ProtocolError):
        return ErrorKind.ACTOR if is_no_such_actor(exc.error, str(exc)) else ErrorKind.UNKNOWN
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ErrorKind.CONNECTION
    cause = exc.__cause__
    if cause is not None and cause is not exc:
        kind = classify_error(cause)
        if kind is not ErrorKind.UNKNOWN:
            return kind
    message = str(exc).lower()
    if any(token in message for token in _ACTOR_TOKENS):
        return ErrorKind.ACTOR
    if any(token in message for token in _CONNECTION_TOKENS):
        return ErrorKind.CONNECTION
    return ErrorKind.UNKNOWN


def backoff_delay(failures: int, base: float, cap: float) -> float:
    """Exponential backoff: ``base * 2**(failures - 1)`` capped at ``cap``."""

    exponent = max(0, int(failures) - 1)
    return min(base * (2 ** exponent), cap)


def remediation_text(host: Optional[str], port: Optional[int], *, restart_hint: bool = False) -> str:
    target = f"{host}:{port}" if host and port else f"port {port}" if port else "the debugger port"
    lines = [
        "Ensure:",
        "1. Zotero is running",
        "2. The MCP Bridge for Zotero plugin is installed and enabled",
        f"3. {target} is not blocked",
    ]
    if restart_hint:
        lines.append("4. Try restarting Zotero")
    return "\n".join(lines)

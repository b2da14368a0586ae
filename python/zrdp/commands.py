"""Typed helpers built on top of RDPClient."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .actors import RootInfo, TargetInfo
from .client import DEFAULT_MESSAGE_TYPES, EvaluationResult, RDPClient
from .errors import EvaluationError
from .grips import decode_grip


def _to_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


@dataclass
class ConsoleMessage:
    type: str
    message: Optional[str] = None
    level: Optional[str] = None
    timestamp: Optional[float] = None
    arguments: List[Any] = field(default_factory=list)
    filename: Optional[str] = None
    line_number: Optional[int] = None
    column_number: Optional[int] = None
    category: Optional[str] = None
    stack: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.type in ("PageError", "pageError") or self.level == "error"

    @classmethod
    def from_packet(cls, packet: Dict[str, Any]) -> "ConsoleMessage":
        """Accepts both the flat form and ``{"type": ..., "message"|"pageError": {...}}``."""

        kind = str(packet.get("type") or "")
        body: Dict[str, Any] = packet
        for key in ("message", "pageError"):
            nested = packet.get(key)
            if isinstance(nested, dict):
                body = nested
                break
        text = body.get("errorMessage") if "errorMessage" in body else body.get("message")
        stack = body.get("stack")
        return cls(
            type=kind,
            message=str(text) if isinstance(text, str) else None,
            level=body.get("level"),
            timestamp=body.get("timeStamp", body.get("timestamp")),
            arguments=[decode_grip(arg) for arg in body.get("arguments") or []],
            filename=body.get("filename") or body.get("sourceName"),
            line_number=_to_int(body.get("lineNumber")),
            column_number=_to_int(body.get("columnNumber")),
            category=body.get("category"),
            stack=stack if isinstance(stack, str) else None,
        )


def exception_details(result: EvaluationResult) -> tuple:
    """Return ``(message, stack)`` for an evaluation that threw."""

    exception = result.exception
    message = result.exception_message
    stack: Optional[str] = None
    if isinstance(exception, dict):
        preview = exception.get("preview")
        if isinstance(preview, dict):
            if isinstance(preview.get("stack"), str):
                stack = preview["stack"]
            if not message and preview.get("message"):
                message = f"{preview.get('name') or exception.get('class') or 'Error'}: {preview['message']}"
    elif exception is not None and not message:
        message = str(decode_grip(exception))
    return message or "evaluation threw an exception", stack


@dataclass
class ConsoleClient:
    client: RDPClient

    def evaluate(self, code: str) -> EvaluationResult:
        return self.client.evaluate(code)

    def evaluate_value(self, code: str) -> Any:
        """Evaluate ``code`` and return its fully decoded value.

        Raises ``EvaluationError`` when the evaluation threw.
        """

        result = self.client.evaluate(code)
        if result.has_exception:
            message, stack = exception_details(result)
            raise EvaluationError(message, stack=stack, exception=result.exception, response=result.raw)
        return self.client.resolve_value_full(result.result)

    def cached_messages(self, types: Sequence[str] = DEFAULT_MESSAGE_TYPES) -> List[ConsoleMessage]:
        response = self.client.get_cached_messages(types)
        messages = response.get("messages") or []
        return [ConsoleMessage.from_packet(item) for item in messages if isinstance(item, dict)]

    def errors(self) -> List[ConsoleMessage]:
        return [message for message in self.cached_messages() if message.is_error]

    def application(self) -> Optional[RootInfo]:
        return self.client.root or self.client.get_root()

    def current_target(self) -> Optional[TargetInfo]:
        self.client.ensure_execution_actor()
        return self.client.get_state().current_target

    def tabs(self) -> List[TargetInfo]:
        return [TargetInfo.from_descriptor(tab) for tab in self.client.list_tabs() if isinstance(tab, dict)]

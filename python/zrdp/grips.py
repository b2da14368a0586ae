"""Decoding of grips, the protocol's serialized representation of remote values.

Grip variants handled here::

    primitive      2, "text", true, null
    special        {"type": "undefined"}, {"type": "NaN"}, {"type": "BigInt", "text": "9"}, ...
    long string    {"type": "longString", "actor": ..., "length": ..., "initial": ...}
    array          {"type": "object", "class": "Array", "preview": {"items": [...]}}
    object         {"type": "object", "class": ..., "preview": {"ownProperties": {...}}}
    symbol         {"type": "symbol", "name": ...}
    opaque         any object grip without a usable preview

Opaque objects decode to an ``OpaquePlaceholder`` such as ``"[Window]"``; callers
that need the content have to ask the remote side for a fuller serialization
(for example by evaluating ``JSON.stringify(...)``).
"""

from __future__ import annotations

import enum
import math
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional


LongStringFetcher = Callable[[str, int], str]


class GripKind(enum.Enum):
    PRIMITIVE = "primitive"
    SPECIAL = "special"
    LONG_STRING = "longString"
    ARRAY = "array"
    OBJECT = "object"
    SYMBOL = "symbol"
    OPAQUE = "opaque"
    UNKNOWN = "unknown"


_SPECIAL_VALUES: Dict[str, Any] = {
    "undefined": None,
    "null": None,
    "NaN": math.nan,
    "Infinity": math.inf,
    "-Infinity": -math.inf,
    "-0": -0.0,
}


class OpaquePlaceholder(str):
    """Lossy stand-in for a remote object that arrived without a preview."""

    class_name: str

    def __new__(cls, class_name: str) -> "OpaquePlaceholder":
        obj = super().__new__(cls, f"[{class_name}]")
        obj.class_name = class_name
        return obj


class RemoteSymbol:
    """Process-wide interned symbol, keyed by its description."""

    _registry: Dict[str, "RemoteSymbol"] = {}
    _lock = threading.Lock()

    __slots__ = ("name",)

    def __init__(self, name: str) -> None:
        self.name = name

    @classmethod
    def for_name(cls, name: str) -> "RemoteSymbol":
        with cls._lock:
            symbol = cls._registry.get(name)
            if symbol is None:
                symbol = cls(name)
                cls._registry[name] = symbol
            return symbol

    def __repr__(self) -> str:
        return f"Symbol({self.name})"


@dataclass(frozen=True)
class LongStringGrip:
    actor: str
    length: int
    initial: str

    @property
    def complete(self) -> bool:
        return len(self.initial) >= self.length

    @classmethod
    def from_grip(cls, grip: Dict[str, Any]) -> "LongStringGrip":
        return cls(
            actor=str(grip.get("actor") or ""),
            length=int(grip.get("length") or 0),
            initial=str(grip.get("initial") or ""),
        )


def classify_grip(grip: Any) -> GripKind:
    if not isinstance(grip, dict):
        return GripKind.PRIMITIVE
    grip_type = grip.get("type")
    if grip_type in _SPECIAL_VALUES or grip_type == "BigInt":
        return GripKind.SPECIAL
    if grip_type == "longString":
        return GripKind.LONG_STRING
    if grip_type == "symbol":
        return GripKind.SYMBOL
    if grip_type == "object":
        preview = grip.get("preview")
        if not isinstance(preview, dict):
            return GripKind.OPAQUE
        if grip.get("class") == "Array" and isinstance(preview.get("items"), list):
            return GripKind.ARRAY
        if isinstance(preview.get("ownProperties"), dict):
            return GripKind.OBJECT
        return GripKind.OPAQUE
    return GripKind.UNKNOWN


def is_long_string(value: Any) -> bool:
    return isinstance(value, dict) and value.get("type") == "longString" and "actor" in value


def is_placeholder(value: Any) -> bool:
    return isinstance(value, OpaquePlaceholder)


def decode_grip(grip: Any, fetch_long_string: Optional[LongStringFetcher] = None) -> Any:
    """Convert ``grip`` into a plain Python value.

    Without ``fetch_long_string`` a truncated long string is returned as the raw
    grip so the caller can tell it needs the fetching path; with a fetcher the
    full string is retrieved from the string's actor.
    """

    kind = classify_grip(grip)
    if kind is GripKind.PRIMITIVE or kind is GripKind.UNKNOWN:
        return grip
    if kind is GripKind.SPECIAL:
        if grip["type"] == "BigInt":
            return int(grip.get("text") or 0)
        return _SPECIAL_VALUES[grip["type"]]
    if kind is GripKind.LONG_STRING:
        long_string = LongStringGrip.from_grip(grip)
        if long_string.complete:
            return long_string.initial
        if fetch_long_string is None:
            return grip
        return fetch_long_string(long_string.actor, long_string.length)
    if kind is GripKind.ARRAY:
        return [decode_grip(item, fetch_long_string) for item in grip["preview"]["items"]]
    if kind is GripKind.OBJECT:
        result: Dict[str, Any] = {}
        for key, prop in grip["preview"]["ownProperties"].items():
            value = prop.get("value") if isinstance(prop, dict) else prop
            result[key] = decode_grip(value, fetch_long_string)
        return result
    if kind is GripKind.SYMBOL:
        return RemoteSymbol.for_name(str(grip.get("name") or ""))
    return OpaquePlaceholder(str(grip.get("class") or "Object"))

"""Packet framing for the remote debugging protocol.

Every packet on the wire is ``<decimal byte length>:<UTF-8 JSON payload>``;
the length counts payload bytes only.  Example::

    30:{"to":"root","type":"getRoot"}
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional

from .errors import FramingError


logger = logging.getLogger(__name__)

ErrorHandler = Callable[[FramingError], None]


def encode_packet(message: Dict[str, Any]) -> bytes:
    """Serialise ``message`` and prefix it with its payload byte length."""

    payload = json.dumps(message, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return str(len(payload)).encode("ascii") + b":" + payload


class PacketBuffer:
    """Accumulates received bytes and yields complete JSON messages."""

    def __init__(self, on_error: Optional[ErrorHandler] = None) -> None:
        self._buffer = bytearray()
        self._on_error = on_error
        self.dropped_bytes = 0

    def __len__(self) -> int:
        return len(self._buffer)

    def clear(self) -> None:
        self._buffer.clear()

    def feed(self, data: bytes) -> List[Dict[str, Any]]:
        """Append ``data`` and return every message it completes, in order."""

        if data:
            self._buffer.extend(data)
        messages: List[Dict[str, Any]] = []
        while self._buffer:
            colon = self._buffer.find(b":")
            if colon == -1:
                if bytes(self._buffer).isdigit():
                    break
                # no separator yet and the prefix is already garbage
                self._skip_byte()
                continue
            prefix = bytes(self._buffer[:colon])
            if not prefix.isdigit():
                self._skip_byte()
                continue
            length = int(prefix)
            start = colon + 1
            end = start + length
            if len(self._buffer) < end:
                break
            payload = bytes(self._buffer[start:end])
            del self._buffer[:end]
            message = self._parse(payload)
            if message is not None:
                messages.append(message)
        return messages

    def _skip_byte(self) -> None:
        del self._buffer[0]
        self.dropped_bytes += 1

    def _parse(self, payload: bytes) -> Optional[Dict[str, Any]]:
        try:
            message = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            self._report(FramingError(f"failed to parse packet: {exc}", payload))
            return None
        if not isinstance(message, dict):
            self._report(FramingError(f"packet is not a JSON object: {type(message).__name__}", payload))
            return None
        return message

    def _report(self, error: FramingError) -> None:
        logger.warning("%s (payload=%r)", error, error.payload[:200])
        handler = self._on_error
        if handler is None:
            return
        try:
            handler(error)
        except Exception:
            logger.debug("framing error handler failed", exc_info=True)

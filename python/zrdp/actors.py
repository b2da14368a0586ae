"""Actor discovery and caching for zrdp.

The execution (console) actor is found through one of two paths:

    process path   root -> listProcesses -> parent process -> getTarget -> consoleActor
    tab path       root -> listTabs -> main window -> getTarget | attach -> consoleActor

A resolved actor is trusted for a fixed TTL, and is dropped earlier when the
server announces navigation/detach or reports that the actor no longer exists.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .config import ACTOR_CACHE_TTL_S, APPLICATION_NAME, HOME_DOCUMENT_PREFIX
from .errors import ProtocolError, RequestTimeoutError, ResolutionError, remediation_text


logger = logging.getLogger(__name__)

SendFn = Callable[..., Dict[str, Any]]
# a resolved (actor, target) pair, or the reason the path came up empty
_PathResult = Union[str, Tuple[str, Optional["TargetInfo"]]]

PROCESS_PATH = "process"
TAB_PATH = "tab"


@dataclass
class RootInfo:
    application_type: str
    traits: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_packet(cls, packet: Dict[str, Any]) -> "RootInfo":
        traits = packet.get("traits")
        return cls(
            application_type=str(packet.get("applicationType") or ""),
            traits=dict(traits) if isinstance(traits, dict) else {},
        )


@dataclass
class TargetInfo:
    actor: str
    title: str = ""
    url: str = ""
    outer_window_id: Optional[int] = None

    @classmethod
    def from_descriptor(cls, descriptor: Dict[str, Any]) -> "TargetInfo":
        window_id = descriptor.get("outerWindowID")
        return cls(
            actor=str(descriptor.get("actor") or ""),
            title=str(descriptor.get("title") or ""),
            url=str(descriptor.get("url") or ""),
            outer_window_id=int(window_id) if isinstance(window_id, int) else None,
        )


@dataclass
class ConnectionState:
    connected: bool = False
    root: Optional[RootInfo] = None
    execution_actor: Optional[str] = None
    current_target: Optional[TargetInfo] = None
    actor_cached_at: float = 0.0


def find_main_window(
    tabs: List[Dict[str, Any]],
    *,
    home_prefix: str = HOME_DOCUMENT_PREFIX,
    app_name: str = APPLICATION_NAME,
) -> Optional[Dict[str, Any]]:
    """Pick the application's main window out of a ``listTabs`` reply."""

    for tab in tabs:
        if str(tab.get("url") or "").startswith(home_prefix):
            return tab
    for tab in tabs:
        if app_name in str(tab.get("title") or ""):
            return tab
    return tabs[0] if tabs else None


def console_actor_from_target(response: Dict[str, Any]) -> Optional[str]:
    for key in ("process", "frame"):
        block = response.get(key)
        if isinstance(block, dict) and block.get("consoleActor"):
            return str(block["consoleActor"])
    return None


class ActorCache:
    """Resolves and caches the execution actor used for evaluation."""

    def __init__(
        self,
        *,
        ttl: float = ACTOR_CACHE_TTL_S,
        home_prefix: str = HOME_DOCUMENT_PREFIX,
        app_name: str = APPLICATION_NAME,
        clock: Callable[[], float] = time.monotonic,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ) -> None:
        self.ttl = ttl
        self.home_prefix = home_prefix
        self.app_name = app_name
        self.host = host
        self.port = port
        self._clock = clock
        self._actor: Optional[str] = None
        self._target: Optional[TargetInfo] = None
        self._cached_at = 0.0
        self._epoch = 0
        # _state_lock is never held across a network round-trip
        self._state_lock = threading.Lock()
        self._resolve_lock = threading.Lock()

    @property
    def actor(self) -> Optional[str]:
        with self._state_lock:
            return self._actor

    @property
    def target(self) -> Optional[TargetInfo]:
        with self._state_lock:
            return self._target

    @property
    def cached_at(self) -> float:
        with self._state_lock:
            return self._cached_at

    def is_fresh(self) -> bool:
        with self._state_lock:
            return self._is_fresh_locked()

    def _is_fresh_locked(self) -> bool:
        if not self._actor:
            return False
        return (self._clock() - self._cached_at) < self.ttl

    def invalidate(self) -> bool:
        """Forget the cached actor; returns True if one was cached."""

        with self._state_lock:
            had_actor = self._actor is not None
            self._actor = None
            self._target = None
            self._cached_at = 0.0
            self._epoch += 1
        return had_actor

    def snapshot_into(self, state: ConnectionState) -> ConnectionState:
        with self._state_lock:
            state.execution_actor = self._actor
            state.current_target = self._target
            state.actor_cached_at = self._cached_at
        return state

    def ensure(self, send: SendFn) -> str:
        """Return a fresh execution actor, resolving it through ``send`` if needed."""

        with self._state_lock:
            if self._is_fresh_locked():
                assert self._actor is not None
                return self._actor
        with self._resolve_lock:
            with self._state_lock:
                if self._is_fresh_locked():
                    assert self._actor is not None
                    return self._actor
                if self._actor is not None:
                    logger.debug("execution actor %s expired after %.1fs", self._actor, self.ttl)
                self._actor = None
                self._target = None
                self._cached_at = 0.0
                epoch = self._epoch
            actor, target = self._resolve(send)
            with self._state_lock:
                if self._epoch == epoch:
                    self._actor = actor
                    self._target = target
                    self._cached_at = self._clock()
                else:
                    logger.debug("actors invalidated during resolution; not caching %s", actor)
            return actor

    # ------------------------------------------------------------------
    # Discovery paths
    # ------------------------------------------------------------------
    def _resolve(self, send: SendFn) -> Tuple[str, Optional[TargetInfo]]:
        attempts: Dict[str, str] = {}
        for name, path in ((PROCESS_PATH, self._resolve_via_process), (TAB_PATH, self._resolve_via_tabs)):
            try:
                found = path(send)
            except (ProtocolError, RequestTimeoutError) as exc:
                logger.debug("%s path failed: %s", name, exc)
                attempts[name] = str(exc)
                continue
            if isinstance(found, str):
                attempts[name] = found
                continue
            logger.debug("resolved execution actor %s via %s path", found[0], name)
            return found
        detail = "; ".join(f"{name}: {reason}" for name, reason in attempts.items())
        raise ResolutionError(
            f"could not find {self.app_name} console actor ({detail})\n"
            + remediation_text(self.host, self.port, restart_hint=True),
            attempts=attempts,
            host=self.host,
            port=self.port,
        )

    def _resolve_via_process(self, send: SendFn) -> _PathResult:
        response = send("root", "listProcesses")
        processes = response.get("processes") or []
        parent = next((p for p in processes if isinstance(p, dict) and p.get("isParent")), None)
        if parent is None:
            return "no parent process listed"
        target = send(str(parent.get("actor")), "getTarget")
        actor = console_actor_from_target(target)
        if not actor:
            return "parent process target has no console actor"
        process = target.get("process")
        info = TargetInfo.from_descriptor(process) if isinstance(process, dict) else None
        return actor, info

    def _resolve_via_tabs(self, send: SendFn) -> _PathResult:
        response = send("root", "listTabs")
        tabs = [tab for tab in (response.get("tabs") or []) if isinstance(tab, dict)]
        main = find_main_window(tabs, home_prefix=self.home_prefix, app_name=self.app_name)
        if main is None:
            return "no tabs listed"
        info = TargetInfo.from_descriptor(main)
        try:
            target = send(info.actor, "getTarget")
        except ProtocolError as exc:
            logger.debug("getTarget on %s failed (%s); trying attach", info.actor, exc)
        else:
            actor = console_actor_from_target(target)
            if actor:
                return actor, info
        attached = send(info.actor, "attach")
        actor = attached.get("consoleActor")
        if not actor:
            return f"tab {info.actor} exposes no console actor"
        return str(actor), info

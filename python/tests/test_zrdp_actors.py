from unittest.mock import MagicMock

import pytest

from zrdp.actors import ActorCache, ConnectionState, TargetInfo, find_main_window
from zrdp.config import HOME_DOCUMENT_PREFIX
from zrdp.errors import ProtocolError, RDPConnectionError, RequestTimeoutError, ResolutionError


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _process_send(console="console1"):
    """send() double answering the process discovery path."""

    replies = {
        ("root", "listProcesses"): {"processes": [{"actor": "p0"}, {"actor": "p1", "isParent": True}]},
        ("p1", "getTarget"): {"process": {"actor": "t1", "consoleActor": console, "title": "Zotero"}},
    }

    def send(to, request_type, **fields):
        return replies[(to, request_type)]

    return MagicMock(side_effect=send)


def test_resolves_via_parent_process():
    cache = ActorCache()
    send = _process_send()

    assert cache.ensure(send) == "console1"
    assert cache.target == TargetInfo(actor="t1", title="Zotero")
    assert [c.args[:2] for c in send.call_args_list] == [("root", "listProcesses"), ("p1", "getTarget")]


def test_cached_actor_reused_until_ttl_expires():
    clock = FakeClock()
    cache = ActorCache(ttl=30.0, clock=clock)
    send = _process_send()

    cache.ensure(send)
    clock.now = 29.9
    cache.ensure(send)
    assert send.call_count == 2

    clock.now = 30.0
    assert not cache.is_fresh()
    cache.ensure(send)
    assert send.call_count == 4


def test_invalidate_forces_rediscovery():
    cache = ActorCache()
    send = _process_send()
    cache.ensure(send)

    assert cache.invalidate() is True
    assert cache.actor is None
    assert cache.invalidate() is False
    cache.ensure(send)
    assert send.call_count == 4


def test_falls_back_to_tab_path():
    def send(to, request_type, **fields):
        if request_type == "listProcesses":
            raise ProtocolError("unrecognizedPacketType", error="unrecognizedPacketType")
        if request_type == "listTabs":
            return {"tabs": [
                {"actor": "tab0", "title": "Other", "url": "about:blank"},
                {"actor": "tab1", "title": "My Library", "url": HOME_DOCUMENT_PREFIX, "outerWindowID": 7},
            ]}
        if (to, request_type) == ("tab1", "getTarget"):
            return {"frame": {"actor": "frame1", "consoleActor": "console9"}}
        raise AssertionError((to, request_type))

    cache = ActorCache()
    assert cache.ensure(send) == "console9"
    assert cache.target.actor == "tab1"
    assert cache.target.outer_window_id == 7


def test_tab_path_uses_attach_when_get_target_fails():
    def send(to, request_type, **fields):
        if request_type == "listProcesses":
            return {"processes": []}
        if request_type == "listTabs":
            return {"tabs": [{"actor": "tab1", "title": "Zotero"}]}
        if request_type == "getTarget":
            raise ProtocolError("unknown", error="unrecognizedPacketType")
        if request_type == "attach":
            return {"consoleActor": "console5"}
        raise AssertionError((to, request_type))

    assert ActorCache().ensure(send) == "console5"


def test_resolution_error_names_both_paths():
    def send(to, request_type, **fields):
        if request_type == "listProcesses":
            return {"processes": [{"actor": "p0"}]}
        return {"tabs": []}

    cache = ActorCache(host="127.0.0.1", port=6100)
    with pytest.raises(ResolutionError) as excinfo:
        cache.ensure(send)
    err = excinfo.value
    assert set(err.attempts) == {"process", "tab"}
    assert "process:" in str(err) and "tab:" in str(err)
    assert "restarting Zotero" in str(err)
    assert cache.actor is None


def test_connection_errors_propagate_without_trying_tab_path():
    send = MagicMock(side_effect=RDPConnectionError("connection closed"))
    with pytest.raises(RDPConnectionError):
        ActorCache().ensure(send)
    assert send.call_count == 1


def test_invalidation_during_resolution_is_not_cached():
    cache = ActorCache()
    inner = _process_send()

    def send(to, request_type, **fields):
        if request_type == "getTarget":
            cache.invalidate()
        return inner(to, request_type, **fields)

    assert cache.ensure(send) == "console1"
    assert cache.actor is None


def test_find_main_window_preference_order():
    home = {"actor": "a", "title": "x", "url": HOME_DOCUMENT_PREFIX + "?q"}
    titled = {"actor": "b", "title": "Zotero - Library", "url": "chrome://other"}
    other = {"actor": "c", "title": "Preferences", "url": "chrome://prefs"}

    assert find_main_window([other, titled, home]) is home
    assert find_main_window([other, titled]) is titled
    assert find_main_window([other]) is other
    assert find_main_window([]) is None


def test_snapshot_into_copies_cache_state():
    clock = FakeClock()
    clock.now = 12.0
    cache = ActorCache(clock=clock)
    cache.ensure(_process_send())
    state = cache.snapshot_into(ConnectionState(connected=True))
    assert state.execution_actor == "console1"
    assert state.current_target.actor == "t1"
    assert state.actor_cached_at == 12.0


def test_process_path_timeout_falls_back_to_tabs():
    def send(to, request_type, **fields):
        if request_type == "listProcesses":
            raise RequestTimeoutError("request timeout for listProcesses to root", to=to, request_type=request_type)
        if request_type == "listTabs":
            return {"tabs": [{"actor": "tab1", "title": "Zotero"}]}
        if request_type == "getTarget":
            return {"frame": {"consoleActor": "console3"}}
        raise AssertionError((to, request_type))

    assert ActorCache().ensure(send) == "console3"

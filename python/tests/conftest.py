"""
Pytest configuration and fixtures for zrdp tests.
"""
import pytest

from rdp_stubs import FakeRDPServer
from zrdp import ClientConfig, RDPClient


@pytest.fixture
def rdp_server():
    server = FakeRDPServer()
    try:
        yield server
    finally:
        server.stop()


@pytest.fixture
def fast_config():
    """Short timers so reconnect and retry paths finish quickly."""

    def make(port: int, **overrides) -> ClientConfig:
        values = dict(
            port=port,
            request_timeout=2.0,
            connect_timeout=1.0,
            reconnect_delay=0.05,
            reconnect_grace=0.01,
            actor_retry_delay=0.01,
            backoff_base=0.01,
            backoff_cap=0.05,
            keepalive_enabled=False,
        )
        values.update(overrides)
        return ClientConfig(**values)

    return make


@pytest.fixture
def connected_client(rdp_server, fast_config):
    client = RDPClient(fast_config(rdp_server.port))
    client.connect()
    try:
        yield client
    finally:
        client.disconnect()

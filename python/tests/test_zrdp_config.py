import pytest

from zrdp.config import ENV_HOST, ENV_PORT, ClientConfig


def test_defaults():
    config = ClientConfig()
    assert config.address == "127.0.0.1:6100"
    assert config.request_timeout == 30.0
    assert config.actor_cache_ttl == 30.0
    assert config.max_retries == 2
    assert config.keepalive_enabled is True


def test_from_env_reads_host_and_port():
    config = ClientConfig.from_env({ENV_HOST: "10.0.0.5", ENV_PORT: "6200"})
    assert config.host == "10.0.0.5"
    assert config.port == 6200


def test_from_env_overrides_win():
    config = ClientConfig.from_env({ENV_PORT: "6200"}, port=7000, max_retries=0)
    assert config.port == 7000
    assert config.max_retries == 0


def test_from_env_ignores_empty_values():
    assert ClientConfig.from_env({ENV_HOST: "", ENV_PORT: ""}).address == "127.0.0.1:6100"


@pytest.mark.parametrize("port", ["abc", 0, 70000])
def test_invalid_port_rejected(port):
    with pytest.raises(ValueError):
        ClientConfig(port=port)


def test_invalid_limits_rejected():
    with pytest.raises(ValueError):
        ClientConfig(max_retries=-1)
    with pytest.raises(ValueError):
        ClientConfig(request_timeout=0)


def test_with_overrides_returns_copy():
    base = ClientConfig()
    changed = base.with_overrides(port=6101)
    assert changed.port == 6101
    assert base.port == 6100

"""Client configuration for zrdp.

All durations are seconds.  The module-level constants are the documented
defaults; nothing else is defaulted implicitly.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any, Mapping, Optional


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 6100
CONNECT_TIMEOUT_S = 5.0
REQUEST_TIMEOUT_S = 30.0
RECONNECT_DELAY_S = 1.0
MAX_RECONNECT_ATTEMPTS = 3
# the server needs a moment to release its side of a dropped connection
RECONNECT_GRACE_S = 0.1
ACTOR_CACHE_TTL_S = 30.0
KEEPALIVE_INTERVAL_S = 30.0
HEALTH_CHECK_THRESHOLD_S = 10.0
MAX_RETRIES = 2
BACKOFF_BASE_S = 1.0
BACKOFF_CAP_S = 5.0
ACTOR_RETRY_DELAY_S = 0.1
APPLICATION_NAME = "Zotero"
HOME_DOCUMENT_PREFIX = "chrome://zotero/content/zoteroPane.xhtml"

ENV_HOST = "ZOTERO_RDP_HOST"
ENV_PORT = "ZOTERO_RDP_PORT"


@dataclass
class ClientConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    connect_timeout: float = CONNECT_TIMEOUT_S
    request_timeout: float = REQUEST_TIMEOUT_S
    reconnect_delay: float = RECONNECT_DELAY_S
    max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS
    reconnect_grace: float = RECONNECT_GRACE_S
    actor_cache_ttl: float = ACTOR_CACHE_TTL_S
    keepalive_interval: float = KEEPALIVE_INTERVAL_S
    keepalive_enabled: bool = True
    health_check_threshold: float = HEALTH_CHECK_THRESHOLD_S
    max_retries: int = MAX_RETRIES
    backoff_base: float = BACKOFF_BASE_S
    backoff_cap: float = BACKOFF_CAP_S
    actor_retry_delay: float = ACTOR_RETRY_DELAY_S
    application_name: str = APPLICATION_NAME
    home_document_prefix: str = HOME_DOCUMENT_PREFIX

    def __post_init__(self) -> None:
        self.port = _parse_port(self.port)
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.request_timeout <= 0:
            raise ValueError(f"request_timeout must be positive, got {self.request_timeout}")

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def with_overrides(self, **overrides: Any) -> "ClientConfig":
        return replace(self, **overrides)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "ClientConfig":
        """Build a config from ``ZOTERO_RDP_HOST``/``ZOTERO_RDP_PORT``.

        Keyword overrides take precedence over the environment.
        """

        env = os.environ if environ is None else environ
        values: dict = {}
        host = env.get(ENV_HOST)
        if host:
            values["host"] = host
        port = env.get(ENV_PORT)
        if port:
            values["port"] = port
        values.update(overrides)
        return cls(**values)


def _parse_port(value: Any) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"invalid port: {value!r}") from None
    if not 0 < port < 65536:
        raise ValueError(f"port out of range: {port}")
    return port

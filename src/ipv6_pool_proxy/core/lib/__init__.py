"""Core proxy library components."""

from .proxy_handler import ConnectionSession, ProxyEngine
from .proxy_server import create_proxy_server, run_listeners, serve_listener, start_listener
from .proxy_stats import ProxyStats
from .relay import ConnectionRelay, RelayOutcome, RelayResult, relay

__all__ = [
    "ConnectionRelay",
    "ConnectionSession",
    "create_proxy_server",
    "ProxyEngine",
    "ProxyStats",
    "relay",
    "RelayOutcome",
    "RelayResult",
    "run_listeners",
    "serve_listener",
    "start_listener",
]

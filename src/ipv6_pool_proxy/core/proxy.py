"""Core proxy functionality and main entry point for the HTTP proxy server.

This module serves as the main entry point for the proxy server functionality.
It provides a clean interface to the underlying implementation by exposing
only the necessary components through its public API.

The module abstracts away the complexity of:
- Per-listener asyncio servers
- Request parsing and mode dispatch
- Egress dialing from each listener's address
- Relaying and statistics tracking

Example:
    from ipv6_pool_proxy.core.proxy import create_proxy_server

    # Serve 0.0.0.0:51080 from one random address of the subnet
    listeners = allocate_listeners(["0.0.0.0:51080"], parse_subnet("2001:db8::/64"))
    create_proxy_server(listeners, ProxySettings())

Attributes:
    __all__ (list): List of public components exposed by this module
"""

from .lib import create_proxy_server

__all__ = ["create_proxy_server"]

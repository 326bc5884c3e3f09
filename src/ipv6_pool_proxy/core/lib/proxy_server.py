"""Listener management for the HTTP proxy.

This module runs one asyncio server per configured bind address:
- Each listener owns its `ListenerConfig` and hands it to every session
- Listeners start and fail independently of each other
- Ctrl-C or SIGTERM stops all accept loops; open sessions are not drained
- A statistics summary is logged at shutdown

Example:
    # Serve two ports, each with its own egress address
    listeners = allocate_listeners(["0.0.0.0:51080", "0.0.0.0:51081"], subnet)
    create_proxy_server(listeners, ProxySettings())
"""

import asyncio
import contextlib
import signal
from collections.abc import Sequence

from loguru import logger

from ipv6_pool_proxy.core.config import ProxySettings
from ipv6_pool_proxy.core.network import ListenerConfig

from .dns_handler import DNSResolver
from .proxy_handler import ProxyEngine
from .proxy_stats import ProxyStats, proxy_stats

# Constants
REQUEST_QUEUE_SIZE = 100


async def start_listener(
    listener: ListenerConfig,
    settings: ProxySettings,
    resolver: DNSResolver | None = None,
    stats: ProxyStats = proxy_stats,
) -> asyncio.Server:
    """Open the listening socket for ``listener`` and start accepting.

    Args:
        listener: Bind address and egress address of this listener
        settings: Limits and timeouts for its sessions
        resolver: Shared DNS resolver (created from settings if omitted)
        stats: Process-wide statistics

    Returns:
        The running server

    Raises:
        OSError: If the bind address cannot be bound
    """
    engine = ProxyEngine(listener, settings, resolver, stats)
    return await asyncio.start_server(
        engine.handle,
        listener.bind_host,
        listener.bind_port,
        limit=settings.max_header_size,
        backlog=REQUEST_QUEUE_SIZE,
        reuse_address=True,
    )


async def serve_listener(
    listener: ListenerConfig,
    settings: ProxySettings,
    resolver: DNSResolver | None = None,
    stats: ProxyStats = proxy_stats,
) -> bool:
    """Run one listener until cancelled.

    Returns:
        False if the listener could not be started
    """
    try:
        server = await start_listener(listener, settings, resolver, stats)
    except OSError as e:
        logger.error(f"Error starting proxy on {listener.bind_label}: {e}")
        return False

    logger.info(f"Listening on {listener.bind_label}, egress via {listener.egress_address}")
    try:
        async with server:
            await server.serve_forever()
    except Exception:
        logger.exception(f"Listener {listener.bind_label} stopped")
    return True


async def run_listeners(
    listeners: Sequence[ListenerConfig],
    settings: ProxySettings,
    stats: ProxyStats = proxy_stats,
) -> bool:
    """Run all listeners concurrently until cancelled or until all have failed.

    Returns:
        False if no listener could be started
    """
    resolver = DNSResolver(settings.fallback_nameservers)
    main_task = asyncio.current_task()
    loop = asyncio.get_running_loop()
    if main_task is not None:
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signal.SIGTERM, main_task.cancel)

    tasks = [
        asyncio.create_task(
            serve_listener(listener, settings, resolver, stats),
            name=f"listener {listener.bind_label}",
        )
        for listener in listeners
    ]
    try:
        results = await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Proxy stopped: {stats.summary()}")

    # Listeners only return on their own when they failed
    started = any(results)
    logger.error("All listeners stopped" if started else "No listener could be started")
    return started


def create_proxy_server(listeners: Sequence[ListenerConfig], settings: ProxySettings) -> bool:
    """Run the proxy until Ctrl-C or SIGTERM.

    Args:
        listeners: Listener table built at startup
        settings: Limits and timeouts

    Returns:
        False if no listener could be started
    """
    try:
        return asyncio.run(run_listeners(listeners, settings))
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Received shutdown signal")
        return True

"""Egress dialing from a listener's assigned source address.

Every outbound connection is made from a fresh socket whose local address is
bound to the listener's egress address before connecting. Failures are
classified so the engine can answer with the right status code.
"""

import asyncio
import contextlib
import errno
import socket
from typing import Final

from loguru import logger

from ipv6_pool_proxy.core.exceptions import (
    ConnectionRefusedDialError,
    DialError,
    DialTimeoutError,
    NetworkUnreachableError,
)
from ipv6_pool_proxy.core.network import IPAddress

from .dns_handler import DNSResolver

UNREACHABLE_ERRNOS: Final = frozenset(
    {errno.ENETUNREACH, errno.EHOSTUNREACH, errno.EADDRNOTAVAIL, errno.ENETDOWN, errno.EHOSTDOWN}
)
DEFAULT_STREAM_LIMIT: Final = 64 * 1024


def address_family(address: IPAddress) -> int:
    """Socket family matching an IP address."""
    return socket.AF_INET6 if address.version == 6 else socket.AF_INET


def create_egress_socket(egress_address: IPAddress) -> socket.socket:
    """Create a non-blocking TCP socket bound to ``egress_address``.

    IP_FREEBIND lets the socket bind addresses of a subnet that is routed to
    this host but not configured on any interface.

    Raises:
        OSError: If the socket cannot be created or bound
    """
    sock = socket.socket(address_family(egress_address), socket.SOCK_STREAM)
    try:
        sock.setblocking(False)
        if hasattr(socket, "IP_FREEBIND"):
            with contextlib.suppress(OSError):
                sock.setsockopt(socket.SOL_IP, socket.IP_FREEBIND, 1)
        # Wildcard port: the kernel picks an ephemeral one
        sock.bind((str(egress_address), 0))
    except OSError:
        sock.close()
        raise
    return sock


def classify_connect_error(exc: OSError, target: str) -> DialError:
    """Map a connect failure onto the dial error taxonomy."""
    if exc.errno == errno.ECONNREFUSED:
        return ConnectionRefusedDialError(f"{target}: connection refused")
    if exc.errno == errno.ETIMEDOUT:
        return DialTimeoutError(f"{target}: connection timed out")
    if exc.errno in UNREACHABLE_ERRNOS:
        return NetworkUnreachableError(f"{target}: {exc.strerror or exc}")
    return DialError(f"{target}: {exc}")


async def dial(
    host: str,
    port: int,
    egress_address: IPAddress,
    resolver: DNSResolver,
    timeout: float,
    limit: int = DEFAULT_STREAM_LIMIT,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Connect to ``host:port`` from ``egress_address``.

    Resolved addresses are tried in order. ``timeout`` bounds the whole dial,
    so later addresses get whatever time the earlier attempts left over.

    Args:
        host: Target host name or IP literal
        port: Target port
        egress_address: Local source address for the connection
        resolver: Resolver for target host names
        timeout: Seconds allowed for connecting, across all addresses
        limit: StreamReader buffer limit for the returned reader

    Returns:
        Reader and writer of the established connection

    Raises:
        DialError: A subclass naming why the connection failed
    """
    family = address_family(egress_address)
    addresses = await resolver.resolve(host, family)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    last_error: DialError | None = None
    for address in addresses:
        target = f"{host} ({address}) port {port}"
        remaining = deadline - loop.time()
        if remaining <= 0:
            last_error = DialTimeoutError(f"{target}: no answer within {timeout:g}s")
            break
        try:
            sock = create_egress_socket(egress_address)
        except OSError as e:
            raise NetworkUnreachableError(f"cannot bind egress address {egress_address}: {e}") from e

        try:
            await asyncio.wait_for(loop.sock_connect(sock, (address, port)), remaining)
        except TimeoutError:
            sock.close()
            last_error = DialTimeoutError(f"{target}: no answer within {timeout:g}s")
        except OSError as e:
            sock.close()
            last_error = classify_connect_error(e, target)
        except BaseException:
            sock.close()
            raise
        else:
            logger.debug(f"Connected to {target} from {sock.getsockname()[0]}")
            return await asyncio.open_connection(sock=sock, limit=limit)

        logger.debug(f"Dial attempt failed: {last_error}")

    if last_error is None:
        last_error = DialError(f"no address to dial for {host}")
    raise last_error

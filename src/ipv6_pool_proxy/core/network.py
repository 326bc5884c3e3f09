"""Egress subnet handling and per-listener address allocation.

This module provides functionality for:
- Parsing the egress subnet literal
- Parsing listener bind addresses
- Generating a random address inside the subnet
- Building the immutable listener table at startup
- Checking whether the host can actually source traffic from the subnet

Every listening port gets exactly one egress address for the lifetime of the
process. The network bits of the subnet are kept and only the host bits are
randomized, at bit granularity, so any prefix length works.

Example:
    subnet = parse_subnet("2a12:f8c1:55:766::/64")
    listeners = allocate_listeners(["0.0.0.0:51080", "0.0.0.0:51081"], subnet)
    for listener in listeners:
        print(f"{listener.bind_port} -> {listener.egress_address}")
"""

import errno
import ipaddress
import random
import socket
from collections.abc import Iterable
from dataclasses import dataclass

import psutil
from loguru import logger

from ipv6_pool_proxy.core.exceptions import InvalidBindAddressError, InvalidSubnetError

# Type aliases
IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network

MAX_PORT = 65535


@dataclass(frozen=True)
class ListenerConfig:
    """One listening port and the egress address bound to it.

    Attributes:
        bind_host: Local IP address the listener accepts on
        bind_port: Local port the listener accepts on
        egress_address: Source address for every outbound connection
        prefix_len: Prefix length of the subnet the address was drawn from
    """

    bind_host: str
    bind_port: int
    egress_address: IPAddress
    prefix_len: int

    @property
    def bind_label(self) -> str:
        """Bind address formatted for logs (IPv6 hosts in brackets)."""
        if ":" in self.bind_host:
            return f"[{self.bind_host}]:{self.bind_port}"
        return f"{self.bind_host}:{self.bind_port}"


def parse_subnet(value: str) -> IPNetwork:
    """Parse a subnet literal such as ``2a12:f8c1:55:766::/64``.

    Host bits set in the literal are masked off.

    Raises:
        InvalidSubnetError: If the literal is not a valid network
    """
    try:
        return ipaddress.ip_network(value.strip(), strict=False)
    except ValueError as e:
        msg = f"invalid subnet {value!r}: {e}"
        raise InvalidSubnetError(msg) from e


def parse_bind_address(value: str) -> tuple[str, int]:
    """Parse ``host:port`` or ``[v6host]:port`` into a (host, port) pair.

    The host must be an IP literal.

    Raises:
        InvalidBindAddressError: If the address or port is invalid
    """
    text = value.strip()
    if text.startswith("["):
        host, sep, rest = text[1:].partition("]")
        if not sep or not rest.startswith(":"):
            msg = f"bind address not valid: {value!r}"
            raise InvalidBindAddressError(msg)
        port_text = rest[1:]
    else:
        host, sep, port_text = text.rpartition(":")
        if not sep or ":" in host:
            msg = f"bind address not valid: {value!r}"
            raise InvalidBindAddressError(msg)

    try:
        ip = ipaddress.ip_address(host)
    except ValueError as e:
        msg = f"bind address not valid: {value!r}"
        raise InvalidBindAddressError(msg) from e

    if not port_text.isdigit() or int(port_text) > MAX_PORT:
        msg = f"bind port not valid: {value!r}"
        raise InvalidBindAddressError(msg)

    return str(ip), int(port_text)


def generate_address(network: IPNetwork, rng: random.Random | None = None) -> IPAddress:
    """Return a random address inside ``network``.

    Args:
        network: Subnet whose network bits are preserved
        rng: Random source (defaults to the OS entropy source)

    Returns:
        An address with the subnet's prefix and random host bits
    """
    rng = rng or random.SystemRandom()
    host_bits = network.max_prefixlen - network.prefixlen
    host_part = rng.getrandbits(host_bits) if host_bits else 0
    # ip_address(int) would pick IPv4 for small values, so keep the family explicit
    return type(network.network_address)(int(network.network_address) | host_part)


def allocate_listeners(
    bind_addrs: Iterable[str],
    network: IPNetwork,
    rng: random.Random | None = None,
) -> list[ListenerConfig]:
    """Build the listener table: one random egress address per bind address.

    Invalid bind addresses are skipped with a warning, the rest still start.

    Args:
        bind_addrs: Bind address literals from the command line
        network: Egress subnet
        rng: Random source (defaults to the OS entropy source)

    Returns:
        One ListenerConfig per valid bind address, in input order
    """
    rng = rng or random.SystemRandom()
    listeners: list[ListenerConfig] = []
    for bind_addr in bind_addrs:
        try:
            host, port = parse_bind_address(bind_addr)
        except InvalidBindAddressError as e:
            logger.warning(str(e))
            continue

        listeners.append(
            ListenerConfig(
                bind_host=host,
                bind_port=port,
                egress_address=generate_address(network, rng),
                prefix_len=network.prefixlen,
            )
        )
    return listeners


def can_bind_egress(address: IPAddress) -> bool:
    """Check whether an outbound socket can be bound to ``address``.

    The probe runs without IP_FREEBIND, so binding fails with
    EADDRNOTAVAIL when the host neither carries the address nor routes the
    subnet locally (``ip route add local <subnet> dev lo``), in which case
    replies to the egress address are unlikely to reach this host.
    """
    family = socket.AF_INET6 if address.version == 6 else socket.AF_INET
    try:
        with socket.socket(family, socket.SOCK_STREAM) as probe:
            probe.bind((str(address), 0))
    except OSError as e:
        if e.errno in (errno.EADDRNOTAVAIL, errno.EAFNOSUPPORT):
            return False
        raise
    return True


def subnet_interfaces(network: IPNetwork) -> list[str]:
    """Return the names of local interfaces with an address inside ``network``."""
    family = socket.AF_INET6 if network.version == 6 else socket.AF_INET
    names = []
    for name, addrs in psutil.net_if_addrs().items():
        for addr in addrs:
            if addr.family != family:
                continue
            # Strip the scope suffix of link-local addresses (fe80::1%eth0)
            try:
                ip = ipaddress.ip_address(addr.address.split("%", 1)[0])
            except ValueError:
                continue
            if ip in network:
                names.append(name)
                break
    return names

"""DNS resolution using the system resolver and dnspython."""

import asyncio
import ipaddress
import socket
import time
from collections.abc import Sequence
from typing import NoReturn

import dns.asyncresolver
import dns.exception
from loguru import logger

from ipv6_pool_proxy.core.config import DEFAULT_NAMESERVERS
from ipv6_pool_proxy.core.exceptions import DNSResolutionError

# DNS resolver constants
DEFAULT_TIMEOUT = 1.0  # seconds
DEFAULT_LIFETIME = 3.0  # seconds
SYSTEM_CACHE_TTL = 60.0  # seconds, getaddrinfo does not report TTLs
MAX_CACHE_ENTRIES = 4096


class DNSResolver:
    """Resolve target hosts to addresses of the egress address family.

    The system resolver is tried first, then the fallback nameservers via
    dnspython. Answers are cached until their TTL runs out.
    """

    def __init__(
        self,
        nameservers: Sequence[str] = DEFAULT_NAMESERVERS,
        timeout: float = DEFAULT_TIMEOUT,
        lifetime: float = DEFAULT_LIFETIME,
    ) -> None:
        """Initialize the resolver.

        Args:
            nameservers: Fallback nameservers; empty disables the fallback
            timeout: Per-nameserver query timeout in seconds
            lifetime: Total time budget of one fallback lookup in seconds
        """
        self._cache: dict[tuple[str, int], tuple[list[str], float]] = {}
        self.resolver: dns.asyncresolver.Resolver | None = None
        if nameservers:
            self.resolver = dns.asyncresolver.Resolver(configure=False)
            self.resolver.nameservers = list(nameservers)
            self.resolver.timeout = timeout
            self.resolver.lifetime = lifetime

    async def _try_system_dns(self, domain: str, family: int) -> list[str] | None:
        """Try resolving using system DNS."""
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(domain, None, family=family, type=socket.SOCK_STREAM)
        except socket.gaierror as e:
            logger.debug(f"System DNS resolution failed for {domain}: {e}")
            return None

        addresses = list(dict.fromkeys(str(info[4][0]) for info in infos))
        if not addresses:
            return None
        self._store(domain, family, addresses, time.time() + SYSTEM_CACHE_TTL)
        return addresses

    async def _try_configured_resolver(self, domain: str, family: int) -> list[str] | None:
        """Try resolving using the fallback nameservers."""
        if self.resolver is None:
            return None

        rdtype = "AAAA" if family == socket.AF_INET6 else "A"
        try:
            answer = await self.resolver.resolve(domain, rdtype)
        except dns.exception.DNSException as e:
            logger.debug(f"Configured resolver failed for {domain} ({rdtype}): {e}")
            return None

        addresses = [rdata.to_text() for rdata in answer]
        if not addresses:
            return None
        self._store(domain, family, addresses, answer.expiration)
        return addresses

    def _store(self, domain: str, family: int, addresses: list[str], expires: float) -> None:
        if len(self._cache) >= MAX_CACHE_ENTRIES:
            self._cache.clear()
        self._cache[(domain, family)] = (addresses, expires)

    def _cached(self, domain: str, family: int) -> list[str] | None:
        entry = self._cache.get((domain, family))
        if entry is None:
            return None
        addresses, expires = entry
        if expires <= time.time():
            del self._cache[(domain, family)]
            return None
        return addresses

    def _raise_dns_error(self, msg: str) -> NoReturn:
        """Raise a DNS resolution error.

        Args:
            msg: Error message

        Raises:
            DNSResolutionError: Always raised with the given message
        """
        raise DNSResolutionError(msg)

    async def resolve(self, domain: str, family: int) -> list[str]:
        """Resolve a host to addresses of one address family.

        IP literals are returned as-is when their family matches.

        Args:
            domain: Host name or IP literal
            family: ``socket.AF_INET6`` or ``socket.AF_INET``

        Returns:
            list[str]: Resolved addresses, in resolver order

        Raises:
            DNSResolutionError: If no address of the family can be found
        """
        wanted = 6 if family == socket.AF_INET6 else 4
        try:
            literal = ipaddress.ip_address(domain)
        except ValueError:
            literal = None
        if literal is not None:
            if literal.version != wanted:
                self._raise_dns_error(f"{domain} is not an IPv{wanted} address")
            return [domain]

        if addresses := self._cached(domain, family):
            return addresses

        # Try each resolution method in order
        if addresses := await self._try_system_dns(domain, family):
            return addresses

        if addresses := await self._try_configured_resolver(domain, family):
            return addresses

        error_msg = f"Could not resolve {domain} to an IPv{wanted} address"
        logger.info(error_msg)
        self._raise_dns_error(error_msg)

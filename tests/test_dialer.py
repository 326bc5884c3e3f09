import asyncio
import errno
import socket
from ipaddress import IPv4Address

import pytest

from ipv6_pool_proxy.core.exceptions import (
    ConnectionRefusedDialError,
    DialError,
    DialTimeoutError,
    NetworkUnreachableError,
)
from ipv6_pool_proxy.core.lib.dialer import classify_connect_error, create_egress_socket, dial
from ipv6_pool_proxy.core.lib.dns_handler import DNSResolver

from .support import echo_responder, running_origin


@pytest.mark.parametrize(
    ("code", "expected"),
    [
        (errno.ECONNREFUSED, ConnectionRefusedDialError),
        (errno.ETIMEDOUT, DialTimeoutError),
        (errno.ENETUNREACH, NetworkUnreachableError),
        (errno.EHOSTUNREACH, NetworkUnreachableError),
        (errno.EADDRNOTAVAIL, NetworkUnreachableError),
    ],
)
def test_classify_connect_error(code, expected):
    error = classify_connect_error(OSError(code, "boom"), "example.test port 80")
    assert type(error) is expected
    assert "example.test" in str(error)


def test_classify_unknown_error_is_generic():
    error = classify_connect_error(OSError(errno.EPERM, "nope"), "t")
    assert type(error) is DialError
    assert error.status == 502


def test_timeout_maps_to_504():
    assert DialTimeoutError("t").status == 504
    assert ConnectionRefusedDialError("t").status == 502


def test_egress_socket_is_bound_to_the_address():
    sock = create_egress_socket(IPv4Address("127.0.0.44"))
    try:
        assert sock.getsockname()[0] == "127.0.0.44"
        assert not sock.getblocking()
    finally:
        sock.close()


def test_dial_uses_egress_address():
    async def scenario():
        async with running_origin(echo_responder) as origin:
            reader, writer = await dial(
                "127.0.0.1", origin.port, IPv4Address("127.0.0.45"), DNSResolver(nameservers=()), 2.0
            )
            assert writer.get_extra_info("sockname")[0] == "127.0.0.45"
            writer.write(b"hi")
            writer.write_eof()
            assert await reader.read() == b"hi"
            writer.close()
        return origin.peers

    assert asyncio.run(scenario()) == ["127.0.0.45"]


def test_dial_refused():
    with socket.socket() as probe:
        probe.bind(("127.0.0.1", 0))
        closed_port = probe.getsockname()[1]

    async def scenario():
        with pytest.raises(ConnectionRefusedDialError):
            await dial("127.0.0.1", closed_port, IPv4Address("127.0.0.46"), DNSResolver(nameservers=()), 2.0)

    asyncio.run(scenario())


def test_dial_wrong_family_target():
    async def scenario():
        with pytest.raises(DialError):
            await dial("::1", 80, IPv4Address("127.0.0.47"), DNSResolver(nameservers=()), 2.0)

    asyncio.run(scenario())


class FixedResolver(DNSResolver):
    def __init__(self, addresses) -> None:
        super().__init__(nameservers=())
        self.addresses = addresses

    async def resolve(self, domain: str, family: int) -> list[str]:
        return list(self.addresses)


def test_connect_timeout_bounds_the_whole_dial(monkeypatch):
    attempts = []

    async def hanging_connect(sock, address):
        attempts.append(address)
        await asyncio.sleep(10)

    resolver = FixedResolver(["127.0.0.1", "127.0.0.2", "127.0.0.3"])

    async def scenario():
        loop = asyncio.get_running_loop()
        monkeypatch.setattr(loop, "sock_connect", hanging_connect)
        started = loop.time()
        with pytest.raises(DialTimeoutError):
            await dial("multi.test", 80, IPv4Address("127.0.0.48"), resolver, 0.3)
        return loop.time() - started

    elapsed = asyncio.run(scenario())
    assert elapsed < 0.6
    assert attempts[0] == ("127.0.0.1", 80)

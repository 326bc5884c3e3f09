"""Shared helpers for the proxy tests.

Async scenarios run inside plain test functions with ``asyncio.run``. The
origin servers and proxy listeners all live on loopback; egress addresses
come from 127.0.0.0/8 so the source address of every proxied connection can
be observed by the origin.
"""

import asyncio
import contextlib
from collections.abc import AsyncIterator, Awaitable, Callable
from ipaddress import IPv4Address

from ipv6_pool_proxy.core.config import ProxySettings
from ipv6_pool_proxy.core.lib.dns_handler import DNSResolver
from ipv6_pool_proxy.core.lib.proxy_server import start_listener
from ipv6_pool_proxy.core.lib.proxy_stats import ProxyStats
from ipv6_pool_proxy.core.network import ListenerConfig

Responder = Callable[[asyncio.StreamReader, asyncio.StreamWriter, "Origin"], Awaitable[None]]

TEST_SETTINGS = ProxySettings(
    header_timeout=2.0,
    connect_timeout=2.0,
    idle_timeout=5.0,
    fallback_nameservers=(),
)


class Origin:
    """Loopback origin server that records who connected and what it read."""

    def __init__(self, responder: Responder) -> None:
        self.responder = responder
        self.peers: list[str] = []
        self.heads: list[bytes] = []
        self.bodies: list[bytes] = []
        self.port = 0
        self._server: asyncio.Server | None = None

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.peers.append(writer.get_extra_info("peername")[0])
        try:
            await self.responder(reader, writer, self)
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        finally:
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()


def _content_length(head: bytes) -> int:
    for line in head.split(b"\r\n")[1:]:
        name, _, value = line.partition(b":")
        if name.strip().lower() == b"content-length":
            return int(value.strip())
    return 0


async def read_http_body(reader: asyncio.StreamReader, head: bytes) -> bytes:
    """Read the body announced by ``head`` (Content-Length or chunked)."""
    if b"transfer-encoding: chunked" in head.lower():
        return await reader.readuntil(b"0\r\n\r\n")
    length = _content_length(head)
    return await reader.readexactly(length) if length else b""


def http_responder(
    body: bytes = b"hello from origin",
    status: str = "200 OK",
    extra_headers: str = "",
) -> Responder:
    """Answer every request on a connection with a fixed response."""

    async def respond(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, origin: Origin) -> None:
        while True:
            try:
                head = await reader.readuntil(b"\r\n\r\n")
            except asyncio.IncompleteReadError:
                return
            origin.heads.append(head)
            origin.bodies.append(await read_http_body(reader, head))
            writer.write(
                f"HTTP/1.1 {status}\r\nContent-Length: {len(body)}\r\n{extra_headers}\r\n".encode()
                + body
            )
            await writer.drain()
            if b"connection: close" in head.lower():
                return

    return respond


async def echo_responder(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, _: Origin) -> None:
    """Echo bytes back until the peer half-closes, then close."""
    while data := await reader.read(65536):
        writer.write(data)
        await writer.drain()


@contextlib.asynccontextmanager
async def running_origin(responder: Responder) -> AsyncIterator[Origin]:
    origin = Origin(responder)
    await origin.start()
    try:
        yield origin
    finally:
        await origin.stop()


def loopback_listener(egress: str = "127.0.0.7") -> ListenerConfig:
    return ListenerConfig(
        bind_host="127.0.0.1",
        bind_port=0,
        egress_address=IPv4Address(egress),
        prefix_len=8,
    )


@contextlib.asynccontextmanager
async def running_proxy(
    listener: ListenerConfig | None = None,
    settings: ProxySettings = TEST_SETTINGS,
    resolver: DNSResolver | None = None,
    stats: ProxyStats | None = None,
) -> AsyncIterator[int]:
    """Start a proxy listener on an ephemeral port and yield the port."""
    server = await start_listener(
        listener or loopback_listener(),
        settings,
        resolver or DNSResolver(nameservers=()),
        stats or ProxyStats(),
    )
    try:
        yield server.sockets[0].getsockname()[1]
    finally:
        server.close()
        await server.wait_closed()


async def read_response(reader: asyncio.StreamReader) -> tuple[bytes, bytes]:
    """Read one Content-Length framed response; return (head, body)."""
    head = await reader.readuntil(b"\r\n\r\n")
    length = _content_length(head)
    body = await reader.readexactly(length) if length else b""
    return head, body

"""HTTP proxy engine: one accepted client connection from start to finish.

This module implements the per-connection lifecycle of the proxy:
- Reading the request head with size and time limits
- Dispatching on the proxy mode (plain forward or CONNECT tunnel)
- Dialing the destination from the listener's egress address
- Forwarding request and response bodies with correct framing
- Keep-alive when both client and origin allow it
- Mapping failures onto 400/502/504 replies

A session never affects another session or its listener: every error is
handled inside `ProxyEngine.handle`.

Example:
    engine = ProxyEngine(listener, ProxySettings())
    server = await asyncio.start_server(engine.handle, "0.0.0.0", 51080)
"""

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import Final

from loguru import logger

from ipv6_pool_proxy.core.config import ProxySettings
from ipv6_pool_proxy.core.exceptions import (
    DialError,
    MessageFramingError,
    ProxyError,
    RequestParseError,
    TunnelTargetError,
    UpstreamProtocolError,
    UpstreamTimeoutError,
)
from ipv6_pool_proxy.core.network import ListenerConfig
from ipv6_pool_proxy.core.utils.utils import format_host_port

from .dialer import dial
from .dns_handler import DNSResolver
from .http_parser import (
    HEAD_END,
    BodyKind,
    Framing,
    ProxyMode,
    ProxyRequest,
    ResponseHead,
    parse_request_head,
    parse_response_head,
    request_framing,
    response_framing,
)
from .proxy_stats import ProxyStats, proxy_stats
from .relay import close_writer, copy_chunked, copy_exact, copy_until_eof, relay

CONNECT_ESTABLISHED: Final = b"HTTP/1.1 200 Connection Established\r\n\r\n"
REQUEST_BODY_GRACE: Final = 1.0  # Seconds to finish uploading once the response is done


@dataclass
class ConnectionSession:
    """State of one client connection.

    Attributes:
        client: Peer address of the client
        listener: Owning listener (read-only)
        target: Destination (host, port) of the current request
        mode: Proxy mode chosen from the first request
        bytes_up: Bytes sent from client to destination
        bytes_down: Bytes sent from destination to client
        exchanges: Requests served on this connection
    """

    client: str
    listener: ListenerConfig
    target: tuple[str, int] | None = None
    mode: ProxyMode | None = None
    bytes_up: int = 0
    bytes_down: int = 0
    exchanges: int = 0

    @property
    def label(self) -> str:
        """Short description for log lines."""
        target = format_host_port(*self.target) if self.target else "-"
        return f"{self.client} -> {target} via {self.listener.egress_address}"


@dataclass
class Upstream:
    """An open connection to an origin, reusable for the same host and port."""

    host: str
    port: int
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter = field(repr=False)

    def serves(self, request: ProxyRequest) -> bool:
        """Whether this connection can carry ``request``."""
        return (
            (self.host, self.port) == (request.host, request.port)
            and not self.writer.is_closing()
            and not self.reader.at_eof()
        )


def error_response(status: int, reason: str, detail: str = "") -> bytes:
    """Build a complete error reply that closes the connection."""
    body = f"{status} {reason}\r\n{detail}\r\n".encode("latin-1", errors="replace")
    head = (
        f"HTTP/1.1 {status} {reason}\r\n"
        "Content-Type: text/plain; charset=iso-8859-1\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n"
        "\r\n"
    )
    return head.encode("latin-1") + body


class ProxyEngine:
    """Serve client connections accepted by one listener."""

    def __init__(
        self,
        listener: ListenerConfig,
        settings: ProxySettings,
        resolver: DNSResolver | None = None,
        stats: ProxyStats = proxy_stats,
    ) -> None:
        """Initialize the engine.

        Args:
            listener: Listener whose egress address all dials use
            settings: Limits and timeouts
            resolver: Resolver for target hosts (created from settings if omitted)
            stats: Process-wide statistics
        """
        self.listener = listener
        self.settings = settings
        self.resolver = resolver or DNSResolver(settings.fallback_nameservers)
        self.stats = stats

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Handle one accepted client connection until it is finished."""
        peer = writer.get_extra_info("peername")
        client = format_host_port(peer[0], peer[1]) if peer else "unknown"
        session = ConnectionSession(client=client, listener=self.listener)
        self.stats.session_started()
        logger.debug(f"Accepted {client} on {self.listener.bind_label}")
        try:
            await self._serve(session, reader, writer)
        except (ConnectionError, TimeoutError) as e:
            logger.debug(f"Session {session.label} ended: {e!r}")
        except Exception:
            logger.exception(f"Unexpected error in session {session.label}")
        finally:
            self.stats.session_ended()
            self.stats.update_bytes(session.bytes_up, session.bytes_down)
            await close_writer(writer)
            logger.debug(
                f"Closed {session.label}: {session.exchanges} exchanges, "
                f"{session.bytes_up} bytes up, {session.bytes_down} bytes down"
            )

    async def _serve(
        self, session: ConnectionSession, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        request = await self._read_request(reader, writer, first=True)
        if request is None:
            return

        session.mode = request.mode
        if request.mode is ProxyMode.TUNNEL:
            await self._tunnel(session, request, reader, writer)
        else:
            await self._forward(session, request, reader, writer)

    async def _read_request(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, first: bool
    ) -> ProxyRequest | None:
        """Read and parse the next request head; None ends the session.

        On the first request a timeout or truncated head is answered with 400.
        Between keep-alive requests they just close the connection.
        """
        try:
            raw = await asyncio.wait_for(reader.readuntil(HEAD_END), self.settings.header_timeout)
        except asyncio.IncompleteReadError as e:
            if first and e.partial.strip():
                await self._send_error(writer, RequestParseError("incomplete request head"))
            return None
        except asyncio.LimitOverrunError:
            await self._send_error(writer, RequestParseError("request head too large"))
            return None
        except TimeoutError:
            if first:
                await self._send_error(writer, RequestParseError("request head timed out"))
            return None

        try:
            return parse_request_head(raw)
        except TunnelTargetError as e:
            logger.debug(f"Closing tunnel request with bad target: {e}")
            return None
        except RequestParseError as e:
            await self._send_error(writer, e)
            return None

    async def _send_error(self, writer: asyncio.StreamWriter, error: ProxyError) -> None:
        logger.debug(f"Replying {error.status} {error.reason}: {error}")
        if writer.is_closing():
            return
        with contextlib.suppress(ConnectionError):
            writer.write(error_response(error.status, error.reason, str(error)))
            await writer.drain()

    async def _dial(
        self, host: str, port: int
    ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        try:
            return await dial(
                host,
                port,
                self.listener.egress_address,
                self.resolver,
                self.settings.connect_timeout,
                limit=self.settings.max_header_size,
            )
        except DialError as e:
            self.stats.dial_failed(type(e).__name__)
            logger.info(f"Dial to {format_host_port(host, port)} failed: {e}")
            raise

    async def _tunnel(
        self,
        session: ConnectionSession,
        request: ProxyRequest,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Serve a CONNECT request as an opaque tunnel."""
        session.target = (request.host, request.port)
        session.exchanges += 1
        try:
            up_reader, up_writer = await self._dial(request.host, request.port)
        except DialError as e:
            await self._send_error(writer, e)
            return

        writer.write(CONNECT_ESTABLISHED)
        await writer.drain()
        logger.debug(f"Tunnel open {session.label}")

        result = await relay(
            reader,
            writer,
            up_reader,
            up_writer,
            idle_timeout=self.settings.idle_timeout,
            total_timeout=self.settings.total_timeout,
            buffer_size=self.settings.buffer_size,
        )
        session.bytes_up += result.bytes_up
        session.bytes_down += result.bytes_down
        logger.debug(f"Tunnel {session.label} finished: {result.outcome.value}")

    async def _forward(
        self,
        session: ConnectionSession,
        request: ProxyRequest | None,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Serve plain forward requests until the connection can't be reused."""
        upstream: Upstream | None = None
        try:
            while request is not None:
                if request.mode is ProxyMode.TUNNEL:
                    # CONNECT after plain requests on a persistent connection
                    if upstream is not None:
                        await close_writer(upstream.writer)
                        upstream = None
                    await self._tunnel(session, request, reader, writer)
                    return

                session.target = (request.host, request.port)
                session.exchanges += 1
                keep_alive, upstream = await self._exchange(session, request, reader, writer, upstream)
                if not keep_alive:
                    return
                request = await self._read_request(reader, writer, first=False)
        finally:
            if upstream is not None:
                await close_writer(upstream.writer)

    async def _exchange(
        self,
        session: ConnectionSession,
        request: ProxyRequest,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        upstream: Upstream | None,
    ) -> tuple[bool, Upstream | None]:
        """Forward one request and its response.

        Returns:
            Whether the client connection may carry another request, and the
            upstream connection to reuse for it (None once closed)
        """
        try:
            body = request_framing(request)
        except RequestParseError as e:
            await self._send_error(writer, e)
            return False, upstream

        if upstream is not None and not upstream.serves(request):
            await close_writer(upstream.writer)
            upstream = None
        if upstream is None:
            try:
                up_reader, up_writer = await self._dial(request.host, request.port)
            except DialError as e:
                await self._send_error(writer, e)
                return False, None
            upstream = Upstream(request.host, request.port, up_reader, up_writer)

        logger.debug(f"{request.method} {request.path} {session.label}")
        upstream.writer.write(request.origin_head())
        sender = asyncio.create_task(self._send_request_body(session, body, reader, upstream.writer))
        responded = False
        try:
            response = await self._read_response(upstream, request, writer)
            responded = True
            session.bytes_down += len(response.raw)

            if response.status == 101:
                # Protocol switch (e.g. WebSocket): the rest is opaque
                await sender
                result = await relay(
                    reader,
                    writer,
                    upstream.reader,
                    upstream.writer,
                    idle_timeout=self.settings.idle_timeout,
                    total_timeout=self.settings.total_timeout,
                    buffer_size=self.settings.buffer_size,
                )
                session.bytes_up += result.bytes_up
                session.bytes_down += result.bytes_down
                return False, None

            framing = response_framing(request.method, response)
            session.bytes_down += await self._copy_body(framing, upstream.reader, writer)

            done, _ = await asyncio.wait({sender}, timeout=REQUEST_BODY_GRACE)
            if not done:
                logger.debug(f"Response finished before request body on {session.label}")
                return False, upstream
            sender.result()

            keep_alive = (
                request.keep_alive and response.keep_alive and body.reusable and framing.reusable
            )
            return keep_alive, upstream
        except ProxyError as e:
            error = self._request_error(sender) or e
            if responded:
                logger.debug(f"Dropping {session.label} mid-response: {error}")
            else:
                await self._send_error(writer, error)
            return False, upstream
        except (ConnectionError, TimeoutError) as e:
            logger.debug(f"Dropping {session.label}: {e!r}")
            return False, upstream
        finally:
            if not sender.done():
                sender.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await sender

    @staticmethod
    def _request_error(sender: asyncio.Task) -> RequestParseError | None:
        """The request body error that broke the exchange, if any."""
        if not sender.done() or sender.cancelled():
            return None
        error = sender.exception()
        return error if isinstance(error, RequestParseError) else None

    async def _send_request_body(
        self,
        session: ConnectionSession,
        framing: Framing,
        reader: asyncio.StreamReader,
        upstream_writer: asyncio.StreamWriter,
    ) -> None:
        """Copy the request body upstream; a bad body aborts the upstream side."""
        try:
            session.bytes_up += await self._copy_body(framing, reader, upstream_writer)
            await upstream_writer.drain()
        except MessageFramingError as e:
            upstream_writer.transport.abort()
            raise RequestParseError(f"bad request body: {e}") from e
        except ConnectionError:
            upstream_writer.transport.abort()
            raise
        except TimeoutError as e:
            upstream_writer.transport.abort()
            raise RequestParseError("request body timed out") from e

    async def _copy_body(
        self, framing: Framing, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> int:
        timeout = self.settings.idle_timeout
        size = self.settings.buffer_size
        if framing.kind is BodyKind.LENGTH:
            return await copy_exact(reader, writer, framing.length, timeout, size)
        if framing.kind is BodyKind.CHUNKED:
            return await copy_chunked(reader, writer, timeout, size)
        if framing.kind is BodyKind.UNTIL_CLOSE:
            return await copy_until_eof(reader, writer, timeout, size)
        return 0

    async def _read_response(
        self, upstream: Upstream, request: ProxyRequest, writer: asyncio.StreamWriter
    ) -> ResponseHead:
        """Read the final response head, relaying interim 1xx responses.

        The head bytes are written to the client unmodified.
        """
        while True:
            try:
                raw = await asyncio.wait_for(
                    upstream.reader.readuntil(HEAD_END), self.settings.idle_timeout
                )
            except asyncio.IncompleteReadError as e:
                msg = f"{request.authority} closed the connection before responding"
                raise UpstreamProtocolError(msg) from e
            except asyncio.LimitOverrunError as e:
                msg = f"{request.authority} sent an oversized response head"
                raise UpstreamProtocolError(msg) from e
            except TimeoutError as e:
                msg = f"{request.authority} did not respond within {self.settings.idle_timeout:g}s"
                raise UpstreamTimeoutError(msg) from e

            response = parse_response_head(raw)
            writer.write(response.raw)
            await writer.drain()
            if not response.interim:
                return response

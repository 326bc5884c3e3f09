"""Byte relaying between a client and its egress connection.

This module implements the copy phase of a proxy session:
- `ConnectionRelay` copies both directions at once until both sides have
  finished, half-closing each destination as its source reaches EOF
- An idle timeout (and an optional total timeout) tears a stalled relay down
- Framed copy helpers move exactly one HTTP message body for plain forwards

Example:
    result = await relay(client_reader, client_writer, up_reader, up_writer, idle_timeout=300)
    if result.outcome is RelayOutcome.IDLE_TIMEOUT:
        logger.debug("tunnel went idle")
"""

import asyncio
import contextlib
import re
from dataclasses import dataclass
from enum import Enum
from typing import Final

from loguru import logger

from ipv6_pool_proxy.core.exceptions import MessageFramingError

DEFAULT_BUFFER_SIZE: Final = 64 * 1024
CHUNK_SIZE_RE: Final = re.compile(rb"^[0-9A-Fa-f]+$")


class RelayOutcome(Enum):
    """Why a relay finished."""

    COMPLETED = "completed"
    IDLE_TIMEOUT = "idle-timeout"
    TOTAL_TIMEOUT = "total-timeout"
    ERROR = "error"


@dataclass
class RelayResult:
    """Outcome of a relay and the bytes it moved.

    Attributes:
        outcome: Why the relay finished
        bytes_up: Bytes copied from client to server
        bytes_down: Bytes copied from server to client
    """

    outcome: RelayOutcome
    bytes_up: int = 0
    bytes_down: int = 0


async def close_writer(writer: asyncio.StreamWriter, abort: bool = False) -> None:
    """Close a stream, discarding unsent data when ``abort`` is set."""
    if abort:
        writer.transport.abort()
    elif not writer.is_closing():
        writer.close()
    with contextlib.suppress(OSError, asyncio.CancelledError):
        await writer.wait_closed()


def half_close(writer: asyncio.StreamWriter) -> None:
    """Shut down the write side of a stream, leaving the read side open."""
    if writer.is_closing() or not writer.can_write_eof():
        return
    with contextlib.suppress(OSError, RuntimeError):
        writer.write_eof()


class ConnectionRelay:
    """Bidirectional copy between a client and its upstream connection."""

    def __init__(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        upstream_reader: asyncio.StreamReader,
        upstream_writer: asyncio.StreamWriter,
        *,
        idle_timeout: float,
        total_timeout: float | None = None,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
    ) -> None:
        """Initialize the relay.

        Args:
            client_reader: Stream from the client
            client_writer: Stream to the client
            upstream_reader: Stream from the destination
            upstream_writer: Stream to the destination
            idle_timeout: Seconds without traffic in either direction before closing
            total_timeout: Optional cap on the relay's lifetime in seconds
            buffer_size: Maximum bytes per read
        """
        self.client_reader = client_reader
        self.client_writer = client_writer
        self.upstream_reader = upstream_reader
        self.upstream_writer = upstream_writer
        self.idle_timeout = idle_timeout
        self.total_timeout = total_timeout
        self.buffer_size = buffer_size
        self.bytes_up = 0
        self.bytes_down = 0
        self._last_activity = 0.0

    async def _pump(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, upstream: bool
    ) -> None:
        """Copy one direction until EOF, then half-close its destination."""
        loop = asyncio.get_running_loop()
        while data := await reader.read(self.buffer_size):
            writer.write(data)
            await writer.drain()
            self._last_activity = loop.time()
            if upstream:
                self.bytes_up += len(data)
            else:
                self.bytes_down += len(data)
        half_close(writer)

    def _next_wakeup(self, now: float, started: float) -> float:
        deadline = self._last_activity + self.idle_timeout
        if self.total_timeout is not None:
            deadline = min(deadline, started + self.total_timeout)
        return max(deadline - now, 0.0)

    async def run(self) -> RelayResult:
        """Relay until both directions end or a timeout fires.

        Both streams are closed on return.
        """
        loop = asyncio.get_running_loop()
        started = self._last_activity = loop.time()
        pending = {
            asyncio.create_task(self._pump(self.client_reader, self.upstream_writer, True)),
            asyncio.create_task(self._pump(self.upstream_reader, self.client_writer, False)),
        }
        outcome = RelayOutcome.COMPLETED
        try:
            while pending:
                done, pending = await asyncio.wait(
                    pending,
                    timeout=self._next_wakeup(loop.time(), started),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                failed = [task for task in done if task.exception() is not None]
                if failed:
                    logger.debug(f"Relay stopped on I/O error: {failed[0].exception()!r}")
                    outcome = RelayOutcome.ERROR
                    break
                if not pending:
                    break

                now = loop.time()
                if self.total_timeout is not None and now - started >= self.total_timeout:
                    outcome = RelayOutcome.TOTAL_TIMEOUT
                    break
                if now - self._last_activity >= self.idle_timeout:
                    outcome = RelayOutcome.IDLE_TIMEOUT
                    break
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            abort = outcome is not RelayOutcome.COMPLETED
            await close_writer(self.upstream_writer, abort=abort)
            await close_writer(self.client_writer, abort=abort)

        return RelayResult(outcome, self.bytes_up, self.bytes_down)


async def relay(
    client_reader: asyncio.StreamReader,
    client_writer: asyncio.StreamWriter,
    upstream_reader: asyncio.StreamReader,
    upstream_writer: asyncio.StreamWriter,
    *,
    idle_timeout: float,
    total_timeout: float | None = None,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
) -> RelayResult:
    """Run a `ConnectionRelay` over the given streams."""
    return await ConnectionRelay(
        client_reader,
        client_writer,
        upstream_reader,
        upstream_writer,
        idle_timeout=idle_timeout,
        total_timeout=total_timeout,
        buffer_size=buffer_size,
    ).run()


async def copy_exact(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    length: int,
    idle_timeout: float,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
) -> int:
    """Copy exactly ``length`` bytes.

    Raises:
        MessageFramingError: If the source ends early
        TimeoutError: If a read stalls for ``idle_timeout`` seconds
    """
    remaining = length
    while remaining:
        data = await asyncio.wait_for(reader.read(min(remaining, buffer_size)), idle_timeout)
        if not data:
            msg = f"body ended {remaining} bytes short of {length}"
            raise MessageFramingError(msg)
        writer.write(data)
        await writer.drain()
        remaining -= len(data)
    return length


async def copy_until_eof(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    idle_timeout: float,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
) -> int:
    """Copy until the source closes; return the number of bytes copied."""
    total = 0
    while data := await asyncio.wait_for(reader.read(buffer_size), idle_timeout):
        writer.write(data)
        await writer.drain()
        total += len(data)
    return total


async def _read_line(reader: asyncio.StreamReader, idle_timeout: float) -> bytes:
    try:
        return await asyncio.wait_for(reader.readuntil(b"\n"), idle_timeout)
    except asyncio.IncompleteReadError as e:
        msg = "chunked body ended early"
        raise MessageFramingError(msg) from e
    except asyncio.LimitOverrunError as e:
        msg = "chunk line too long"
        raise MessageFramingError(msg) from e


async def copy_chunked(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    idle_timeout: float,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
) -> int:
    """Copy a chunked body verbatim, including the last chunk and trailers.

    Returns:
        int: Bytes copied, framing included

    Raises:
        MessageFramingError: For a malformed chunk size line or early EOF
        TimeoutError: If a read stalls for ``idle_timeout`` seconds
    """
    total = 0
    while True:
        line = await _read_line(reader, idle_timeout)
        size_text = line.split(b";", 1)[0].strip()
        if not CHUNK_SIZE_RE.match(size_text):
            msg = f"malformed chunk size line {line[:40]!r}"
            raise MessageFramingError(msg)
        writer.write(line)
        total += len(line)
        size = int(size_text, 16)
        if size == 0:
            break
        # Chunk data plus its trailing CRLF
        total += await copy_exact(reader, writer, size + 2, idle_timeout, buffer_size)

    # Trailer section ends with an empty line
    while True:
        line = await _read_line(reader, idle_timeout)
        writer.write(line)
        total += len(line)
        if line in (b"\r\n", b"\n"):
            break
    await writer.drain()
    return total

"""HTTP/1.x message head parsing for the forward proxy.

This module turns raw request and response heads into structured objects and
answers the framing questions the proxy engine needs:
- Which mode a request selects (plain forward or CONNECT tunnel)
- Which host and port the request targets
- How the request is rewritten before it reaches the origin
- How long each message body is (Content-Length, chunked, or until close)
- Whether a connection may stay open for another exchange

Parsing is pure: nothing here reads from or writes to a socket.

Example:
    request = parse_request_head(b"GET http://example.test/ HTTP/1.1\\r\\n\\r\\n")
    assert request.mode is ProxyMode.DIRECT
    assert (request.host, request.port, request.path) == ("example.test", 80, "/")
"""

import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Final
from urllib.parse import urlsplit

from ipv6_pool_proxy.core.exceptions import (
    RequestParseError,
    TunnelTargetError,
    UpstreamProtocolError,
)

HEAD_END: Final = b"\r\n\r\n"
CRLF: Final = "\r\n"
DEFAULT_HTTP_PORT: Final = 80
MAX_PORT: Final = 65535

# Header names and methods are RFC 9110 tokens
TOKEN_RE: Final = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
VERSION_RE: Final = re.compile(r"^HTTP/(\d)\.(\d)$")
STATUS_RE: Final = re.compile(r"^\d{3}$")
CONTENT_LENGTH_RE: Final = re.compile(r"^\d+$")

# Headers meant for this proxy, never forwarded to the origin
PROXY_HEADERS: Final = frozenset({"proxy-connection", "proxy-authorization", "proxy-authenticate"})


class ProxyMode(Enum):
    """How a session is served, chosen once from the first request."""

    DIRECT = "direct"
    TUNNEL = "tunnel"


class BodyKind(Enum):
    """How the length of a message body is determined."""

    NONE = "none"
    LENGTH = "length"
    CHUNKED = "chunked"
    UNTIL_CLOSE = "until-close"


@dataclass(frozen=True)
class Framing:
    """Body framing of one message.

    Attributes:
        kind: How the body is delimited
        length: Body size for ``BodyKind.LENGTH``
        ambiguous: True when the head carried conflicting framing signals
    """

    kind: BodyKind
    length: int = 0
    ambiguous: bool = False

    @property
    def reusable(self) -> bool:
        """Whether the connection can carry another message after this one."""
        return self.kind is not BodyKind.UNTIL_CLOSE and not self.ambiguous


class Headers:
    """Ordered header multimap with case-insensitive lookups.

    Original name casing and order are kept so headers pass through
    unchanged.
    """

    def __init__(self, items: Iterable[tuple[str, str]] = ()) -> None:
        self._items: list[tuple[str, str]] = list(items)

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        key = name.lower()
        return any(k.lower() == key for k, _ in self._items)

    def __repr__(self) -> str:
        return f"Headers({self._items!r})"

    def get(self, name: str, default: str | None = None) -> str | None:
        """Return the first value of ``name``, or ``default``."""
        key = name.lower()
        for k, v in self._items:
            if k.lower() == key:
                return v
        return default

    def get_all(self, name: str) -> list[str]:
        """Return every value of ``name`` in order."""
        key = name.lower()
        return [v for k, v in self._items if k.lower() == key]

    def tokens(self, name: str) -> set[str]:
        """Return the lowercased comma-separated tokens of every ``name`` value."""
        return {
            token.strip().lower()
            for value in self.get_all(name)
            for token in value.split(",")
            if token.strip()
        }

    def add(self, name: str, value: str) -> None:
        """Append a header."""
        self._items.append((name, value))

    def set(self, name: str, value: str) -> None:
        """Replace ``name`` in place of its first occurrence, or append it."""
        key = name.lower()
        items: list[tuple[str, str]] = []
        replaced = False
        for k, v in self._items:
            if k.lower() != key:
                items.append((k, v))
            elif not replaced:
                items.append((k, value))
                replaced = True
        if not replaced:
            items.append((name, value))
        self._items = items

    def remove(self, *names: str) -> int:
        """Drop every header named in ``names``; return how many were dropped."""
        keys = {name.lower() for name in names}
        kept = [(k, v) for k, v in self._items if k.lower() not in keys]
        removed = len(self._items) - len(kept)
        self._items = kept
        return removed

    def encode(self) -> str:
        """Serialize as header lines, each terminated by CRLF."""
        return "".join(f"{k}: {v}{CRLF}" for k, v in self._items)


@dataclass
class ProxyRequest:
    """A parsed client request head.

    Attributes:
        method: Request method, uppercase as sent
        target: Request target as sent (authority or absolute-URI)
        version: Protocol version, e.g. ``HTTP/1.1``
        headers: Request headers
        host: Target host (IPv6 literals without brackets)
        port: Target port
        path: Origin-form path and query forwarded upstream
        mode: Tunnel for CONNECT, direct forward otherwise
    """

    method: str
    target: str
    version: str
    headers: Headers
    host: str
    port: int
    path: str = ""
    mode: ProxyMode = ProxyMode.DIRECT

    @property
    def authority(self) -> str:
        """``host:port`` with IPv6 hosts bracketed."""
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"

    @property
    def keep_alive(self) -> bool:
        """Whether the client asked to keep the connection open."""
        tokens = self.headers.tokens("connection") | self.headers.tokens("proxy-connection")
        return _persistent(self.version, tokens)

    def origin_head(self) -> bytes:
        """Rewrite the head for the origin server.

        The request line uses origin-form and proxy-specific headers are
        dropped; everything else passes through in order.
        """
        headers = Headers(self.headers)
        headers.remove(*PROXY_HEADERS)
        head = f"{self.method} {self.path} {self.version}{CRLF}{headers.encode()}{CRLF}"
        return head.encode("latin-1")


@dataclass
class ResponseHead:
    """A parsed response head from the origin.

    ``raw`` holds the exact bytes received; they are relayed unmodified.
    """

    version: str
    status: int
    reason: str
    headers: Headers
    raw: bytes = field(repr=False)

    @property
    def keep_alive(self) -> bool:
        """Whether the origin allows another request on this connection."""
        return _persistent(self.version, self.headers.tokens("connection"))

    @property
    def interim(self) -> bool:
        """1xx responses other than 101 precede the final response."""
        return 100 <= self.status < 200 and self.status != 101


def _persistent(version: str, connection_tokens: set[str]) -> bool:
    if "close" in connection_tokens:
        return False
    if version == "HTTP/1.0":
        return "keep-alive" in connection_tokens
    return True


def _split_lines(raw: bytes) -> list[str]:
    # latin-1 maps every byte, so arbitrary header bytes survive a round trip
    text = raw.decode("latin-1")
    lines = [line.removesuffix("\r") for line in text.split("\n")]
    # Drop empty lines around the head (stray CRLF before a request is allowed)
    while lines and not lines[0]:
        lines.pop(0)
    while lines and not lines[-1]:
        lines.pop()
    return lines


def _parse_headers(lines: list[str], error: type[Exception]) -> Headers:
    headers = Headers()
    for line in lines:
        if line[:1] in (" ", "\t"):
            msg = "obsolete header line folding"
            raise error(msg)
        name, sep, value = line.partition(":")
        if not sep or not TOKEN_RE.match(name):
            msg = f"malformed header line {line[:80]!r}"
            raise error(msg)
        headers.add(name, value.strip(" \t"))
    return headers


def parse_authority(authority: str, default_port: int | None = None) -> tuple[str, int]:
    """Split ``host[:port]`` (IPv6 hosts in brackets) into host and port.

    Args:
        authority: Authority text from a request target or Host header
        default_port: Port used when none is given; None makes it mandatory

    Raises:
        ValueError: If the host is empty or the port is missing or invalid
    """
    if authority.startswith("["):
        host, sep, rest = authority[1:].partition("]")
        if not sep or (rest and not rest.startswith(":")):
            msg = f"invalid authority {authority!r}"
            raise ValueError(msg)
        port_text = rest[1:] if rest else None
    else:
        host, sep, port_text = authority.partition(":")
        if ":" in port_text:
            msg = f"IPv6 host must be bracketed in {authority!r}"
            raise ValueError(msg)
        if not sep:
            port_text = None

    if not host or any(ch in host for ch in " \t/@?#"):
        msg = f"invalid host in {authority!r}"
        raise ValueError(msg)

    if port_text is None or port_text == "":
        if default_port is None:
            msg = f"missing port in {authority!r}"
            raise ValueError(msg)
        return host, default_port

    if not port_text.isdigit() or not 0 < int(port_text) <= MAX_PORT:
        msg = f"invalid port in {authority!r}"
        raise ValueError(msg)
    return host, int(port_text)


def _parse_connect(method: str, target: str, version: str, headers: Headers) -> ProxyRequest:
    try:
        host, port = parse_authority(target)
    except ValueError as e:
        raise TunnelTargetError(str(e)) from e
    return ProxyRequest(method, target, version, headers, host, port, mode=ProxyMode.TUNNEL)


def _parse_forward(method: str, target: str, version: str, headers: Headers) -> ProxyRequest:
    if target.startswith("/"):
        # Origin-form: the Host header names the destination
        host_header = headers.get("host")
        if not host_header:
            msg = "request without absolute-URI or Host header"
            raise RequestParseError(msg)
        authority, path = host_header.strip(), target
    else:
        scheme, sep, _ = target.partition("://")
        if not sep:
            msg = f"unsupported request target {target[:80]!r}"
            raise RequestParseError(msg)
        if scheme.lower() != "http":
            msg = f"unsupported scheme {scheme!r}"
            raise RequestParseError(msg)
        try:
            parts = urlsplit(target)
        except ValueError as e:
            msg = f"malformed request target {target[:80]!r}: {e}"
            raise RequestParseError(msg) from e
        authority = parts.netloc.rpartition("@")[2]
        path = parts.path or "/"
        if parts.query:
            path = f"{path}?{parts.query}"
        # An absolute-URI overrides any Host header the client sent
        if authority:
            headers.set("Host", authority)

    try:
        host, port = parse_authority(authority, DEFAULT_HTTP_PORT)
    except ValueError as e:
        raise RequestParseError(str(e)) from e

    if "host" not in headers:
        headers.set("Host", authority)
    return ProxyRequest(method, target, version, headers, host, port, path=path)


def parse_request_head(raw: bytes) -> ProxyRequest:
    """Parse a request head (request line, headers, blank line).

    Raises:
        TunnelTargetError: For a CONNECT request with an unusable target
        RequestParseError: For any other malformed request
    """
    lines = _split_lines(raw)
    if not lines:
        msg = "empty request"
        raise RequestParseError(msg)

    parts = lines[0].split(" ")
    if len(parts) != 3:
        msg = f"malformed request line {lines[0][:80]!r}"
        raise RequestParseError(msg)
    method, target, version = parts
    if not TOKEN_RE.match(method) or not target or not VERSION_RE.match(version):
        msg = f"malformed request line {lines[0][:80]!r}"
        raise RequestParseError(msg)

    headers = _parse_headers(lines[1:], RequestParseError)

    if method.upper() == "CONNECT":
        return _parse_connect(method, target, version, headers)
    return _parse_forward(method, target, version, headers)


def parse_response_head(raw: bytes) -> ResponseHead:
    """Parse a response head from the origin.

    Raises:
        UpstreamProtocolError: If the status line or headers are malformed
    """
    lines = _split_lines(raw)
    if not lines:
        msg = "empty response head"
        raise UpstreamProtocolError(msg)

    version, _, rest = lines[0].partition(" ")
    status, _, reason = rest.partition(" ")
    if not VERSION_RE.match(version) or not STATUS_RE.match(status):
        msg = f"malformed status line {lines[0][:80]!r}"
        raise UpstreamProtocolError(msg)

    headers = _parse_headers(lines[1:], UpstreamProtocolError)
    return ResponseHead(version, int(status), reason, headers, raw)


def _content_length(headers: Headers) -> int | None:
    values = {v.strip() for value in headers.get_all("content-length") for v in value.split(",")}
    if not values:
        return None
    if len(values) != 1 or not CONTENT_LENGTH_RE.match(next(iter(values))):
        msg = f"invalid Content-Length {sorted(values)!r}"
        raise ValueError(msg)
    return int(values.pop())


def _is_chunked(headers: Headers) -> bool | None:
    """None without Transfer-Encoding, else whether chunked is the final coding."""
    codings = [c.strip().lower() for v in headers.get_all("transfer-encoding") for c in v.split(",")]
    codings = [c for c in codings if c]
    if not codings:
        return None
    return codings[-1] == "chunked"


def request_framing(request: ProxyRequest) -> Framing:
    """Work out how the request body is delimited.

    A Content-Length sent alongside chunked coding is dropped from the
    request before it is forwarded, and the connection is not reused.

    Raises:
        RequestParseError: For an unknown transfer coding or conflicting lengths
    """
    chunked = _is_chunked(request.headers)
    has_length = "content-length" in request.headers
    if chunked is not None:
        if not chunked:
            msg = "request transfer coding does not end in chunked"
            raise RequestParseError(msg)
        if has_length:
            request.headers.remove("content-length")
        return Framing(BodyKind.CHUNKED, ambiguous=has_length)

    try:
        length = _content_length(request.headers)
    except ValueError as e:
        raise RequestParseError(str(e)) from e
    if not length:
        return Framing(BodyKind.NONE)
    return Framing(BodyKind.LENGTH, length)


def response_framing(method: str, response: ResponseHead) -> Framing:
    """Work out how the response body is delimited.

    Raises:
        UpstreamProtocolError: For conflicting Content-Length values
    """
    if method.upper() == "HEAD" or response.status < 200 or response.status in (204, 304):
        return Framing(BodyKind.NONE)

    chunked = _is_chunked(response.headers)
    has_length = "content-length" in response.headers
    if chunked is not None:
        if chunked:
            return Framing(BodyKind.CHUNKED, ambiguous=has_length)
        return Framing(BodyKind.UNTIL_CLOSE)

    try:
        length = _content_length(response.headers)
    except ValueError as e:
        raise UpstreamProtocolError(str(e)) from e
    if length is None:
        return Framing(BodyKind.UNTIL_CLOSE)
    if length == 0:
        return Framing(BodyKind.NONE)
    return Framing(BodyKind.LENGTH, length)

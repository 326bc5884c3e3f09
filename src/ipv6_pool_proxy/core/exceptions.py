"""Custom exceptions for the proxy server.

This module defines the exceptions used throughout the proxy implementation.
They separate the failure classes the proxy has to tell apart:
- Configuration problems (subnet literal, bind addresses)
- Malformed client requests
- Malformed upstream responses
- Egress dial failures (resolution, refusal, timeout, unreachable network)

Every exception that maps onto an HTTP error reply carries the status code
and reason phrase the proxy answers with.

Example:
    try:
        reader, writer = await dial(host, port, egress, resolver, timeout)
    except DialError as e:
        await send_error(client, e.status, e.reason)
"""


class ProxyError(Exception):
    """Base exception for proxy errors."""

    status = 502
    reason = "Bad Gateway"


class ConfigError(ProxyError):
    """Raised for invalid startup configuration."""


class InvalidSubnetError(ConfigError):
    """Raised when the egress subnet literal cannot be parsed."""


class InvalidBindAddressError(ConfigError):
    """Raised when a listener bind address cannot be parsed."""


class RequestParseError(ProxyError):
    """Raised when a client request head is malformed or over limits."""

    status = 400
    reason = "Bad Request"


class TunnelTargetError(RequestParseError):
    """Raised when a CONNECT request names an unusable target.

    The proxy closes the client connection without a reply.
    """


class UpstreamProtocolError(ProxyError):
    """Raised when the origin sends a malformed response head."""


class DialError(ProxyError):
    """Raised when an egress connection cannot be established."""


class DNSResolutionError(DialError):
    """Raised when DNS resolution fails."""


class ConnectionRefusedDialError(DialError):
    """Raised when the target actively refuses the connection."""


class NetworkUnreachableError(DialError):
    """Raised when no route exists from the egress address to the target."""


class DialTimeoutError(DialError):
    """Raised when connecting to the target exceeds the connect timeout."""

    status = 504
    reason = "Gateway Timeout"


class UpstreamTimeoutError(ProxyError):
    """Raised when the origin does not answer within the idle timeout."""

    status = 504
    reason = "Gateway Timeout"


class MessageFramingError(ProxyError):
    """Raised when a message body does not match its declared framing."""

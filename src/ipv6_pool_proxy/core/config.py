"""Runtime settings for the proxy.

Defaults live in module-level constants so the CLI can show them in its
help text; `ProxySettings` bundles the values one process runs with.
"""

from dataclasses import dataclass
from typing import Final

DEFAULT_BIND: Final = "0.0.0.0:51080"
DEFAULT_SUBNET: Final = "2a12:f8c1:55:766::/64"

DEFAULT_MAX_HEADER_SIZE: Final = 64 * 1024  # Bytes
DEFAULT_HEADER_TIMEOUT: Final = 30.0  # Seconds
DEFAULT_CONNECT_TIMEOUT: Final = 10.0  # Seconds
DEFAULT_IDLE_TIMEOUT: Final = 300.0  # Seconds
DEFAULT_BUFFER_SIZE: Final = 64 * 1024  # Bytes
DEFAULT_NAMESERVERS: Final = (
    "1.1.1.1",  # Cloudflare
    "8.8.8.8",  # Google
    "9.9.9.9",  # Quad9
)


@dataclass(frozen=True)
class ProxySettings:
    """Tunables shared by every listener.

    Attributes:
        max_header_size: Largest accepted request or response head, in bytes
        header_timeout: Seconds a client gets to send a complete request head
        connect_timeout: Seconds allowed for one egress dial, across all resolved addresses
        idle_timeout: Seconds without traffic before a relay is torn down
        total_timeout: Optional cap on a tunnel's lifetime, in seconds
        buffer_size: Read size used when copying bytes
        fallback_nameservers: Nameservers queried when system DNS fails
    """

    max_header_size: int = DEFAULT_MAX_HEADER_SIZE
    header_timeout: float = DEFAULT_HEADER_TIMEOUT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    total_timeout: float | None = None
    buffer_size: int = DEFAULT_BUFFER_SIZE
    fallback_nameservers: tuple[str, ...] = DEFAULT_NAMESERVERS

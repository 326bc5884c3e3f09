"""Statistics tracking for the proxy server.

This module keeps process-wide counters for diagnostics:
- Active and total session counts
- Bytes relayed in each direction
- Failed dials, by error class
- Server uptime

All updates happen on the event loop thread, so no locking is needed.

Example:
    # Global stats object is automatically created
    from .proxy_stats import proxy_stats

    # Track new session
    proxy_stats.session_started()

    # Update transfer statistics
    proxy_stats.update_bytes(up=1024, down=2048)
"""

import time
from collections import Counter
from datetime import UTC, datetime

from ipv6_pool_proxy.core.utils.utils import format_bytes


class ProxyStats:
    """Session and traffic counters for one proxy process."""

    def __init__(self) -> None:
        """Initialize zeroed counters and record the start time."""
        self.active_sessions = 0
        self.total_sessions = 0
        self.total_bytes_up = 0
        self.total_bytes_down = 0
        self.dial_failures: Counter[str] = Counter()
        self.start_time = datetime.now(tz=UTC)
        self._started = time.monotonic()

    def session_started(self) -> None:
        """Count a newly accepted client connection."""
        self.active_sessions += 1
        self.total_sessions += 1

    def session_ended(self) -> None:
        """Count a finished client connection."""
        self.active_sessions -= 1

    def update_bytes(self, up: int, down: int) -> None:
        """Add relayed bytes.

        Args:
            up: Bytes copied from client to server
            down: Bytes copied from server to client
        """
        self.total_bytes_up += up
        self.total_bytes_down += down

    def dial_failed(self, kind: str) -> None:
        """Count a failed egress dial by error class name."""
        self.dial_failures[kind] += 1

    @property
    def uptime(self) -> float:
        """Seconds since the stats object was created."""
        return time.monotonic() - self._started

    def summary(self) -> str:
        """One-line summary for the shutdown log."""
        failures = sum(self.dial_failures.values())
        return (
            f"{self.total_sessions} sessions ({self.active_sessions} active), "
            f"{format_bytes(self.total_bytes_up)} up, "
            f"{format_bytes(self.total_bytes_down)} down, "
            f"{failures} failed dials, "
            f"up {self.uptime:.0f}s since {self.start_time:%Y-%m-%d %H:%M:%S} UTC"
        )


# Global statistics object
proxy_stats = ProxyStats()

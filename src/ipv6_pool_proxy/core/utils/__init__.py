"""Utility functions and helpers."""

from ipv6_pool_proxy.core.utils.log_config import LOG_DIR, setup_logging
from ipv6_pool_proxy.core.utils.utils import format_bytes

__all__ = ["format_bytes", "LOG_DIR", "setup_logging"]

"""Core proxy implementation.

This package contains the core components of the HTTP proxy:
- Request parsing and message framing
- Egress dialing bound to a listener's assigned address
- DNS resolution
- Bidirectional relaying with timeouts
- Listener management
- Address allocation inside the configured subnet
- Exception handling

The core package provides all the functionality needed to run the proxy,
while keeping the implementation details separate from the command-line
interface.
"""

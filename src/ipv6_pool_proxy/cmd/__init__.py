"""Command line interface modules.

This package provides the command-line entry point for:
- Parsing bind addresses and the egress subnet
- Allocating one egress address per listening port
- Starting the listeners and waiting for shutdown
- Reporting startup problems

The command modules are a thin layer over the core proxy engine, which
does all per-connection work.
"""

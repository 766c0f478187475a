"""
CLI layer for clusterdeck.

A Typer application whose commands delegate to the packaging, staging,
client, coordinator and worker modules.  This package handles only
terminal transport: argument parsing, coloured output and exit codes.

Entry point::

    clusterdeck --help
"""

from clusterdeck.cli.app import app

__all__ = ["app"]

"""Command line interface for cloudflared-me."""

from cloudflared_me.cli.main import cli

__all__ = ["cli"]

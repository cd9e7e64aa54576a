"""cloudflared-me - provision a named Cloudflare tunnel in one command."""

__version__ = "0.1.0"

"""Base exception for cloudflared-me."""


class CloudflaredMeError(Exception):
    """Base class for every error raised by cloudflared-me."""

    pass

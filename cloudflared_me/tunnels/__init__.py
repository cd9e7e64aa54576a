"""Tunnel daemons driven by cloudflared-me."""

from cloudflared_me.tunnels.base import (
    AuthenticationFailed,
    DaemonNotFoundError,
    DNSRoutingFailed,
    ExternalToolError,
    IdentifierExtractionError,
    ProcessResult,
    TunnelCreationFailed,
    TunnelDaemon,
    TunnelError,
    TunnelHandle,
)
from cloudflared_me.tunnels.cloudflare import CloudflaredDaemon, parse_tunnel_id

__all__ = [
    "AuthenticationFailed",
    "CloudflaredDaemon",
    "DaemonNotFoundError",
    "DNSRoutingFailed",
    "ExternalToolError",
    "IdentifierExtractionError",
    "ProcessResult",
    "TunnelCreationFailed",
    "TunnelDaemon",
    "TunnelError",
    "TunnelHandle",
    "parse_tunnel_id",
]

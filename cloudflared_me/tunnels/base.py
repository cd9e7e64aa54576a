"""Base class for tunnel daemons."""

import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from cloudflared_me.errors import CloudflaredMeError


class TunnelError(CloudflaredMeError):
    """Error from tunnel operations."""

    pass


class DaemonNotFoundError(TunnelError):
    """The tunnel daemon binary is not installed."""

    pass


class ExternalToolError(TunnelError):
    """A daemon subcommand exited non-zero (or timed out, exit_code None)."""

    def __init__(
        self,
        command: Sequence[str],
        exit_code: Optional[int],
        output: str = "",
        message: Optional[str] = None,
    ):
        self.command = list(command)
        self.exit_code = exit_code
        self.output = output
        if message is None:
            if exit_code is None:
                message = f"Command did not finish: {' '.join(self.command)}"
            else:
                message = f"Command failed with exit code {exit_code}: {' '.join(self.command)}"
        super().__init__(message)


class AuthenticationFailed(ExternalToolError):
    """Login subcommand failed."""

    pass


class TunnelCreationFailed(ExternalToolError):
    """Create subcommand failed."""

    pass


class IdentifierExtractionError(TunnelCreationFailed):
    """Create subcommand succeeded but printed no tunnel ID."""

    pass


class DNSRoutingFailed(ExternalToolError):
    """Route subcommand failed."""

    pass


@dataclass
class ProcessResult:
    """Captured output of a finished daemon subcommand."""

    command: list[str]
    stdout: str
    exit_code: int
    stderr: str = ""


@dataclass
class TunnelHandle:
    """A launched tunnel process.

    The process is detached and never awaited; the handle only keeps a
    reference to it.
    """

    tunnel_id: str
    pid: int
    log_path: Path
    process: Optional[subprocess.Popen] = field(default=None, repr=False, compare=False)

    def is_running(self) -> bool:
        """Check if the launched process is still alive."""
        return self.process is not None and self.process.poll() is None


class TunnelDaemon(ABC):
    """Abstract interface to a tunnel daemon CLI.

    Implementations:
    - CloudflaredDaemon: the `cloudflared tunnel` subcommands
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name of this daemon."""
        ...

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """Check if the daemon binary is installed."""
        ...

    @abstractmethod
    def ensure_authenticated(self) -> None:
        """Log in to the tunnel service.

        Raises:
            AuthenticationFailed: If login fails
        """
        ...

    @abstractmethod
    def create_tunnel(self, name: str) -> str:
        """Create a named tunnel.

        Returns:
            The new tunnel's ID

        Raises:
            TunnelCreationFailed: If creation fails
            IdentifierExtractionError: If no ID could be read from the output
        """
        ...

    @abstractmethod
    def run_tunnel_background(self, tunnel_id: str) -> TunnelHandle:
        """Launch the tunnel detached and return without waiting for it."""
        ...

    @abstractmethod
    def route_dns(self, tunnel_id: str, domain: str) -> None:
        """Point ``domain`` at the tunnel.

        Raises:
            DNSRoutingFailed: If routing fails
        """
        ...

    def get_install_instructions(self) -> str:
        """Get instructions for installing the daemon.

        Returns:
            Human-readable installation instructions
        """
        return f"Please install the {self.name} CLI tool manually."

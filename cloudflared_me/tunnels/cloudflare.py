"""Cloudflare named tunnels through the cloudflared CLI."""

import os
import platform
import re
import shutil
import subprocess
from pathlib import Path
from typing import Optional, Sequence, Type

from cloudflared_me.config import Config
from cloudflared_me.logs import get_logger
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

logger = get_logger(__name__)

# `cloudflared tunnel create` output, e.g. "Tunnel credentials written to ...
# Created tunnel web with id 6ff42ae2-765d-4adf-8112-31c55c1551ef" or "... ID: <id>"
TUNNEL_ID_PATTERNS = (
    re.compile(r"ID: ([A-Za-z0-9-]+)"),
    re.compile(r"with id ([A-Za-z0-9-]+)", re.IGNORECASE),
)


def parse_tunnel_id(output: str) -> Optional[str]:
    """Extract the tunnel ID from ``cloudflared tunnel create`` output.

    Returns:
        The ID, or None if the output contains none
    """
    for pattern in TUNNEL_ID_PATTERNS:
        match = pattern.search(output)
        if match:
            return match.group(1)
    return None


class CloudflaredDaemon(TunnelDaemon):
    """Runs `cloudflared tunnel` subcommands.

    Every subcommand is fail-fast: a non-zero exit raises immediately and
    nothing is retried, since cloudflared applies its own retry policy.
    """

    def __init__(
        self,
        binary_path: Optional[str] = None,
        tunnel_log_path: Path = Path("cloudflared_tunnel.log"),
        origin_cert: Optional[Path] = None,
        command_timeout: int = 60,
        login_timeout: int = 600,
    ):
        """Initialize the cloudflared daemon wrapper.

        Args:
            binary_path: Explicit cloudflared path (default: search PATH)
            tunnel_log_path: File the background tunnel appends its output to
            origin_cert: cert.pem written by login; login is skipped if it exists
            command_timeout: Seconds to wait for create/route subcommands
            login_timeout: Seconds to wait for the browser login
        """
        self.binary_path = binary_path
        self.tunnel_log_path = Path(tunnel_log_path)
        self.origin_cert = origin_cert
        self.command_timeout = command_timeout
        self.login_timeout = login_timeout

    @classmethod
    def from_config(cls, config: Config) -> "CloudflaredDaemon":
        """Build a daemon wrapper from loaded settings."""
        return cls(
            binary_path=config.cloudflared_path,
            tunnel_log_path=config.tunnel_log_file,
            origin_cert=config.origin_cert_path,
            command_timeout=config.command_timeout,
            login_timeout=config.login_timeout,
        )

    @property
    def name(self) -> str:
        """Human-readable name of this daemon."""
        return "cloudflared"

    @property
    def is_available(self) -> bool:
        """Check if cloudflared is installed."""
        return self._get_cloudflared_path() is not None

    def _get_cloudflared_path(self) -> Optional[str]:
        """Get path to cloudflared binary."""
        if self.binary_path:
            return self.binary_path

        # Check system PATH first
        path = shutil.which("cloudflared")
        if path:
            return path

        # Check common installation locations
        common_paths = [
            Path.home() / ".local" / "bin" / "cloudflared",
            Path("/usr/local/bin/cloudflared"),
            Path("/usr/bin/cloudflared"),
        ]

        for p in common_paths:
            if p.exists() and os.access(p, os.X_OK):
                return str(p)

        return None

    def _require_binary(self) -> str:
        cloudflared = self._get_cloudflared_path()
        if not cloudflared:
            raise DaemonNotFoundError(
                "cloudflared not found. Install it with:\n"
                f"  {self.get_install_instructions()}"
            )
        return cloudflared

    def run(
        self,
        subcommand: str,
        args: Sequence[str] = (),
        timeout: Optional[int] = None,
        capture: bool = True,
    ) -> ProcessResult:
        """Run ``cloudflared tunnel <subcommand> <args...>`` and wait for it.

        Args:
            subcommand: tunnel subcommand (login, create, route, ...)
            args: Arguments after the subcommand
            timeout: Seconds to wait (default: command_timeout)
            capture: Capture output; interactive commands pass False so the
                user sees cloudflared's prompts

        Returns:
            ProcessResult with stdout and exit code

        Raises:
            DaemonNotFoundError: If cloudflared is not installed
            ExternalToolError: If the command exits non-zero or times out
        """
        cmd = [self._require_binary(), "tunnel", subcommand, *args]
        if timeout is None:
            timeout = self.command_timeout

        logger.debug("Running %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=capture,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ExternalToolError(
                cmd, None, message=f"Timed out after {timeout}s: {' '.join(cmd)}"
            ) from e
        except FileNotFoundError as e:
            raise DaemonNotFoundError(f"cloudflared not found at {cmd[0]}") from e
        except OSError as e:
            raise ExternalToolError(cmd, None, message=f"Failed to run {cmd[0]}: {e}") from e

        stdout = result.stdout or ""
        stderr = result.stderr or ""
        if result.returncode != 0:
            raise ExternalToolError(cmd, result.returncode, output=(stderr or stdout).strip())

        return ProcessResult(command=cmd, stdout=stdout, exit_code=result.returncode, stderr=stderr)

    @staticmethod
    def _as(error_cls: Type[ExternalToolError], error: ExternalToolError, message: str):
        detail = f"{message}: {error}"
        if error.output:
            detail = f"{detail}\n{error.output}"
        return error_cls(error.command, error.exit_code, output=error.output, message=detail)

    def ensure_authenticated(self) -> None:
        """Run `cloudflared tunnel login` unless an origin certificate exists.

        Raises:
            AuthenticationFailed: If login fails
        """
        if self.origin_cert is not None and self.origin_cert.exists():
            logger.info("Origin certificate found at %s, skipping login.", self.origin_cert)
            return

        try:
            self.run("login", timeout=self.login_timeout, capture=False)
        except ExternalToolError as e:
            raise self._as(AuthenticationFailed, e, "cloudflared login failed") from e

    def create_tunnel(self, name: str) -> str:
        """Create a named tunnel and return its ID.

        Raises:
            TunnelCreationFailed: If the create subcommand fails
            IdentifierExtractionError: If it succeeds without printing an ID
        """
        try:
            result = self.run("create", [name])
        except ExternalToolError as e:
            raise self._as(TunnelCreationFailed, e, f"Failed to create tunnel {name!r}") from e

        tunnel_id = parse_tunnel_id(result.stdout)
        if tunnel_id is None:
            raise IdentifierExtractionError(
                result.command,
                result.exit_code,
                output=result.stdout,
                message=f"Tunnel {name!r} was created but no tunnel ID was found in the output",
            )
        return tunnel_id

    def run_tunnel_background(self, tunnel_id: str) -> TunnelHandle:
        """Start `cloudflared tunnel run` detached, appending output to the tunnel log.

        Raises:
            TunnelError: If the process cannot be started
        """
        cmd = [self._require_binary(), "tunnel", "run", tunnel_id]

        try:
            self.tunnel_log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.tunnel_log_path, "ab") as log:
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as e:
            raise TunnelError(f"Failed to start cloudflared: {e}") from e

        return TunnelHandle(
            tunnel_id=tunnel_id,
            pid=process.pid,
            log_path=self.tunnel_log_path,
            process=process,
        )

    def route_dns(self, tunnel_id: str, domain: str) -> None:
        """Run `cloudflared tunnel route dns <tunnel_id> <domain>`.

        Raises:
            DNSRoutingFailed: If routing fails
        """
        try:
            self.run("route", ["dns", tunnel_id, domain])
        except ExternalToolError as e:
            raise self._as(DNSRoutingFailed, e, f"Failed to route DNS for {domain}") from e

    def get_install_instructions(self) -> str:
        """Get installation instructions for cloudflared."""
        system = platform.system().lower()

        if system == "darwin":
            return "brew install cloudflared"
        elif system == "linux":
            return (
                "curl -fsSL https://github.com/cloudflare/cloudflared/releases/latest/download/cloudflared-linux-amd64 "
                "-o ~/.local/bin/cloudflared && chmod +x ~/.local/bin/cloudflared"
            )
        else:
            return "Visit https://developers.cloudflare.com/cloudflare-one/connections/connect-apps/install-and-setup/installation"

"""Tests for the provisioning state machine."""

from pathlib import Path
from typing import Optional

import pytest

from cloudflared_me.ingress import ConfigIOError, MergeStatus, SkipReason
from cloudflared_me.orchestrator import Orchestrator, ProvisionError, State
from cloudflared_me.tunnels import CloudflaredDaemon
from cloudflared_me.tunnels.base import (
    AuthenticationFailed,
    DNSRoutingFailed,
    IdentifierExtractionError,
    TunnelDaemon,
    TunnelError,
    TunnelHandle,
)
from cloudflared_me.validation import InvalidDomain, InvalidPort, OperationRequest


class FakeDaemon(TunnelDaemon):
    """In-memory daemon that records calls and fails on request."""

    def __init__(self, tunnel_id: str = "abc123", fail: Optional[str] = None):
        self.tunnel_id = tunnel_id
        self.fail = fail
        self.calls: list[tuple] = []

    @property
    def name(self) -> str:
        return "fake"

    @property
    def is_available(self) -> bool:
        return True

    def ensure_authenticated(self) -> None:
        self.calls.append(("login",))
        if self.fail == "login":
            raise AuthenticationFailed(["fake", "login"], 1)

    def create_tunnel(self, name: str) -> str:
        self.calls.append(("create", name))
        if self.fail == "create":
            raise IdentifierExtractionError(["fake", "create", name], 0, message="no ID in output")
        return self.tunnel_id

    def run_tunnel_background(self, tunnel_id: str) -> TunnelHandle:
        self.calls.append(("run", tunnel_id))
        if self.fail == "run":
            raise TunnelError("Failed to start fake")
        return TunnelHandle(tunnel_id=tunnel_id, pid=4242, log_path=Path("tunnel.log"))

    def route_dns(self, tunnel_id: str, domain: str) -> None:
        self.calls.append(("route", tunnel_id, domain))
        if self.fail == "route":
            raise DNSRoutingFailed(["fake", "route"], 1)


def _request(config_dir: Path, port: str = "8080", domain: str = "app.example.com") -> OperationRequest:
    return OperationRequest(port=port, domain=domain, tunnel_name="web", config_dir=config_dir)


class TestSuccessfulRun:
    """A run where every stage succeeds."""

    def test_walks_every_state(self, temp_config_dir):
        daemon = FakeDaemon()
        orchestrator = Orchestrator(daemon)

        result = orchestrator.provision(_request(temp_config_dir))

        assert orchestrator.state is State.DONE
        assert result.history == [
            State.START,
            State.VALIDATED,
            State.AUTHENTICATED,
            State.TUNNEL_CREATED,
            State.CONFIG_MERGED,
            State.TUNNEL_RUNNING,
            State.DNS_ROUTED,
            State.DONE,
        ]
        assert daemon.calls == [
            ("login",),
            ("create", "web"),
            ("run", "abc123"),
            ("route", "abc123", "app.example.com"),
        ]

    def test_result_contents(self, temp_config_dir):
        result = Orchestrator(FakeDaemon()).provision(_request(temp_config_dir))

        assert result.tunnel_id == "abc123"
        assert result.request.port == 8080
        assert result.merge.status is MergeStatus.MERGED
        assert result.handle.pid == 4242
        assert "hostname: app.example.com" in (temp_config_dir / "config.yaml").read_text()

    def test_duplicate_is_not_a_failure(self, temp_config_dir):
        """A skipped merge still runs and routes the tunnel."""
        Orchestrator(FakeDaemon(tunnel_id="first")).provision(_request(temp_config_dir))

        daemon = FakeDaemon(tunnel_id="second")
        result = Orchestrator(daemon).provision(_request(temp_config_dir))

        assert result.merge.reason is SkipReason.DUPLICATE_DOMAIN
        assert daemon.calls[-1] == ("route", "second", "app.example.com")

    def test_runs_once(self, temp_config_dir):
        orchestrator = Orchestrator(FakeDaemon())
        orchestrator.provision(_request(temp_config_dir))
        with pytest.raises(RuntimeError):
            orchestrator.provision(_request(temp_config_dir))


class TestFailures:
    """Each failure stops the run at its stage."""

    def test_invalid_port(self, temp_config_dir):
        daemon = FakeDaemon()
        orchestrator = Orchestrator(daemon)

        with pytest.raises(ProvisionError) as exc_info:
            orchestrator.provision(_request(temp_config_dir, port="+80"))

        assert exc_info.value.stage is State.VALIDATED
        assert isinstance(exc_info.value.cause, InvalidPort)
        assert orchestrator.state is State.FAILED
        assert daemon.calls == []

    def test_invalid_domain(self, temp_config_dir):
        daemon = FakeDaemon()
        with pytest.raises(ProvisionError) as exc_info:
            Orchestrator(daemon).provision(_request(temp_config_dir, domain="bad_domain"))
        assert isinstance(exc_info.value.cause, InvalidDomain)
        assert daemon.calls == []

    def test_login_failure(self, temp_config_dir):
        daemon = FakeDaemon(fail="login")
        with pytest.raises(ProvisionError) as exc_info:
            Orchestrator(daemon).provision(_request(temp_config_dir))
        assert exc_info.value.stage is State.AUTHENTICATED
        assert isinstance(exc_info.value.cause, AuthenticationFailed)
        assert daemon.calls == [("login",)]

    def test_missing_tunnel_id_stops_before_config(self, temp_config_dir):
        daemon = FakeDaemon(fail="create")
        orchestrator = Orchestrator(daemon)

        with pytest.raises(ProvisionError) as exc_info:
            orchestrator.provision(_request(temp_config_dir))

        assert exc_info.value.stage is State.TUNNEL_CREATED
        assert isinstance(exc_info.value.cause, IdentifierExtractionError)
        assert exc_info.value.__cause__ is exc_info.value.cause
        assert daemon.calls == [("login",), ("create", "web")]
        assert list(temp_config_dir.iterdir()) == []
        assert orchestrator.history[-1] is State.FAILED

    def test_config_failure(self, temp_config_dir):
        def broken_merge(config_dir, tunnel_id, domain, port):
            raise ConfigIOError("disk full")

        daemon = FakeDaemon()
        with pytest.raises(ProvisionError) as exc_info:
            Orchestrator(daemon, merger=broken_merge).provision(_request(temp_config_dir))

        assert exc_info.value.stage is State.CONFIG_MERGED
        assert ("run", "abc123") not in daemon.calls

    def test_run_failure(self, temp_config_dir):
        daemon = FakeDaemon(fail="run")
        with pytest.raises(ProvisionError) as exc_info:
            Orchestrator(daemon).provision(_request(temp_config_dir))
        assert exc_info.value.stage is State.TUNNEL_RUNNING
        assert daemon.calls[-1] == ("run", "abc123")

    def test_route_failure_keeps_earlier_stages(self, temp_config_dir):
        """No compensation: the merged config stays in place."""
        daemon = FakeDaemon(fail="route")
        orchestrator = Orchestrator(daemon)

        with pytest.raises(ProvisionError) as exc_info:
            orchestrator.provision(_request(temp_config_dir))

        assert exc_info.value.stage is State.DNS_ROUTED
        assert State.TUNNEL_RUNNING in orchestrator.history
        assert (temp_config_dir / "config.yaml").exists()

    def test_unusable_tunnel_log_fails_at_run_stage(self, fake_cloudflared, temp_config_dir, tmp_path):
        """Filesystem errors from the real daemon stay inside the state machine."""
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        daemon = CloudflaredDaemon(
            binary_path=str(fake_cloudflared.path),
            tunnel_log_path=blocker / "tunnel.log",
            origin_cert=tmp_path / "cert.pem",
        )
        orchestrator = Orchestrator(daemon)

        with pytest.raises(ProvisionError) as exc_info:
            orchestrator.provision(_request(temp_config_dir))

        assert exc_info.value.stage is State.TUNNEL_RUNNING
        assert isinstance(exc_info.value.cause, TunnelError)
        assert orchestrator.state is State.FAILED
        assert "tunnel route dns abc123 app.example.com" not in fake_cloudflared.calls()

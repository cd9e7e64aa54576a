"""Provisioning sequence: validate, log in, create, configure, run, route.

The run is a linear state machine::

    START -> VALIDATED -> AUTHENTICATED -> TUNNEL_CREATED -> CONFIG_MERGED
          -> TUNNEL_RUNNING -> DNS_ROUTED -> DONE

Any failure stops the run in FAILED. Completed stages are not undone: a
tunnel created before a later failure stays created.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

from cloudflared_me.errors import CloudflaredMeError
from cloudflared_me.ingress import MergeOutcome, merge_ingress_rule
from cloudflared_me.logs import get_logger
from cloudflared_me.tunnels.base import TunnelDaemon, TunnelHandle
from cloudflared_me.validation import OperationRequest, ValidatedRequest, validate

logger = get_logger(__name__)

Merger = Callable[[Path, str, str, int], MergeOutcome]


class State(Enum):
    START = "start"
    VALIDATED = "validated"
    AUTHENTICATED = "authenticated"
    TUNNEL_CREATED = "tunnel_created"
    CONFIG_MERGED = "config_merged"
    TUNNEL_RUNNING = "tunnel_running"
    DNS_ROUTED = "dns_routed"
    DONE = "done"
    FAILED = "failed"


class ProvisionError(CloudflaredMeError):
    """A stage failed. ``stage`` is the state the run was trying to reach."""

    def __init__(self, stage: State, cause: Exception):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage.value}: {cause}")


@dataclass
class ProvisionResult:
    """Everything a completed run produced."""

    request: ValidatedRequest
    tunnel_id: str
    merge: MergeOutcome
    handle: TunnelHandle
    history: list[State] = field(default_factory=list)


class Orchestrator:
    """Drives one provisioning run against a tunnel daemon."""

    def __init__(self, daemon: TunnelDaemon, merger: Merger = merge_ingress_rule):
        self.daemon = daemon
        self.merger = merger
        self.state = State.START
        self.history: list[State] = [State.START]

    def _advance(self, state: State) -> None:
        self.state = state
        self.history.append(state)

    def _fail(self, stage: State, cause: Exception) -> ProvisionError:
        self._advance(State.FAILED)
        logger.error("Error: %s", cause)
        return ProvisionError(stage, cause)

    def provision(self, request: OperationRequest) -> ProvisionResult:
        """Run every stage in order.

        Returns:
            ProvisionResult once DNS is routed

        Raises:
            ProvisionError: On the first failing stage
        """
        if self.state is not State.START:
            raise RuntimeError("An orchestrator runs once; create a new one")

        stage = State.VALIDATED
        try:
            validated = validate(request)
            self._advance(State.VALIDATED)

            stage = State.AUTHENTICATED
            logger.info("Ensuring %s is authenticated...", self.daemon.name)
            self.daemon.ensure_authenticated()
            logger.info("%s authenticated successfully.", self.daemon.name)
            self._advance(State.AUTHENTICATED)

            stage = State.TUNNEL_CREATED
            logger.info("Creating a new tunnel %r...", validated.tunnel_name)
            tunnel_id = self.daemon.create_tunnel(validated.tunnel_name)
            logger.info("Tunnel created successfully with ID: %s", tunnel_id)
            self._advance(State.TUNNEL_CREATED)

            stage = State.CONFIG_MERGED
            merge = self.merger(validated.config_dir, tunnel_id, validated.domain, validated.port)
            if merge.skipped:
                logger.info("Config unchanged (%s).", merge.reason.value if merge.reason else "skipped")
            self._advance(State.CONFIG_MERGED)

            stage = State.TUNNEL_RUNNING
            logger.info("Starting the tunnel in the background...")
            handle = self.daemon.run_tunnel_background(tunnel_id)
            logger.info("Tunnel started successfully with PID: %s", handle.pid)
            self._advance(State.TUNNEL_RUNNING)

            stage = State.DNS_ROUTED
            logger.info("Routing DNS...")
            self.daemon.route_dns(tunnel_id, validated.domain)
            logger.info("DNS routed successfully to %s.", validated.domain)
            self._advance(State.DNS_ROUTED)
        except CloudflaredMeError as e:
            raise self._fail(stage, e) from e

        self._advance(State.DONE)
        return ProvisionResult(
            request=validated,
            tunnel_id=tunnel_id,
            merge=merge,
            handle=handle,
            history=list(self.history),
        )

"""CLI for cloudflared-me."""

from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from cloudflared_me import __version__
from cloudflared_me.config import Config, ConfigError
from cloudflared_me.logs import setup_logging
from cloudflared_me.orchestrator import Orchestrator, ProvisionError
from cloudflared_me.tunnels import CloudflaredDaemon
from cloudflared_me.validation import OperationRequest

console = Console()

CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}


@click.command(context_settings=CONTEXT_SETTINGS)
@click.version_option(version=__version__)
@click.option("--port", "-p", help="Specify the port to route traffic to")
@click.option("--domain", "-d", help="Specify the domain to route traffic from")
@click.option("--name", "-n", "tunnel_name", help="Specify the name of the Cloudflare tunnel")
@click.option(
    "--config-dir",
    "-c",
    help="Specify a custom configuration directory (default is ~/.cloudflared)",
)
@click.pass_context
def cli(
    ctx: click.Context,
    port: Optional[str],
    domain: Optional[str],
    tunnel_name: Optional[str],
    config_dir: Optional[str],
):
    """cloudflared-me - create, configure, run and route a Cloudflare tunnel."""
    if not port or not domain or not tunnel_name:
        click.echo(ctx.get_help())
        raise SystemExit(1)

    try:
        config = Config.load()
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        raise SystemExit(1)

    try:
        logger = setup_logging(config.log_file, debug=config.debug)
    except OSError as e:
        console.print(f"[red]Cannot open run log {escape(str(config.log_file))}:[/red] {escape(str(e))}")
        raise SystemExit(1)
    logger.info("Starting cloudflared-me...")

    request = OperationRequest(
        port=port,
        domain=domain,
        tunnel_name=tunnel_name,
        config_dir=config_dir or config.config_dir,
    )
    daemon = CloudflaredDaemon.from_config(config)
    if not daemon.is_available:
        logger.error("Error: cloudflared not found.")
        console.print(f"\nInstall with:\n  {daemon.get_install_instructions()}")
        raise SystemExit(1)

    orchestrator = Orchestrator(daemon)

    try:
        result = orchestrator.provision(request)
    except ProvisionError as e:
        console.print(f"[red]Failed at stage {e.stage.value}:[/red] {escape(str(e.cause))}")
        raise SystemExit(1)

    logger.info("cloudflared-me completed successfully.")

    if result.merge.merged:
        config_line = f"Config updated: {result.merge.config_path}"
    else:
        config_line = f"Config unchanged ({result.merge.reason.value}): {result.merge.config_path}"

    console.print(Panel.fit(
        f"[bold green]Tunnel is up![/bold green]\n\n"
        f"  Tunnel ID: [cyan]{result.tunnel_id}[/cyan]\n"
        f"  Public URL: [cyan]https://{result.request.domain}[/cyan]\n"
        f"  Local service: http://localhost:{result.request.port}\n"
        f"  {escape(config_line)}\n\n"
        f"[dim]Tunnel PID {result.handle.pid}, logging to {escape(str(result.handle.log_path))}[/dim]",
        border_style="green"
    ))


if __name__ == "__main__":
    cli()

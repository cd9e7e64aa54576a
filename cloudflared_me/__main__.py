from cloudflared_me.cli.main import cli

cli()

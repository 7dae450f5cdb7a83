"""Misaka CLI.

Usage:
    misaka start                 # Run the agent in the foreground
    misaka start node-01 -v      # Override the node name, debug logging
    misaka routes                # List the routes of configured plugins
    misaka routes warn           # Only routes tagged "warn"
    misaka sign "1700000000&n1"  # Print the login signature of a text
"""

import asyncio
import logging
import sys

import click
from rich.console import Console
from rich.table import Table

from misaka import __version__
from misaka.agent import LOG_FORMAT, MisakaAgent
from misaka.config import MisakaConfig
from misaka.errors import ConfigError
from misaka.jobs import JobEngine
from misaka.plugins import PluginManager
from misaka.router import Router
from misaka.session import sign as sign_text

console = Console()


def _load_config() -> MisakaConfig:
    try:
        return MisakaConfig.load()
    except ConfigError as e:
        console.print(f"[bold red]Config error:[/] {e}")
        sys.exit(1)


@click.group()
@click.version_option(__version__, prog_name="misaka")
def cli():
    """Misaka: remote command agent for last order."""
    pass


@cli.command()
@click.argument("node", required=False)
@click.option("--verbose", "-v", is_flag=True, help="Log at debug level")
def start(node, verbose):
    """Connect to last order and serve commands until interrupted."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
    config = _load_config()
    try:
        agent = MisakaAgent(config, node=node)
    except ConfigError as e:
        console.print(f"[bold red]Config error:[/] {e}")
        sys.exit(1)

    console.print(f"[bold blue]Misaka[/] {agent.config.node} -> [cyan]{agent.config.server_url}[/]")
    asyncio.run(agent.start())


@cli.command()
@click.argument("tag", required=False)
def routes(tag):
    """List routes of the configured plugins, optionally only those tagged TAG."""
    config = _load_config()
    router = Router(JobEngine())
    PluginManager(config, router).load()

    found = [route for route in router.routes if not tag or tag in route.tags]
    if not found:
        console.print("[dim]No routes. Add plugins under \"scripts\" in the config file.[/]")
        return

    table = Table(title="Routes")
    table.add_column("Name", style="cyan")
    table.add_column("Plugin")
    table.add_column("Usage", style="green")
    table.add_column("Help")
    table.add_column("Job", justify="center")
    for route in found:
        table.add_row(route.name, route.plugin, route.usage, route.help, "✔" if route.job else "")
    console.print(table)


@cli.command()
@click.argument("text")
def sign(text):
    """Print the signature of TEXT with the shared secret."""
    config = _load_config()
    if not config.shared_secret:
        console.print("[bold red]Config error:[/] missing shared_secret (SISTERS_SHARED_SECRET)")
        sys.exit(1)
    click.echo(sign_text(text, config.shared_secret))


def main():
    cli()


if __name__ == "__main__":
    main()

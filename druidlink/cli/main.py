#!/usr/bin/env python3
"""
Command line diagnostics for druidlink.

- ``brokers``: list the brokers currently discovered in ZooKeeper
- ``datasource``: show the dimensions and metrics of a datasource
- ``query``: send a JSON query file to a broker
"""

import asyncio
import json
import sys
from collections.abc import Callable
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from druidlink.client.client import DruidClient
from druidlink.core.config import (
    DEFAULT_DISCOVERY_PATH,
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_SERVICE_NAME,
    DruidLinkSettings,
)
from druidlink.core.errors import DruidLinkError
from druidlink.core.logging import configure_logging

console = Console()


def connection_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by every command that talks to the cluster."""
    decorators = [
        click.option(
            "--zookeeper",
            "-z",
            default="127.0.0.1:2181",
            show_default=True,
            help="ZooKeeper connection string (host:port[,host:port][/chroot])",
        ),
        click.option(
            "--discovery-path",
            default=DEFAULT_DISCOVERY_PATH,
            show_default=True,
            help="Root path where service categories are registered",
        ),
        click.option(
            "--service-name",
            default=DEFAULT_SERVICE_NAME,
            show_default=True,
            help="Service category of the brokers",
        ),
        click.option("--static", "static_setup", help="Literal broker URL"),
        click.option(
            "--fallback",
            is_flag=True,
            help="Use --static only when no broker is discovered",
        ),
        click.option(
            "--timeout",
            type=float,
            default=DEFAULT_HTTP_TIMEOUT,
            show_default=True,
            help="HTTP timeout in seconds",
        ),
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


def build_settings(ctx: click.Context, **options: Any) -> DruidLinkSettings:
    settings = DruidLinkSettings(
        zookeeper_uri=options["zookeeper"],
        discovery_path=options["discovery_path"],
        service_name=options["service_name"],
        static_setup=options["static_setup"],
        fallback=options["fallback"],
        http_timeout=options["timeout"],
        log_level=ctx.obj["log_level"],
        debug_scopes=ctx.obj["debug_scopes"],
    )
    configure_logging(
        settings.log_level, debug_scopes=settings.debug_scopes, colorize=True
    )
    return settings


def run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except DruidLinkError as exc:
        console.print(f"[red]{type(exc).__name__}: {exc}[/red]")
        sys.exit(1)


def display_brokers(client: DruidClient) -> None:
    table = Table(title="Druid brokers")
    table.add_column("Name", style="cyan")
    table.add_column("Address")
    table.add_column("Port", justify="right")
    table.add_column("URI", style="green")
    for endpoint in client.brokers():
        table.add_row(
            endpoint.name, endpoint.address, str(endpoint.port), endpoint.uri
        )
    console.print(table)
    health = "[green]healthy[/green]" if client.healthy() else "[red]unhealthy[/red]"
    console.print(f"Registry session: {health}")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option(
    "--debug-scope",
    "debug_scopes",
    multiple=True,
    help="Show DEBUG logs for one module, e.g. core.watcher (repeatable)",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug_scopes: tuple[str, ...]) -> None:
    """druidlink: ZooKeeper-discovered Druid broker client."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = "DEBUG" if verbose else "WARNING"
    ctx.obj["debug_scopes"] = debug_scopes


@cli.command()
@connection_options
@click.option(
    "--output",
    "-o",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
@click.pass_context
def brokers(ctx: click.Context, output: str, **options: Any) -> None:
    """List the brokers currently registered."""
    settings = build_settings(ctx, **options)

    async def _brokers() -> None:
        async with await DruidClient.connect(settings) as client:
            if output == "json":
                payload = {
                    "healthy": client.healthy(),
                    "brokers": [endpoint.to_dict() for endpoint in client.brokers()],
                }
                if client.discovery is not None:
                    payload["discovery"] = client.discovery.describe()
                console.print_json(data=payload)
            else:
                display_brokers(client)

    run(_brokers())


@cli.command()
@click.argument("name")
@connection_options
@click.pass_context
def datasource(ctx: click.Context, name: str, **options: Any) -> None:
    """Show dimensions and metrics of datasource NAME."""
    settings = build_settings(ctx, **options)

    async def _datasource() -> None:
        async with await DruidClient.connect(settings) as client:
            meta = await client.data_source(name)
        table = Table(title=f"Datasource {meta.name}")
        table.add_column("Dimensions", style="cyan")
        table.add_column("Metrics", style="green")
        rows = max(len(meta.dimensions), len(meta.metrics))
        for index in range(rows):
            table.add_row(
                meta.dimensions[index] if index < len(meta.dimensions) else "",
                meta.metrics[index] if index < len(meta.metrics) else "",
            )
        console.print(table)

    run(_datasource())


@cli.command()
@click.argument("query_file", type=click.File("r"))
@connection_options
@click.pass_context
def query(ctx: click.Context, query_file: Any, **options: Any) -> None:
    """Send the JSON query in QUERY_FILE ('-' for stdin) and print the result."""
    settings = build_settings(ctx, **options)
    try:
        body = json.load(query_file)
    except ValueError as exc:
        raise click.BadParameter(f"not valid JSON: {exc}") from exc

    async def _query() -> None:
        async with await DruidClient.connect(settings) as client:
            result = await client.send(body)
        console.print_json(data=result)

    run(_query())


def main() -> None:
    """Main CLI entry point."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(1)


if __name__ == "__main__":
    main()

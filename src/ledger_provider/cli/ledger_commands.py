#!/usr/bin/env python3
"""Ledger CLI Commands - device accounts."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import click
import yaml
from rich import box
from rich.console import Console
from rich.table import Table

from ledger_provider.core.config import DEFAULT_TRANSPORT
from ledger_provider.core.connection import NetworkConnection, connection_closed, new_connection
from ledger_provider.core.ledger_exceptions import LedgerError
from ledger_provider.core.logging_config import setup_logging
from ledger_provider.core.rpc_transport import HttpRpcTransport

logger = logging.getLogger(__name__)
console = Console()

DEFAULT_RPC_URL = "http://127.0.0.1:8545"
NO_LEDGER_MESSAGE = "No Ledger configured for this network"


def _handle_cli_error(exc: Exception, exit_code: int = 1) -> None:
    """Centralized CLI error handler."""
    logger.error("CLI error: %s", exc, extra={"event": "cli.error", "error_type": type(exc).__name__})
    console.print(f"[bold red]Error:[/] {exc}")
    sys.exit(exit_code)


def _load_network(config_path: Optional[Path], network: str) -> dict[str, Any]:
    if config_path is None:
        return {}
    with open(config_path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    networks = data.get("networks") or {}
    if network not in networks:
        raise click.ClickException(f"Network '{network}' not found in {config_path}")
    return dict(networks[network] or {})


def build_network_config(
    base: dict[str, Any],
    accounts: tuple[str, ...],
    transport: Optional[str],
    timeout: Optional[int],
) -> dict[str, Any]:
    """Overlay command line options on a network config."""
    network_config = dict(base)
    if accounts:
        network_config["ledgerAccounts"] = list(accounts)
    options = dict(network_config.get("ledgerOptions") or {})
    if transport:
        options["transportType"] = transport
    if timeout is not None:
        options["connectionTimeout"] = timeout
    if options:
        network_config["ledgerOptions"] = options
    return network_config


async def _collect_accounts(network: str, rpc_url: str, network_config: dict[str, Any]) -> Optional[dict[str, Any]]:
    upstream = HttpRpcTransport(rpc_url)
    try:
        connection = await new_connection(NetworkConnection(network, upstream), network_config)
        if connection.ledger is None:
            return None
        info = connection.ledger.to_dict()
        await connection_closed(connection)
        return info
    finally:
        upstream.close()


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Log level for the JSON logs written to stderr",
)
@click.option("--log-file", type=click.Path(dir_okay=False), default=None, help="Also write JSON logs to this file")
@click.option("--json-output", is_flag=True, help="Output raw JSON")
@click.pass_context
def ledger(ctx: click.Context, log_level: str, log_file: Optional[str], json_output: bool):
    """Ledger hardware wallet commands."""
    ctx.ensure_object(dict)
    setup_logging(level=log_level, log_file=log_file, environment="cli")
    ctx.obj["json_output"] = json_output


@ledger.command("accounts")
@click.option("--rpc-url", default=None, help=f"JSON-RPC endpoint of the node [default: network url or {DEFAULT_RPC_URL}]")
@click.option("--account", "accounts", multiple=True, help="Account index or derivation path (repeatable)")
@click.option(
    "--transport",
    type=click.Choice(["usb", "ble", "mock"]),
    default=None,
    help=f"Device transport [default: {DEFAULT_TRANSPORT}]",
)
@click.option("--timeout", type=click.IntRange(min=1), default=None, help="Connection timeout in milliseconds")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML file with a 'networks' mapping",
)
@click.option("--network", default="default", show_default=True, help="Network name in the config file")
@click.pass_context
def list_accounts(
    ctx: click.Context,
    rpc_url: Optional[str],
    accounts: tuple[str, ...],
    transport: Optional[str],
    timeout: Optional[int],
    config_path: Optional[Path],
    network: str,
):
    """List the accounts derived from the connected Ledger."""
    try:
        base = _load_network(config_path, network)
        network_config = build_network_config(base, accounts, transport, timeout)
        url = rpc_url or network_config.get("url") or DEFAULT_RPC_URL
        info = asyncio.run(_collect_accounts(network, url, network_config))
    except (LedgerError, ImportError, ValueError, OSError, yaml.YAMLError) as exc:
        _handle_cli_error(exc)
        return

    if info is None:
        console.print(f"[yellow]{NO_LEDGER_MESSAGE}[/]")
        console.print("Make sure your network config includes a 'ledgerAccounts' list")
        return

    if ctx.obj.get("json_output"):
        click.echo(json.dumps(info, indent=2))
        return

    table = Table(title="Ledger accounts", box=box.ROUNDED)
    table.add_column("Index", style="cyan")
    table.add_column("Address", style="green")
    table.add_column("Path")
    for index, account in enumerate(info["accounts"]):
        table.add_row(str(index), account["address"], account["derivationPath"])
    console.print(table)
    console.print(f"Connected: {info['isConnected']}")


def main():
    """Main CLI entry point"""
    try:
        ledger(obj={})
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/]")
        sys.exit(130)


if __name__ == "__main__":
    main()

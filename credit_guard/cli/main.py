"""
CLI interface for Credit Guard.

Provides command-line access to the ledger and batch generation.
"""

import base64
import dataclasses
import logging
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from credit_guard.config.loader import (
    ServiceConfig,
    StoreBackend,
    StoreConfig,
    load_credentials,
    load_service_config,
)
from credit_guard.core.errors import CreditGuardError
from credit_guard.core.service import GenerationService
from credit_guard.storage.db import DEFAULT_DB_PATH
from credit_guard.storage.store import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_state = {"config": None, "db": DEFAULT_DB_PATH}


def _load_config() -> ServiceConfig:
    """Load the YAML config, or defaults backed by the --db ledger file.

    Without a config file the ledger lives in the SQLite file that
    ``init`` creates, so orders survive between commands.
    """
    if _state["config"] is None:
        return dataclasses.replace(
            ServiceConfig(), store=StoreConfig(StoreBackend.SQLITE, _state["db"])
        )
    return load_service_config(_state["config"])


def _build_service() -> GenerationService:
    """Build the service from the configured YAML file and environment."""
    config = _load_config()
    return GenerationService.from_config(config, load_credentials())


def _fail(error: Exception) -> None:
    if isinstance(error, CreditGuardError):
        console.print(f"[red]{error.code}:[/] {error.message}")
    else:
        console.print(f"[red]Error:[/] {str(error)}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to YAML service configuration"
    ),
    db_path: str = typer.Option(
        DEFAULT_DB_PATH, "--db", help="SQLite ledger file used when no config file is given"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Credit Guard CLI."""
    _state["config"] = config
    _state["db"] = db_path
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        console.print("Credit Guard - Use --help to see available commands")


@app.command()
def status():
    """Show the active configuration."""
    try:
        config = _load_config()
    except Exception as e:
        _fail(e)
    console.print(f"[green]✓[/] Store: {config.store.backend.value}")
    console.print(f"Payment mode: {config.payment.mode.value}")
    console.print(f"Free quota per day: {config.quota.free_per_day}")
    console.print(f"Provider credentials: {len(load_credentials())}")


@app.command()
def init():
    """Initialize the SQLite ledger database given by --db."""
    try:
        initialize_schema(_state["db"])
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def quota(
    ip: str = typer.Option("127.0.0.1", "--ip", help="Caller IP address"),
    device: str = typer.Option(..., "--device", "-d", help="Caller device id"),
):
    """Show today's free quota for a caller."""
    try:
        service = _build_service()
        data = service.get_quota(service.identify(ip, device))
    except Exception as e:
        _fail(e)

    console.print(f"\n[bold]Free quota[/bold] ({data['mode']} mode)")
    console.print(f"Used: {data['used']}/{data['limit']}")
    console.print(f"Remaining: {data['remaining']}")
    console.print(f"Resets at: {data['reset_at']}")
    if data["is_vip"]:
        console.print("[yellow]VIP[/yellow]")


@app.command("create-order")
def create_order(
    count: int = typer.Option(4, "--count", "-n", help="Items to purchase (4, 8 or 12)"),
    ip: str = typer.Option("127.0.0.1", "--ip", help="Caller IP address"),
    device: str = typer.Option(..., "--device", "-d", help="Caller device id"),
):
    """Create a pending payment order."""
    try:
        service = _build_service()
        data = service.create_order(service.identify(ip, device), count)
    except Exception as e:
        _fail(e)

    console.print(f"[green]✓[/] Order {data['order_id']}")
    console.print(f"Amount: {data['amount']:,.2f}")
    console.print(f"Grids: {data['remaining_grids']}/{data['total_grids']}")
    console.print(f"Payment token: {data['payment_token']}")
    console.print(f"Expires at: {data['expires_at']}")


@app.command("mock-pay")
def mock_pay(order_id: str = typer.Argument(..., help="Order to mark as paid")):
    """Mark an order as paid (development only)."""
    try:
        data = _build_service().confirm_payment(order_id)
    except Exception as e:
        _fail(e)
    console.print(f"[green]✓[/] Order {data['order_id']} is {data['status']}")


@app.command("verify-order")
def verify_order(order_id: str = typer.Argument(..., help="Order to look up")):
    """Show the status of an order."""
    try:
        data = _build_service().verify_order(order_id)
    except Exception as e:
        _fail(e)
    console.print(f"Order {data['order_id']}: {data['status']}")
    console.print(f"Grids: {data['remaining_grids']}/{data['total_grids']}")


@app.command()
def vip(
    ip: str = typer.Option("127.0.0.1", "--ip", help="Caller IP address"),
    device: str = typer.Option(..., "--device", "-d", help="Caller device id"),
):
    """Show how a caller resolves against the VIP allow-list."""
    try:
        service = _build_service()
        identity = service.identify(ip, device)
        match = service.ledger.vip_match(identity.user_id)
    except Exception as e:
        _fail(e)
    if match.is_vip:
        console.print(f"[yellow]VIP[/yellow] by {match.by}: {match.quota} quota/day")
    else:
        console.print(f"Not VIP: {service.ledger.free_per_day} quota/day")


@app.command()
def generate(
    prompts_file: Path = typer.Argument(..., help="File with one prompt per line"),
    reference: Path = typer.Option(..., "--reference", "-r", help="Reference image file"),
    description: str = typer.Option(..., "--description", help="Character description"),
    ip: str = typer.Option("127.0.0.1", "--ip", help="Caller IP address"),
    device: str = typer.Option(..., "--device", "-d", help="Caller device id"),
    token: Optional[str] = typer.Option(None, "--token", "-t", help="Payment token (paid mode)"),
    out_dir: Optional[Path] = typer.Option(None, "--out", "-o", help="Directory for composites"),
):
    """Generate a batch of stickers, one grid per four prompts."""
    try:
        prompts = [
            line.strip()
            for line in prompts_file.read_text(encoding="utf-8").splitlines()
            if line.strip()
        ]
        items = [{"id": f"p{i + 1}", "prompt": p} for i, p in enumerate(prompts)]
        reference_b64 = base64.b64encode(reference.read_bytes()).decode("ascii")

        service = _build_service()
        result = service.generate_batch(
            service.identify(ip, device), items, reference_b64, description, token=token
        )
    except Exception as e:
        _fail(e)

    _display_batch_result(result)

    if out_dir is not None:
        out_dir.mkdir(parents=True, exist_ok=True)
        for group in result.groups:
            if group.succeeded:
                path = out_dir / f"group_{group.group_index}.png"
                path.write_bytes(base64.b64decode(group.artifact.image_base64))
                console.print(f"Saved {path}")

    if not result.succeeded:
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


def _display_batch_result(result):
    """Display per-item outcomes as a table."""
    table = Table(title="Batch Result")
    table.add_column("Item")
    table.add_column("Group", justify="right")
    table.add_column("Status")
    table.add_column("Tile", justify="right")

    colors = {"success": "green", "failed": "red", "skipped": "dim"}
    for item in result.items:
        color = colors[item.status.value]
        table.add_row(
            item.item_id,
            str(item.group_index),
            f"[{color}]{item.status.value}[/{color}]",
            "" if item.tile_index is None else str(item.tile_index),
        )
    console.print(table)

    if result.rate_limited:
        console.print("[yellow]Provider rate limited; remaining groups were not dispatched[/]")
    elif result.error is not None:
        console.print(f"[red]{result.error.code}:[/] {result.error.message}")
    if result.cancelled:
        console.print("[yellow]Batch cancelled[/]")


if __name__ == "__main__":
    app()

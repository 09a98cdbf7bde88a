"""
CLI: ``bulwark config``: configuration inspection and validation.
"""

from __future__ import annotations

import typer

from bulwark.cli.utils import console, err_console, flatten, format_value
from bulwark.core.errors import ContractViolation
from bulwark.core.logging import configure_logging
from bulwark.core.settings import GatewaySettings, StoreBackend, load_settings

app = typer.Typer(no_args_is_help=True)


def _load() -> GatewaySettings:
    """Load settings and apply their logging options; exit 1 when invalid."""
    try:
        settings = load_settings()
    except ContractViolation as e:
        err_console.print(f"[red]Configuration Error:[/red] {e}")
        raise typer.Exit(1) from e
    configure_logging(level=settings.log_level, json_format=settings.json_logs)
    return settings


@app.command("show")
def show_config(
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json, env"),
) -> None:
    """Show the resolved configuration."""
    settings = _load()

    if format == "json":
        console.print_json(settings.model_dump_json())
        return

    flat = flatten(settings.model_dump(mode="json"))

    if format == "env":
        for key, value in sorted(flat.items()):
            typer.echo(f"BULWARK_{key.upper()}={format_value(value)}")
        return

    if format != "table":
        err_console.print(f"[red]Unknown format:[/red] {format} (expected table, json or env)")
        raise typer.Exit(2)

    from rich.table import Table

    console.print(f"[bold]Store:[/bold] {settings.store_backend.value}")
    table = Table(title="Gateway settings")
    table.add_column("Setting")
    table.add_column("Value")
    for key, value in sorted(flat.items()):
        table.add_row(key.replace("__", "."), format_value(value))
    console.print(table)


@app.command("validate")
def validate_config() -> None:
    """Validate configuration; exits 1 on the first invalid value."""
    settings = _load()

    if settings.store_backend == StoreBackend.MEMORY:
        console.print(
            "[yellow]WARNING:[/yellow] memory store: idempotency records do not survive restarts"
        )
    console.print("[green]✓ Configuration is valid[/green]")

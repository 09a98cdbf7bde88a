"""
Root Typer application for the bulwark CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from bulwark.cli.config import app as config_app

app = Typer(
    name="bulwark",
    help="bulwark: rate limiting, circuit breaking, caching and idempotent retries.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("bulwark")
        except PackageNotFoundError:
            from bulwark import __version__ as v
        typer.echo(f"bulwark {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """bulwark CLI: inspect and validate gateway configuration."""


app.add_typer(config_app, name="config", help="Configuration inspection.")


if __name__ == "__main__":
    app()

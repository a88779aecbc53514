"""ndc-storage CLI: configuration tooling and the connector server."""

from __future__ import annotations

from typing import Optional

import typer

from ndc_storage.cli import _exitcodes as ec
from ndc_storage.cli import serve_cmd, update_cmd, version_cmd
from ndc_storage.cli._output import print_error
from ndc_storage.logging_setup import LOG_LEVEL_ENV, setup_logging

app = typer.Typer(
    name="ndc-storage",
    help="ndc-storage: data connector for object storage services.",
    no_args_is_help=True,
)


def _version_callback(value: bool) -> None:
    if value:
        version_cmd.version_cmd()
        raise typer.Exit()


@app.callback()
def main_callback(
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        envvar=LOG_LEVEL_ENV,
        help="Log level: debug, info, warn or error (default: info)",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version", is_eager=True, callback=_version_callback
    ),
) -> None:
    """Global options for all ndc-storage commands."""
    try:
        setup_logging(log_level)
    except ValueError as e:
        print_error(f"invalid log level: {e}")
        raise typer.Exit(ec.USAGE_ERROR)


app.command(name="update")(update_cmd.update_cmd)
app.command(name="version")(version_cmd.version_cmd)
app.command(name="serve")(serve_cmd.serve_cmd)


def main() -> None:
    """Entry point for the ndc-storage CLI."""
    app()

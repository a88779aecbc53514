"""ndc-storage update: create or validate the connector configuration."""

from __future__ import annotations

import time
from pathlib import Path

import typer
from loguru import logger

from ndc_storage.cli import _exitcodes as ec
from ndc_storage.cli._output import print_error
from ndc_storage.config import (
    CONFIGURATION_FILENAME,
    default_configuration,
    load_configuration,
    write_configuration,
)
from ndc_storage.errors import ConfigurationError


def update_cmd(
    directory: str = typer.Option(
        ".",
        "--dir",
        "-d",
        envvar="HASURA_PLUGIN_CONNECTOR_CONTEXT_PATH",
        help="The directory where the configuration.yaml file is present",
    ),
) -> None:
    """Write a default configuration if none exists, otherwise validate it."""
    started = time.monotonic()
    root = Path(directory)
    logger.info(f"updating configuration in {root}")

    try:
        if not (root / CONFIGURATION_FILENAME).exists():
            path = write_configuration(root, default_configuration())
            logger.info(f"wrote default configuration to {path}")
        else:
            config = load_configuration(root)
            logger.info(f"configuration is valid ({len(config.clients)} client(s))")
    except ConfigurationError as e:
        logger.error(f"failed to update configuration: {e.message}")
        print_error(e.message)
        raise typer.Exit(ec.EXECUTION_FAILURE)
    except OSError as e:
        logger.error(f"failed to update configuration: {e}")
        print_error(str(e))
        raise typer.Exit(ec.EXECUTION_FAILURE)

    logger.info(f"updated successfully in {(time.monotonic() - started) * 1000:.0f}ms")

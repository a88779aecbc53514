"""ndc-storage serve: run the connector HTTP server."""

from __future__ import annotations

import typer
import uvicorn
from loguru import logger

from ndc_storage.cli import _exitcodes as ec
from ndc_storage.cli._output import print_error
from ndc_storage.config import load_configuration
from ndc_storage.connector import Connector
from ndc_storage.errors import ConnectorError
from ndc_storage.server import create_app


def serve_cmd(
    configuration: str = typer.Option(
        ".",
        "--configuration",
        envvar="HASURA_CONFIGURATION_DIRECTORY",
        help="Directory containing configuration.yaml",
    ),
    host: str = typer.Option("0.0.0.0", "--host", help="Interface to bind"),
    port: int = typer.Option(8080, "--port", envvar="HASURA_CONNECTOR_PORT", help="Port to listen on"),
) -> None:
    """Start the connector server."""
    try:
        config = load_configuration(configuration)
        connector = Connector.from_configuration(config)
    except ConnectorError as e:
        logger.error(f"failed to start connector: {e.message}")
        print_error(e.message)
        raise typer.Exit(ec.EXECUTION_FAILURE)

    logger.info(f"listening on {host}:{port}")
    uvicorn.run(create_app(connector), host=host, port=port, log_level="warning")

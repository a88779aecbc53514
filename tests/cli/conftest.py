"""Shared fixtures for CLI tests."""

from __future__ import annotations

import sys

import pytest
from loguru import logger
from typer.testing import CliRunner

from ndc_storage.cli import app


@pytest.fixture
def runner():
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def invoke(runner):
    """Invoke the CLI with the given arguments."""

    def _invoke(args: list[str]):
        return runner.invoke(app, args, catch_exceptions=False)

    return _invoke


@pytest.fixture(autouse=True)
def reset_logging():
    # The CLI callback points the loguru sink at the runner's temporary stderr.
    yield
    logger.remove()
    logger.add(sys.stderr)

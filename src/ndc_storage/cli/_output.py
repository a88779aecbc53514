"""Output helpers for the CLI."""

from __future__ import annotations

import sys


def print_error(msg: str) -> None:
    """Print an error message to stderr."""
    print(f"Error: {msg}", file=sys.stderr)

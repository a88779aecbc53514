"""ndc-storage version: print the build version."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

DISTRIBUTION = "ndc-storage"


def package_version() -> str:
    try:
        return version(DISTRIBUTION)
    except PackageNotFoundError:
        return "unknown"


def version_cmd() -> None:
    """Print the connector version."""
    print(f"{DISTRIBUTION} {package_version()}")

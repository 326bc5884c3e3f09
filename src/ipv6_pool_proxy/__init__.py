"""HTTP proxy that sources each listening port's traffic from its own address in an IPv6 subnet."""

import pathlib
import tomllib
from importlib import metadata

DIST_NAME = "ipv6-pool-proxy"


def _version_from_pyproject() -> str | None:
    # Source checkouts: walk up to the project's own pyproject.toml
    here = pathlib.Path(__file__).parent
    for parent in here.parents:
        pyproject_path = parent / "pyproject.toml"
        if not pyproject_path.exists():
            continue
        with pyproject_path.open("rb") as f:
            project = tomllib.load(f).get("project", {})
        if project.get("name") == DIST_NAME:
            return project.get("version")
    return None


def get_version() -> str:
    """Version of the installed distribution, or of the source tree."""
    try:
        return metadata.version(DIST_NAME)
    except metadata.PackageNotFoundError:
        return _version_from_pyproject() or "0.0.0"


__version__ = get_version()

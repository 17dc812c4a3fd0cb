# Dataverse Dataset MCP Server
# File: __init__.py
# Version: v1

"""Top-level package for the Dataverse Dataset MCP Server.

The core of the package is a metadata-driven discovery and dataset engine:

- ``analyzer``       static analysis of FetchXML-style query documents
- ``client``         typed async client over the Dataverse Web API
- ``views``          saved / personal view discovery
- ``relationships``  multi-strategy relationship resolution
- ``executor``       paged record queries for views and raw query text
- ``dataset``        materialisation of record pages into typed datasets
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

__all__ = ["__version__"]


def _resolve_version() -> str:
    """Resolve installed distribution version.

    Falls back to a reasonable default when running from source without an
    installed distribution.
    """
    try:
        return version("mcp-dataverse-dataset-server")
    except PackageNotFoundError:
        return "0.1.0"


__version__ = _resolve_version()

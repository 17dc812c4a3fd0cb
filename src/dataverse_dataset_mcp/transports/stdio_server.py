# Dataverse Dataset MCP Server
# File: transports/stdio_server.py
# Version: v1

"""STDIO entrypoint for the Dataverse Dataset MCP server.

This is the script behind the ``dataverse-dataset-mcp`` console command.

It:

- configures logging to stderr (stdout carries the MCP protocol),
- creates a FastMCP server,
- registers the Dataverse dataset tools, and
- runs the built-in stdio transport.
"""

from __future__ import annotations

import logging
import os
import sys

from mcp.server.fastmcp import FastMCP

from ..tools import tasks


def main() -> None:
    """Synchronous entrypoint for console_scripts."""
    logging.basicConfig(
        level=os.getenv("DATAVERSE_LOG_LEVEL", "INFO").upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    mcp = FastMCP("dataverse-dataset-mcp")

    tasks.register_tools(mcp)

    # Let FastMCP handle stdio + event loop setup.
    mcp.run()


if __name__ == "__main__":
    main()

# Dataverse Dataset MCP Server
# File: transports/__init__.py
# Version: v1

"""Transport entrypoints for the MCP server."""

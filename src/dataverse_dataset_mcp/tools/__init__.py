# Dataverse Dataset MCP Server
# File: tools/__init__.py
# Version: v1

"""MCP tool layer: library-style tasks plus ``register_tools``."""

from __future__ import annotations

from .tasks import register_tools

__all__ = ["register_tools"]

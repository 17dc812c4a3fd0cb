# Dataverse Dataset MCP Server
# File: tests/test_sanity.py
# Version: v1

"""Basic sanity tests for the package scaffolding."""

import asyncio

import dataverse_dataset_mcp
from dataverse_dataset_mcp.auth import OAuthClient
from dataverse_dataset_mcp.client import DataverseClient
from dataverse_dataset_mcp.config import DataverseConfig


def test_version_is_exposed() -> None:
    assert isinstance(dataverse_dataset_mcp.__version__, str)
    assert dataverse_dataset_mcp.__version__


def test_config_from_env_minimal() -> None:
    config = DataverseConfig.from_env()
    assert config is not None


def test_client_ping_runs() -> None:
    config = DataverseConfig.from_env()
    oauth = OAuthClient(config=config)
    client = DataverseClient(config=config, oauth=oauth)

    # ping returns a boolean even when DATAVERSE_URL is not configured.
    result = asyncio.run(client.ping())
    assert isinstance(result, bool)

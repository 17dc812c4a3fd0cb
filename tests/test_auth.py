# Dataverse Dataset MCP Server
# File: tests/test_auth.py
# Version: v1

from __future__ import annotations

from urllib.parse import parse_qs

import httpx
import pytest

from dataverse_dataset_mcp.auth import OAuthClient
from dataverse_dataset_mcp.client import DataverseClient
from dataverse_dataset_mcp.config import DataverseConfig
from dataverse_dataset_mcp.errors import ConfigurationError, TransportError
from dataverse_dataset_mcp.executor import RecordQueryExecutor
from dataverse_dataset_mcp.models import RecordQueryOptions, ViewDefinition


def _config(**overrides) -> DataverseConfig:
    values = dict(
        environment_url="https://contoso.crm.dynamics.com/",
        oauth_token_url="https://login.example.com/tenant/oauth2/v2.0/token",
        client_id="app-id",
        client_secret="secret",
        mock_mode=False,
    )
    values.update(overrides)
    return DataverseConfig(**values)


@pytest.mark.asyncio
async def test_token_is_requested_once_and_cached() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(parse_qs(request.content.decode()))
        return httpx.Response(200, json={"access_token": "abc", "expires_in": 3600})

    oauth = OAuthClient(config=_config(), transport=httpx.MockTransport(handler))

    assert await oauth.get_access_token() == "abc"
    assert await oauth.get_access_token() == "abc"
    assert len(calls) == 1
    assert calls[0]["grant_type"] == ["client_credentials"]
    assert calls[0]["scope"] == ["https://contoso.crm.dynamics.com/.default"]


@pytest.mark.asyncio
async def test_incomplete_settings_raise_configuration_error() -> None:
    oauth = OAuthClient(config=_config(client_secret=None))

    with pytest.raises(ConfigurationError):
        await oauth.get_access_token()


@pytest.mark.asyncio
async def test_rejected_credentials_raise_transport_error() -> None:
    transport = httpx.MockTransport(lambda r: httpx.Response(401, text="invalid_client"))
    oauth = OAuthClient(config=_config(), transport=transport)

    with pytest.raises(TransportError) as excinfo:
        await oauth.get_access_token()

    assert excinfo.value.status_code == 401
    assert "invalid_client" in (excinfo.value.body_preview or "")


@pytest.mark.asyncio
async def test_non_json_token_response_raises_transport_error() -> None:
    transport = httpx.MockTransport(lambda r: httpx.Response(200, text="<html>proxy</html>"))
    oauth = OAuthClient(config=_config(), transport=transport)

    with pytest.raises(TransportError) as excinfo:
        await oauth.get_access_token()

    assert "<html>proxy</html>" in (excinfo.value.body_preview or "")


@pytest.mark.asyncio
async def test_non_object_token_response_raises_transport_error() -> None:
    transport = httpx.MockTransport(lambda r: httpx.Response(200, json=["abc"]))
    oauth = OAuthClient(config=_config(), transport=transport)

    with pytest.raises(TransportError):
        await oauth.get_access_token()


@pytest.mark.asyncio
async def test_executor_reports_unusable_token_response_as_failed_page() -> None:
    config = _config()
    transport = httpx.MockTransport(lambda r: httpx.Response(200, text="<html>proxy</html>"))
    client = DataverseClient(
        config=config,
        oauth=OAuthClient(config=config, transport=transport),
        transport=transport,
    )
    view = ViewDefinition(
        id="00000000-0000-0000-0000-000000000001",
        name="Active Accounts",
        entity_name="account",
        query_text='<fetch><entity name="account" /></fetch>',
    )

    page = await RecordQueryExecutor(client).execute(view, RecordQueryOptions())

    assert page.success is False
    assert "did not return JSON" in (page.error or "")

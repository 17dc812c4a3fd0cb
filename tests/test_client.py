# Dataverse Dataset MCP Server
# File: tests/test_client.py
# Version: v1

"""Web API client tests against an in-memory httpx transport."""

from __future__ import annotations

import json
from typing import Callable, List

import httpx
import pytest

from dataverse_dataset_mcp.client import DataverseClient
from dataverse_dataset_mcp.config import DataverseConfig
from dataverse_dataset_mcp.errors import (
    ConfigurationError,
    MalformedResponseError,
    TransportError,
)
from dataverse_dataset_mcp.executor import RecordQueryExecutor
from dataverse_dataset_mcp.models import RecordListQuery, RecordQueryOptions, ViewDefinition

BASE = "https://contoso.crm.dynamics.com/api/data/v9.2"


class StaticToken:
    async def get_access_token(self) -> str:
        return "token-123"


def _config(url: str | None = "https://contoso.crm.dynamics.com") -> DataverseConfig:
    return DataverseConfig(
        environment_url=url,
        oauth_token_url=None,
        client_id=None,
        client_secret=None,
        mock_mode=False,
    )


def _client(handler: Callable[[httpx.Request], httpx.Response], seen: List[httpx.Request]):
    def record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    return DataverseClient(
        config=_config(),
        oauth=StaticToken(),
        transport=httpx.MockTransport(record),
    )


@pytest.mark.asyncio
async def test_entity_definition_is_mapped_and_request_is_authorized() -> None:
    seen: List[httpx.Request] = []
    payload = {
        "LogicalName": "account",
        "DisplayName": {"UserLocalizedLabel": {"Label": "Account"}},
        "PrimaryIdAttribute": "accountid",
        "PrimaryNameAttribute": "name",
        "EntitySetName": "accounts",
    }
    client = _client(lambda r: httpx.Response(200, json=payload), seen)

    definition = await client.get_entity_definition("account")

    assert definition is not None
    assert definition.display_name == "Account"
    assert definition.entity_set_name == "accounts"
    request = seen[0]
    assert request.url.path == "/api/data/v9.2/EntityDefinitions(LogicalName='account')"
    assert request.headers["Authorization"] == "Bearer token-123"
    assert "odata.include-annotations" in request.headers["Prefer"]


@pytest.mark.asyncio
async def test_missing_entity_returns_none() -> None:
    client = _client(lambda r: httpx.Response(404, json={"error": {"message": "nope"}}), [])

    assert await client.get_entity_definition("nosuchtable") is None
    assert await client.get_lookup_attributes("nosuchtable") == []


@pytest.mark.asyncio
async def test_batched_definitions_use_one_request() -> None:
    seen: List[httpx.Request] = []
    payload = {
        "value": [
            {"LogicalName": "account", "EntitySetName": "accounts"},
            {"LogicalName": "contact", "EntitySetName": "contacts"},
        ]
    }
    client = _client(lambda r: httpx.Response(200, json=payload), seen)

    definitions = await client.get_entity_definitions(["contact", "account", "contact"])

    assert [d.logical_name for d in definitions] == ["account", "contact"]
    assert definitions[0].display_name == "account"
    assert len(seen) == 1
    assert seen[0].url.params["$filter"] == "LogicalName eq 'account' or LogicalName eq 'contact'"


@pytest.mark.asyncio
async def test_empty_batch_makes_no_request() -> None:
    seen: List[httpx.Request] = []
    client = _client(lambda r: httpx.Response(500), seen)

    assert await client.get_entity_definitions([]) == []
    assert seen == []


@pytest.mark.asyncio
async def test_string_literals_are_escaped() -> None:
    seen: List[httpx.Request] = []
    client = _client(lambda r: httpx.Response(200, json={"value": []}), seen)

    await client.list_saved_queries(entity_name="account", search="O'Brien")

    assert seen[0].url.params["$filter"] == (
        "returnedtypecode eq 'account' and contains(name,'O''Brien')"
    )


@pytest.mark.asyncio
async def test_listing_follows_next_link() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if "skiptoken" in str(request.url):
            return httpx.Response(200, json={"value": [{"returnedtypecode": "contact"}]})
        return httpx.Response(
            200,
            json={
                "value": [{"returnedtypecode": "account"}, {"returnedtypecode": "contact"}],
                "@odata.nextLink": f"{BASE}/savedqueries?$skiptoken=abc",
            },
        )

    client = _client(handler, seen)

    assert await client.list_entities_with_views() == ["account", "contact"]
    assert len(seen) == 2


@pytest.mark.asyncio
async def test_error_response_carries_analysis() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            headers={"Retry-After": "5"},
            json={"error": {"code": "0x80072322", "message": "Too many requests"}},
        )

    client = _client(handler, [])

    with pytest.raises(TransportError) as excinfo:
        await client.list_user_queries("account")

    err = excinfo.value
    assert err.status_code == 429
    assert err.analysis is not None
    assert err.analysis.is_rate_limited is True
    assert err.analysis.retry_after_seconds == 5.0


@pytest.mark.asyncio
async def test_network_failure_becomes_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler, [])

    with pytest.raises(TransportError):
        await client.get_saved_query("00000000-0000-0000-0000-000000000001")


@pytest.mark.asyncio
async def test_unexpected_payload_shape_is_malformed() -> None:
    client = _client(lambda r: httpx.Response(200, json={"items": []}), [])

    with pytest.raises(MalformedResponseError):
        await client.get_one_to_many_relationships(referenced_entity="account")


@pytest.mark.asyncio
async def test_non_json_body_is_malformed() -> None:
    client = _client(lambda r: httpx.Response(200, text="<html/>"), [])

    with pytest.raises(MalformedResponseError):
        await client.list_system_forms()


@pytest.mark.asyncio
async def test_collection_name_falls_back_to_logical_name() -> None:
    client = _client(lambda r: httpx.Response(500, text="boom"), [])

    assert await client.get_collection_name("contoso_widget") == "contoso_widget"


@pytest.mark.asyncio
async def test_list_records_uses_view_reference_and_page_size() -> None:
    seen: List[httpx.Request] = []
    client = _client(lambda r: httpx.Response(200, json={"value": []}), seen)

    await client.list_records(
        "accounts",
        RecordListQuery(
            saved_query="{00000000-0000-0000-00aa-000010001001}",
            page_size=25,
            include_count=True,
        ),
    )

    params = seen[0].url.params
    assert seen[0].url.path == "/api/data/v9.2/accounts"
    assert params["savedQuery"] == "00000000-0000-0000-00aa-000010001001"
    assert params["$count"] == "true"
    assert "$top" not in params
    assert "odata.maxpagesize=25" in seen[0].headers["Prefer"]


@pytest.mark.asyncio
async def test_fetch_xml_ignores_structured_options() -> None:
    seen: List[httpx.Request] = []
    client = _client(lambda r: httpx.Response(200, json={"value": []}), seen)
    fetch = '<fetch><entity name="account" /></fetch>'

    await client.list_records(
        "accounts", RecordListQuery(fetch_xml=fetch, filter_expr="statecode eq 0")
    )

    assert dict(seen[0].url.params) == {"fetchXml": fetch}


@pytest.mark.asyncio
async def test_next_link_is_followed_verbatim() -> None:
    seen: List[httpx.Request] = []
    client = _client(lambda r: httpx.Response(200, json={"value": [{"accountid": "1"}]}), seen)
    next_link = f"{BASE}/accounts?$skiptoken=page2"

    data = await client.list_records(
        "accounts", RecordListQuery(next_link=next_link, filter_expr="ignored eq 1")
    )

    assert data["value"] == [{"accountid": "1"}]
    assert str(seen[0].url) == str(httpx.URL(next_link))


@pytest.mark.asyncio
async def test_count_strips_byte_order_mark() -> None:
    seen: List[httpx.Request] = []
    client = _client(lambda r: httpx.Response(200, text="\ufeff42"), seen)

    assert await client.count_records("accounts", RecordListQuery(filter_expr="statecode eq 0")) == 42
    assert seen[0].url.path == "/api/data/v9.2/accounts/$count"
    assert seen[0].headers["Accept"] == "text/plain"


@pytest.mark.asyncio
async def test_non_integer_count_is_malformed() -> None:
    client = _client(lambda r: httpx.Response(200, text="many"), [])

    with pytest.raises(MalformedResponseError):
        await client.count_records("accounts")


@pytest.mark.asyncio
async def test_record_crud() -> None:
    seen: List[httpx.Request] = []
    new_id = "11111111-2222-3333-4444-555555555555"

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(204, headers={"OData-EntityId": f"{BASE}/accounts({new_id})"})
        if request.method == "DELETE":
            return httpx.Response(404)
        return httpx.Response(204)

    client = _client(handler, seen)

    assert await client.create_record("accounts", {"name": "Fabrikam"}) == new_id
    assert json.loads(seen[0].content) == {"name": "Fabrikam"}

    await client.update_record("accounts", new_id, {"name": "Fabrikam Inc"})
    assert seen[1].method == "PATCH"
    assert seen[1].headers["If-Match"] == "*"

    assert await client.delete_record("accounts", new_id) is False


@pytest.mark.asyncio
async def test_missing_environment_url_is_configuration_error() -> None:
    client = DataverseClient(
        config=_config(url=None),
        oauth=StaticToken(),
        transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})),
    )

    assert await client.ping() is False
    with pytest.raises(ConfigurationError):
        await client.list_entity_definitions()


@pytest.mark.asyncio
async def test_next_link_on_another_host_is_refused_before_sending_token() -> None:
    seen: List[httpx.Request] = []
    client = _client(lambda r: httpx.Response(200, json={"value": []}), seen)

    with pytest.raises(TransportError) as excinfo:
        await client.list_records(
            "accounts", RecordListQuery(next_link="https://attacker.example/collect?x=1")
        )

    assert excinfo.value.url == "https://attacker.example/collect?x=1"
    assert seen == []


@pytest.mark.asyncio
async def test_next_link_with_other_scheme_or_port_is_refused() -> None:
    seen: List[httpx.Request] = []
    client = _client(lambda r: httpx.Response(200, json={"value": []}), seen)

    for link in (
        "http://contoso.crm.dynamics.com/api/data/v9.2/accounts?$skiptoken=x",
        "https://contoso.crm.dynamics.com:8443/api/data/v9.2/accounts?$skiptoken=x",
    ):
        with pytest.raises(TransportError):
            await client.list_records("accounts", RecordListQuery(next_link=link))

    assert seen == []


@pytest.mark.asyncio
async def test_foreign_continuation_token_fails_the_page() -> None:
    seen: List[httpx.Request] = []
    client = _client(lambda r: httpx.Response(404, json={}), seen)
    view = ViewDefinition(
        id="00000000-0000-0000-0000-000000000001",
        name="Active Accounts",
        entity_name="account",
        query_text='<fetch><entity name="account" /></fetch>',
    )

    page = await RecordQueryExecutor(client).execute(
        view, RecordQueryOptions(continuation_token="https://attacker.example/collect?x=1")
    )

    assert page.success is False
    assert "attacker.example" in (page.error or "")
    assert all(r.url.host == "contoso.crm.dynamics.com" for r in seen)

# Dataverse Dataset MCP Server
# File: tests/test_views.py
# Version: v1

from __future__ import annotations

import pytest

from dataverse_dataset_mcp.errors import TransportError
from dataverse_dataset_mcp.mock import (
    ACCOUNT_ACTIVE_VIEW_ID,
    CONTACT_PERSONAL_VIEW_ID,
    MockDataverseClient,
)
from dataverse_dataset_mcp.views import ViewDiscoveryService


class NoPersonalViewsClient(MockDataverseClient):
    async def list_user_queries(self, entity_name=None, search=None):
        raise TransportError("Forbidden", status_code=403)

    async def get_saved_query(self, view_id):
        raise TransportError("Bad Request", status_code=400)


class BrokenSavedViewsClient(MockDataverseClient):
    async def list_saved_queries(self, entity_name=None, search=None, query_type=None):
        raise TransportError("Server error", status_code=500)


class NoMetadataClient(MockDataverseClient):
    async def get_entity_definitions(self, logical_names):
        raise TransportError("Server error", status_code=500)


@pytest.mark.asyncio
async def test_list_views_merges_saved_and_personal_sorted_by_name() -> None:
    service = ViewDiscoveryService(MockDataverseClient())

    views = await service.list_views("contact")

    assert [v.name for v in views] == ["Active Contacts", "My Contoso Contacts"]
    assert [v.is_personal for v in views] == [False, True]
    assert [v.is_private for v in views] == [False, True]
    assert all(v.entity_name == "contact" for v in views)


@pytest.mark.asyncio
async def test_personal_view_id_resolves_as_personal() -> None:
    service = ViewDiscoveryService(MockDataverseClient())

    view = await service.get_view("{" + CONTACT_PERSONAL_VIEW_ID.upper() + "}")

    assert view is not None
    assert view.is_personal is True
    assert view.query_parameter == "userQuery"


@pytest.mark.asyncio
async def test_unknown_view_id_is_none() -> None:
    service = ViewDiscoveryService(MockDataverseClient())

    assert await service.get_view("ffffffff-0000-0000-0000-000000000000") is None


@pytest.mark.asyncio
async def test_saved_lookup_failure_still_checks_personal_views() -> None:
    service = ViewDiscoveryService(NoPersonalViewsClient())

    view = await service.get_view(CONTACT_PERSONAL_VIEW_ID)

    assert view is not None
    assert view.name == "My Contoso Contacts"


@pytest.mark.asyncio
async def test_personal_listing_failure_keeps_saved_views() -> None:
    service = ViewDiscoveryService(NoPersonalViewsClient())

    views = await service.list_views("contact")

    assert [v.name for v in views] == ["Active Contacts"]


@pytest.mark.asyncio
async def test_saved_listing_failure_propagates() -> None:
    service = ViewDiscoveryService(BrokenSavedViewsClient())

    with pytest.raises(TransportError):
        await service.list_views("account")


@pytest.mark.asyncio
async def test_default_view() -> None:
    service = ViewDiscoveryService(MockDataverseClient())

    view = await service.get_default_view("account")

    assert view is not None
    assert view.id == ACCOUNT_ACTIVE_VIEW_ID
    assert view.is_default is True


@pytest.mark.asyncio
async def test_search_views_spans_both_namespaces() -> None:
    service = ViewDiscoveryService(MockDataverseClient())

    views = await service.search_views("contacts")

    assert [v.name for v in views] == ["Active Contacts", "My Contoso Contacts"]


@pytest.mark.asyncio
async def test_entities_with_display_names() -> None:
    service = ViewDiscoveryService(MockDataverseClient())

    infos = await service.list_entities_with_display_names()

    assert [(i.logical_name, i.display_name) for i in infos] == [
        ("account", "Account"),
        ("contact", "Contact"),
    ]
    assert infos[0].display_text == "Account (account)"


@pytest.mark.asyncio
async def test_entities_fall_back_to_logical_names() -> None:
    service = ViewDiscoveryService(NoMetadataClient())

    infos = await service.list_entities_with_display_names()

    assert [i.display_name for i in infos] == ["account", "contact"]
    assert infos[0].display_text == "account"

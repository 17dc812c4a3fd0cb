# Dataverse Dataset MCP Server
# File: tests/test_forms.py
# Version: v1

from __future__ import annotations

import pytest

from dataverse_dataset_mcp.cache import DiscoveryCache
from dataverse_dataset_mcp.forms import (
    FormDiscoveryService,
    parse_form_controls,
    split_control_name,
)
from dataverse_dataset_mcp.mock import (
    ACCOUNT_MAIN_FORM_ID,
    CONTACT_ACTIVE_VIEW_ID,
    MOCK_CONTROL_NAME,
    MockDataverseClient,
)

LEGACY_FORM = """<form><tabs><tab><columns><column><sections><section><rows><row><cell>
  <control id="map">
    <customcontrol namespace="Contoso" constructor="MapControl" version="2.0.0" />
  </control>
</cell></row></rows></section></sections></column></columns></tab></tabs></form>"""


class CountingClient(MockDataverseClient):
    def __init__(self) -> None:
        super().__init__()
        self.form_calls = 0

    async def list_system_forms(self, entity_name=None, contains=None, publisher=None):
        self.form_calls += 1
        return await super().list_system_forms(entity_name, contains, publisher)


def test_split_control_name() -> None:
    assert split_control_name("contoso_Contoso.DatasetGrid") == ("Contoso", "DatasetGrid")
    assert split_control_name("Contoso.DatasetGrid") == ("Contoso", "DatasetGrid")
    assert split_control_name("DatasetGrid") == ("", "DatasetGrid")


def test_parse_legacy_custom_control() -> None:
    controls = parse_form_controls(LEGACY_FORM)

    assert len(controls) == 1
    control = controls[0]
    assert control.control_id == "map"
    assert (control.namespace, control.constructor) == ("Contoso", "MapControl")
    assert control.version == "2.0.0"
    assert control.data_set is None


def test_parse_tolerates_broken_documents() -> None:
    assert parse_form_controls("<form><tabs>") == []
    assert parse_form_controls(None) == []


@pytest.mark.asyncio
async def test_discover_forms_reads_data_set_binding() -> None:
    service = FormDiscoveryService(MockDataverseClient())

    matches = await service.discover_forms(MOCK_CONTROL_NAME)

    assert len(matches) == 1
    match = matches[0]
    assert match.form_id == ACCOUNT_MAIN_FORM_ID
    assert match.entity_name == "account"

    control = match.controls[0]
    assert control.control_id == "contacts_grid"
    assert control.name == "contoso_Contoso.DatasetGrid"
    assert control.form_factor == "2"
    assert control.parameters == {"pageSize": "25"}

    data_set = control.data_set
    assert data_set is not None
    assert data_set.view_id == "{" + CONTACT_ACTIVE_VIEW_ID + "}"
    assert data_set.target_entity == "contact"
    assert data_set.is_related is True
    assert data_set.enable_view_picker is True
    assert data_set.filtered_view_ids == ["{" + CONTACT_ACTIVE_VIEW_ID + "}"]


@pytest.mark.asyncio
async def test_namespace_must_match_when_given() -> None:
    service = FormDiscoveryService(MockDataverseClient())

    assert await service.discover_forms("Fabrikam.DatasetGrid") == []
    assert len(await service.discover_forms("DatasetGrid")) == 1


@pytest.mark.asyncio
async def test_second_discovery_is_served_from_cache() -> None:
    client = CountingClient()
    service = FormDiscoveryService(client, cache=DiscoveryCache())

    first = await service.discover_forms(MOCK_CONTROL_NAME, publisher="contoso")
    second = await service.discover_forms(MOCK_CONTROL_NAME, publisher="contoso")
    await service.discover_forms("Fabrikam.Unknown")
    await service.discover_forms("Fabrikam.Unknown")

    assert first == second
    assert client.form_calls == 2


@pytest.mark.asyncio
async def test_entity_and_publisher_narrow_the_scan() -> None:
    service = FormDiscoveryService(MockDataverseClient())

    assert await service.discover_forms(MOCK_CONTROL_NAME, entity_name="contact") == []
    assert await service.discover_forms(MOCK_CONTROL_NAME, publisher="fabrikam") == []


@pytest.mark.asyncio
async def test_controls_on_forms_of_a_table() -> None:
    service = FormDiscoveryService(MockDataverseClient())

    matches = await service.get_controls_on_forms("account")

    assert [m.form_id for m in matches] == [ACCOUNT_MAIN_FORM_ID]
    assert matches[0].to_dict()["controls"][0]["data_set"]["relationship_name"] == (
        "contact_customer_accounts"
    )

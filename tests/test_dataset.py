# Dataverse Dataset MCP Server
# File: tests/test_dataset.py
# Version: v1

from __future__ import annotations

import pytest

from dataverse_dataset_mcp.analyzer import analyze_query
from dataverse_dataset_mcp.client import FORMATTED_VALUE_SUFFIX, LOOKUP_LOGICAL_NAME_SUFFIX
from dataverse_dataset_mcp.dataset import (
    DatasetMaterializer,
    format_display_name,
    infer_data_type,
    map_attribute_type,
)
from dataverse_dataset_mcp.mock import (
    ACCOUNT_ALL_VIEW_ID,
    CONTACT_ACTIVE_VIEW_ID,
    MockDataverseClient,
)
from dataverse_dataset_mcp.models import (
    AttributeDefinition,
    LookupValue,
    OptionSetValue,
    RecordListQuery,
    RecordPage,
    ScalarValue,
)
from dataverse_dataset_mcp.views import ViewDiscoveryService


def _contact(contact_id, **fields):
    row = {"contactid": contact_id}
    row.update(fields)
    return row


@pytest.mark.asyncio
async def test_view_layout_drives_columns_and_field_kinds() -> None:
    client = MockDataverseClient()
    view = await ViewDiscoveryService(client).get_view(CONTACT_ACTIVE_VIEW_ID)
    data = await client.list_records("contacts", RecordListQuery())
    page = RecordPage(entities=data["value"], entity_name="contact", page_size=50)
    attributes = await client.get_attribute_definitions("contact")
    entity = await client.get_entity_definition("contact")

    dataset = DatasetMaterializer().materialize_view(page, view, attributes, entity)

    assert dataset.column_source == "layout"
    assert [c.name for c in dataset.columns] == ["fullname", "parentcustomerid", "emailaddress1"]
    types = {c.name: c.data_type for c in dataset.columns}
    assert types["parentcustomerid"] == "Lookup.Customer"
    assert dataset.columns[0].is_primary is True
    assert dataset.columns[0].width == 300

    record = dataset.records["c0000000-0000-0000-0000-000000000001"]
    company = record.fields["parentcustomerid"]
    assert isinstance(company, LookupValue)
    assert company.name == "Contoso Ltd"
    assert company.entity_type == "account"
    assert isinstance(record.fields["fullname"], ScalarValue)
    assert len(dataset.sorted_record_ids) == 4


@pytest.mark.asyncio
async def test_option_set_fields_carry_labels() -> None:
    client = MockDataverseClient()
    view = await ViewDiscoveryService(client).get_view(ACCOUNT_ALL_VIEW_ID)
    rows = (await client.list_records("accounts", RecordListQuery()))["value"]
    page = RecordPage(entities=rows, entity_name="account")
    attributes = await client.get_attribute_definitions("account")

    dataset = DatasetMaterializer().materialize_view(page, view, attributes)

    status = dataset.records[rows[2]["accountid"]].fields["statecode"]
    assert isinstance(status, OptionSetValue)
    assert status.value == 1
    assert status.label == "Inactive"


def test_failed_page_keeps_columns_and_reports_error() -> None:
    analysis = analyze_query(
        '<fetch><entity name="account"><attribute name="name" /><attribute name="revenue" /></entity></fetch>'
    )
    page = RecordPage.failure("Failed records (HTTP 500)", entity_name="account")

    dataset = DatasetMaterializer().materialize(page, analysis=analysis)

    assert [c.name for c in dataset.columns] == ["name", "revenue"]
    assert dataset.column_source == "query"
    assert dataset.records == {}
    assert dataset.error == "Failed records (HTTP 500)"


def test_zero_records_still_have_columns() -> None:
    analysis = analyze_query('<fetch><entity name="account"><attribute name="name" /></entity></fetch>')

    dataset = DatasetMaterializer().materialize(RecordPage(entity_name="account"), analysis=analysis)

    assert [c.name for c in dataset.columns] == ["name"]
    assert dataset.records == {}
    assert dataset.error is None


def test_missing_fields_are_not_padded() -> None:
    page = RecordPage(
        entities=[
            _contact("c1", fullname="Yvonne", emailaddress1="y@contoso.com"),
            _contact("c2", fullname="Nancy"),
        ],
        entity_name="contact",
    )

    dataset = DatasetMaterializer().materialize(page)

    assert "emailaddress1" in dataset.records["c1"].fields
    assert "emailaddress1" not in dataset.records["c2"].fields


def test_duplicate_and_missing_ids() -> None:
    page = RecordPage(
        entities=[
            _contact("c1", fullname="First"),
            _contact("c1", fullname="Second"),
            {"fullname": "No id"},
        ],
        entity_name="contact",
    )

    dataset = DatasetMaterializer().materialize(page)

    assert list(dataset.records) == ["c1"]
    assert dataset.records["c1"].fields["fullname"].raw == "First"


def test_columns_from_records_map_lookup_keys_back() -> None:
    key = "_parentcustomerid_value"
    page = RecordPage(
        entities=[
            _contact(
                "c1",
                fullname="Yvonne",
                **{
                    key: "a1",
                    key + FORMATTED_VALUE_SUFFIX: "Contoso Ltd",
                    key + LOOKUP_LOGICAL_NAME_SUFFIX: "account",
                },
            ),
            _contact("c2", fullname="Nancy", **{key: None}),
        ],
        entity_name="contact",
    )

    dataset = DatasetMaterializer().materialize(page)

    assert dataset.column_source == "records"
    assert [c.name for c in dataset.columns] == ["contactid", "fullname", "parentcustomerid"]
    assert dataset.columns[2].data_type == "Lookup.Simple"
    assert dataset.columns[2].display_name == "Parentcustomerid"
    assert dataset.records["c1"].fields["parentcustomerid"] == LookupValue(
        id="a1", name="Contoso Ltd", entity_type="account"
    )
    assert dataset.records["c2"].fields["parentcustomerid"] == ScalarValue(raw=None)


def test_paging_flags() -> None:
    page = RecordPage(
        entities=[_contact("c3"), _contact("c4")],
        entity_name="contact",
        total_count=5,
        page_number=2,
        page_size=2,
    )

    paging = DatasetMaterializer().materialize(page).paging

    assert paging.total_pages == 3
    assert paging.has_next_page is True
    assert paging.has_previous_page is True

    last = DatasetMaterializer().materialize(
        RecordPage(entity_name="contact", total_count=5, page_number=3, page_size=2)
    ).paging
    assert last.has_next_page is False


def test_resumed_page_has_previous_page() -> None:
    page = RecordPage(
        entities=[_contact("c4")],
        entity_name="contact",
        total_count=5,
        page_size=2,
        next_link="https://contoso.crm.dynamics.com/api/data/v9.2/contacts?$skiptoken=3",
        resumed=True,
    )

    paging = DatasetMaterializer().materialize(page).paging

    assert paging.has_previous_page is True
    assert paging.has_next_page is True

    tail = DatasetMaterializer().materialize(
        RecordPage(entity_name="contact", total_count=5, page_size=2, resumed=True)
    ).paging
    assert tail.has_previous_page is True
    assert tail.has_next_page is False


def test_to_dict_is_json_shaped() -> None:
    page = RecordPage(entities=[_contact("c1", fullname="Yvonne")], entity_name="contact")

    out = DatasetMaterializer().materialize(page).to_dict()

    assert out["sorted_record_ids"] == ["c1"]
    assert out["records"]["c1"]["fields"]["fullname"] == {
        "kind": "scalar",
        "raw": "Yvonne",
        "formatted": None,
    }


def test_type_helpers() -> None:
    assert map_attribute_type(AttributeDefinition("actualdurationminutes", "Duration", "Integer")) == "Whole.Duration"
    assert map_attribute_type(AttributeDefinition("new_multiselectcolors", "Colors", "Virtual")) == "MultiSelectPicklist"
    assert map_attribute_type(AttributeDefinition("x", "X", "Unheard")) == "SingleLine.Text"

    assert infer_data_type(True) == "TwoOptions"
    assert infer_data_type(3) == "Whole.None"
    assert infer_data_type(2.5) == "Decimal"
    assert infer_data_type("2024-05-01T10:00:00Z") == "DateAndTime.DateAndTime"
    assert infer_data_type(None) == "SingleLine.Text"

    assert format_display_name("new_firstname") == "New firstname"
    assert format_display_name("firstName") == "First Name"

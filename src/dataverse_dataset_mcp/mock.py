# Dataverse Dataset MCP Server
# File: mock.py
# Version: v1

"""Small in-memory stand-in for ``DataverseClient``.

Activated when DATAVERSE_MOCK_MODE is truthy. It serves an ``account`` /
``contact`` schema with views, a lookup from contact to account and one
form hosting a custom dataset control, so every tool works without a
real environment. Payloads mirror the Web API shapes, including the
formatted-value and lookup annotations.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional

from .client import FORMATTED_VALUE_SUFFIX, LOOKUP_LOGICAL_NAME_SUFFIX
from .config import DataverseConfig
from .models import (
    AttributeDefinition,
    EntityDefinition,
    LookupAttribute,
    RecordListQuery,
    RelationshipDefinition,
)

ACCOUNT_ACTIVE_VIEW_ID = "00000000-0000-0000-00aa-000010001001"
ACCOUNT_ALL_VIEW_ID = "00000000-0000-0000-00aa-000010001002"
CONTACT_ACTIVE_VIEW_ID = "00000000-0000-0000-00aa-000010002001"
CONTACT_PERSONAL_VIEW_ID = "8d5a1c2e-0000-0000-0000-00000000c0de"
ACCOUNT_MAIN_FORM_ID = "8448b78f-8f42-454e-8e2a-f8196b0419af"

MOCK_CONTROL_NAME = "Contoso.DatasetGrid"

_NEXT_LINK = re.compile(
    r"^mock://(?P<collection>[^?]+)\?skip=(?P<skip>\d+)&size=(?P<size>\d+)&view=(?P<view>[^&]*)$"
)

_FORM_XML = """<form>
  <tabs>
    <tab name="general">
      <columns><column><sections><section name="contacts">
        <rows><row>
          <cell id="{c1}">
            <control id="contacts_grid" classid="{e7a81278-8635-4d9e-8d4d-59480b391c5b}" />
          </cell>
        </row></rows>
      </section></sections></column></columns>
    </tab>
  </tabs>
  <controlDescriptions>
    <controlDescription forControl="contacts_grid">
      <customControl name="contoso_Contoso.DatasetGrid" formFactor="2" version="1.0.3">
        <parameters>
          <data-set name="records">
            <ViewId>{view_id}</ViewId>
            <IsUserView>false</IsUserView>
            <TargetEntityType>contact</TargetEntityType>
            <RelationshipName>contact_customer_accounts</RelationshipName>
            <EnableViewPicker>true</EnableViewPicker>
            <FilteredViewIds>{view_id}</FilteredViewIds>
          </data-set>
          <pageSize>25</pageSize>
        </parameters>
      </customControl>
    </controlDescription>
  </controlDescriptions>
</form>""".replace("{view_id}", "{" + CONTACT_ACTIVE_VIEW_ID + "}")


def _fetch(entity: str, attributes: Iterable[str], conditions: str = "", order: str = "") -> str:
    attrs = "".join(f'<attribute name="{a}" />' for a in attributes)
    filter_xml = f'<filter type="and">{conditions}</filter>' if conditions else ""
    return (
        '<fetch version="1.0" mapping="logical">'
        f'<entity name="{entity}">{attrs}{order}{filter_xml}</entity>'
        "</fetch>"
    )


def _layout(id_attribute: str, cells: Iterable[tuple]) -> str:
    cell_xml = "".join(f'<cell name="{name}" width="{width}" />' for name, width in cells)
    return (
        '<grid name="resultset" object="1" jump="name" select="1" icon="1" preview="1">'
        f'<row name="result" id="{id_attribute}">{cell_xml}</row>'
        "</grid>"
    )


_ACTIVE = '<condition attribute="statecode" operator="eq" value="0" />'


def _account(account_id: str, name: str, revenue: float, city: str, active: bool = True) -> Dict[str, Any]:
    return {
        "accountid": account_id,
        "name": name,
        "revenue": revenue,
        "revenue" + FORMATTED_VALUE_SUFFIX: f"${revenue:,.2f}",
        "address1_city": city,
        "statecode": 0 if active else 1,
        "statecode" + FORMATTED_VALUE_SUFFIX: "Active" if active else "Inactive",
    }


def _contact(contact_id: str, fullname: str, email: str, account_id: str, account_name: str) -> Dict[str, Any]:
    return {
        "contactid": contact_id,
        "fullname": fullname,
        "emailaddress1": email,
        "_parentcustomerid_value": account_id,
        "_parentcustomerid_value" + FORMATTED_VALUE_SUFFIX: account_name,
        "_parentcustomerid_value" + LOOKUP_LOGICAL_NAME_SUFFIX: "account",
        "statecode": 0,
        "statecode" + FORMATTED_VALUE_SUFFIX: "Active",
    }


class MockDataverseClient:
    """Implements the subset of ``DataverseClient`` used by the services."""

    def __init__(self, config: Optional[DataverseConfig] = None) -> None:
        self._config = config

        self._entities: Dict[str, EntityDefinition] = {
            "account": EntityDefinition(
                logical_name="account",
                display_name="Account",
                primary_id_attribute="accountid",
                primary_name_attribute="name",
                entity_set_name="accounts",
            ),
            "contact": EntityDefinition(
                logical_name="contact",
                display_name="Contact",
                primary_id_attribute="contactid",
                primary_name_attribute="fullname",
                entity_set_name="contacts",
            ),
        }

        self._attributes: Dict[str, List[AttributeDefinition]] = {
            "account": [
                AttributeDefinition("accountid", "Account", "Uniqueidentifier", is_primary_id=True),
                AttributeDefinition("name", "Account Name", "String", is_primary_name=True),
                AttributeDefinition("revenue", "Annual Revenue", "Money"),
                AttributeDefinition("address1_city", "Address 1: City", "String"),
                AttributeDefinition("statecode", "Status", "State"),
            ],
            "contact": [
                AttributeDefinition("contactid", "Contact", "Uniqueidentifier", is_primary_id=True),
                AttributeDefinition("fullname", "Full Name", "String", is_primary_name=True),
                AttributeDefinition("emailaddress1", "Email", "String"),
                AttributeDefinition(
                    "parentcustomerid", "Company Name", "Customer", targets=["account", "contact"]
                ),
                AttributeDefinition("statecode", "Status", "State"),
            ],
        }

        self._relationships: List[RelationshipDefinition] = [
            RelationshipDefinition(
                schema_name="contact_customer_accounts",
                referenced_entity="account",
                referenced_attribute="accountid",
                referencing_entity="contact",
                referencing_attribute="parentcustomerid",
            ),
            RelationshipDefinition(
                schema_name="contact_customer_contacts",
                referenced_entity="contact",
                referenced_attribute="contactid",
                referencing_entity="contact",
                referencing_attribute="parentcustomerid",
            ),
        ]

        self._saved_queries: List[Dict[str, Any]] = [
            {
                "savedqueryid": ACCOUNT_ACTIVE_VIEW_ID,
                "name": "Active Accounts",
                "returnedtypecode": "account",
                "fetchxml": _fetch(
                    "account",
                    ["name", "address1_city", "revenue", "accountid"],
                    _ACTIVE,
                    '<order attribute="name" descending="false" />',
                ),
                "layoutxml": _layout(
                    "accountid", [("name", 300), ("address1_city", 150), ("revenue", 100)]
                ),
                "querytype": 0,
                "isdefault": True,
                "isprivate": False,
                "description": "Accounts with status Active.",
            },
            {
                "savedqueryid": ACCOUNT_ALL_VIEW_ID,
                "name": "All Accounts",
                "returnedtypecode": "account",
                "fetchxml": _fetch("account", ["name", "statecode", "accountid"]),
                "layoutxml": _layout("accountid", [("name", 300), ("statecode", 100)]),
                "querytype": 0,
                "isdefault": False,
                "isprivate": False,
                "description": None,
            },
            {
                "savedqueryid": CONTACT_ACTIVE_VIEW_ID,
                "name": "Active Contacts",
                "returnedtypecode": "contact",
                "fetchxml": _fetch(
                    "contact",
                    ["fullname", "parentcustomerid", "emailaddress1", "contactid"],
                    _ACTIVE,
                    '<order attribute="fullname" descending="false" />',
                ),
                "layoutxml": _layout(
                    "contactid", [("fullname", 300), ("parentcustomerid", 150), ("emailaddress1", 150)]
                ),
                "querytype": 0,
                "isdefault": True,
                "isprivate": False,
                "description": "Contacts with status Active.",
            },
        ]

        self._user_queries: List[Dict[str, Any]] = [
            {
                "userqueryid": CONTACT_PERSONAL_VIEW_ID,
                "name": "My Contoso Contacts",
                "returnedtypecode": "contact",
                "fetchxml": _fetch(
                    "contact",
                    ["fullname", "emailaddress1", "contactid"],
                    '<condition attribute="emailaddress1" operator="like" value="%@contoso.com" />',
                ),
                "layoutxml": _layout("contactid", [("fullname", 300), ("emailaddress1", 200)]),
                "querytype": 0,
                "description": "Personal view.",
            },
        ]

        self._forms: List[Dict[str, Any]] = [
            {
                "formid": ACCOUNT_MAIN_FORM_ID,
                "name": "Account",
                "objecttypecode": "account",
                "type": 2,
                "formxml": _FORM_XML,
            },
        ]

        account_ids = [
            "a1b2c3d4-0000-0000-0000-000000000001",
            "a1b2c3d4-0000-0000-0000-000000000002",
            "a1b2c3d4-0000-0000-0000-000000000003",
        ]
        self._records: Dict[str, List[Dict[str, Any]]] = {
            "accounts": [
                _account(account_ids[0], "Contoso Ltd", 1250000.0, "Redmond"),
                _account(account_ids[1], "Fabrikam Inc", 830000.5, "Seattle"),
                _account(account_ids[2], "Northwind Traders", 99000.0, "Vancouver", active=False),
            ],
            "contacts": [
                _contact("c0000000-0000-0000-0000-000000000001", "Yvonne McKay", "yvonne@contoso.com", account_ids[0], "Contoso Ltd"),
                _contact("c0000000-0000-0000-0000-000000000002", "Susanna Stubberod", "susanna@contoso.com", account_ids[0], "Contoso Ltd"),
                _contact("c0000000-0000-0000-0000-000000000003", "Nancy Anderson", "nancy@fabrikam.com", account_ids[1], "Fabrikam Inc"),
                _contact("c0000000-0000-0000-0000-000000000004", "Maria Campbell", "maria@northwind.com", account_ids[2], "Northwind Traders"),
            ],
        }

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        return True

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def get_entity_definition(self, logical_name: str) -> Optional[EntityDefinition]:
        return self._entities.get(logical_name)

    async def get_entity_definitions(self, logical_names: Iterable[str]) -> List[EntityDefinition]:
        return [self._entities[n] for n in sorted(set(logical_names)) if n in self._entities]

    async def list_entity_definitions(self) -> List[EntityDefinition]:
        return list(self._entities.values())

    async def get_collection_name(self, logical_name: str) -> str:
        definition = self._entities.get(logical_name)
        if definition is None or not definition.entity_set_name:
            return logical_name
        return definition.entity_set_name

    async def get_lookup_attributes(self, entity_name: str) -> List[LookupAttribute]:
        return [
            LookupAttribute(a.logical_name, a.display_name, list(a.targets))
            for a in self._attributes.get(entity_name, [])
            if a.attribute_type in {"Lookup", "Customer", "Owner"}
        ]

    async def get_attribute_definitions(
        self, entity_name: str, names: Optional[Iterable[str]] = None
    ) -> Dict[str, AttributeDefinition]:
        wanted = set(names) if names is not None else None
        return {
            a.logical_name: a
            for a in self._attributes.get(entity_name, [])
            if wanted is None or a.logical_name in wanted
        }

    async def get_one_to_many_relationships(
        self,
        referenced_entity: Optional[str] = None,
        referencing_entity: Optional[str] = None,
    ) -> List[RelationshipDefinition]:
        return [
            r
            for r in self._relationships
            if (referenced_entity is None or r.referenced_entity == referenced_entity)
            and (referencing_entity is None or r.referencing_entity == referencing_entity)
        ]

    async def get_many_to_one_relationships(
        self, referencing_entity: str, referenced_entity: Optional[str] = None
    ) -> List[RelationshipDefinition]:
        return await self.get_one_to_many_relationships(
            referenced_entity=referenced_entity, referencing_entity=referencing_entity
        )

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @staticmethod
    def _filter_rows(
        rows: List[Dict[str, Any]], entity_name: Optional[str], search: Optional[str]
    ) -> List[Dict[str, Any]]:
        out = [
            dict(r)
            for r in rows
            if (not entity_name or r["returnedtypecode"] == entity_name)
            and (not search or search.lower() in r["name"].lower())
        ]
        return sorted(out, key=lambda r: r["name"])

    async def list_saved_queries(
        self,
        entity_name: Optional[str] = None,
        search: Optional[str] = None,
        query_type: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        rows = self._filter_rows(self._saved_queries, entity_name, search)
        if query_type is not None:
            rows = [r for r in rows if r.get("querytype") == query_type]
        return rows

    async def list_user_queries(
        self, entity_name: Optional[str] = None, search: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        return self._filter_rows(self._user_queries, entity_name, search)

    async def search_saved_queries(
        self, term: str, entity_name: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        return await self.list_saved_queries(entity_name, search=term)

    async def search_user_queries(
        self, term: str, entity_name: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        return await self.list_user_queries(entity_name, search=term)

    async def get_saved_query(self, view_id: str) -> Optional[Dict[str, Any]]:
        view_id = view_id.strip("{}").lower()
        return next((dict(r) for r in self._saved_queries if r["savedqueryid"] == view_id), None)

    async def get_user_query(self, view_id: str) -> Optional[Dict[str, Any]]:
        view_id = view_id.strip("{}").lower()
        return next((dict(r) for r in self._user_queries if r["userqueryid"] == view_id), None)

    async def list_entities_with_views(self) -> List[str]:
        return sorted({r["returnedtypecode"] for r in self._saved_queries})

    # ------------------------------------------------------------------
    # Forms
    # ------------------------------------------------------------------

    async def list_system_forms(
        self,
        entity_name: Optional[str] = None,
        contains: Optional[Iterable[str]] = None,
        publisher: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        terms = [t for t in (contains or []) if t]
        out = []
        for form in self._forms:
            if entity_name and form["objecttypecode"] != entity_name:
                continue
            if terms and not any(t in form["formxml"] for t in terms):
                continue
            if publisher and f"{publisher}_" not in form["formxml"]:
                continue
            out.append(dict(form))
        return out

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def _rows_for(self, collection: str, query: RecordListQuery) -> List[Dict[str, Any]]:
        rows = [dict(r) for r in self._records.get(collection, [])]
        view_id = query.saved_query or query.user_query
        if view_id and view_id.strip("{}").lower() == ACCOUNT_ACTIVE_VIEW_ID:
            rows = [r for r in rows if r.get("statecode") == 0]
        return rows

    async def list_records(self, collection: str, query: RecordListQuery) -> Dict[str, Any]:
        skip = 0
        size = query.page_size or query.top
        view_id = query.saved_query or query.user_query or ""
        total: Optional[int] = None

        if query.next_link:
            match = _NEXT_LINK.match(query.next_link)
            if match is None:
                return {"value": []}
            collection = match.group("collection")
            skip = int(match.group("skip"))
            size = int(match.group("size"))
            view_id = match.group("view")
            rows = self._rows_for(collection, RecordListQuery(saved_query=view_id or None))
        else:
            rows = self._rows_for(collection, query)
            total = len(rows)

        if query.top is not None:
            rows = rows[: query.top]
        page = rows[skip : skip + size] if size else rows[skip:]

        data: Dict[str, Any] = {"value": page}
        if query.include_count and total is not None:
            data["@odata.count"] = total
        if size and skip + size < len(rows) and query.top is None:
            data["@odata.nextLink"] = (
                f"mock://{collection}?skip={skip + size}&size={size}&view={view_id}"
            )
        return data

    async def count_records(self, collection: str, query: Optional[RecordListQuery] = None) -> int:
        return len(self._rows_for(collection, query or RecordListQuery()))

    async def get_record(
        self, collection: str, record_id: str, select: Optional[Iterable[str]] = None
    ) -> Optional[Dict[str, Any]]:
        record_id = record_id.strip("{}").lower()
        for row in self._records.get(collection, []):
            if record_id in row.values():
                return dict(row)
        return None

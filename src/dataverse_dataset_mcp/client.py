# Dataverse Dataset MCP Server
# File: client.py
# Version: v1

"""Typed async client for the Dataverse Web API.

Implements four families of calls:

- table (entity) metadata: definitions, display names, collection names
- attribute metadata: lookup attributes and their targets
- relationship metadata: one-to-many / many-to-one definitions
- saved / personal queries, system forms and generic record CRUD

Every call goes through ``_request``. Failures raise ``TransportError``
(network errors and non-2xx responses) or ``MalformedResponseError``
(unexpected payload shapes). Lookups by id return ``None`` on HTTP 404.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import httpx
from httpx import HTTPStatusError, RequestError

from .auth import OAuthClient
from .config import DataverseConfig
from .errors import (
    ConfigurationError,
    MalformedResponseError,
    TransportError,
    analyze_api_error,
)
from .models import (
    AttributeDefinition,
    EntityDefinition,
    LookupAttribute,
    RecordListQuery,
    RelationshipDefinition,
)

logger = logging.getLogger(__name__)

FORMATTED_VALUE_SUFFIX = "@OData.Community.Display.V1.FormattedValue"
LOOKUP_LOGICAL_NAME_SUFFIX = "@Microsoft.Dynamics.CRM.lookuplogicalname"

_ENTITY_SELECT = (
    "LogicalName,DisplayName,PrimaryIdAttribute,PrimaryNameAttribute,"
    "EntitySetName,LogicalCollectionName"
)
_RELATIONSHIP_SELECT = (
    "SchemaName,ReferencedEntity,ReferencedAttribute,ReferencingEntity,ReferencingAttribute"
)
_SAVED_QUERY_SELECT = (
    "savedqueryid,name,returnedtypecode,fetchxml,layoutxml,querytype,"
    "isdefault,isprivate,description"
)
_USER_QUERY_SELECT = "userqueryid,name,returnedtypecode,fetchxml,layoutxml,querytype,description"
_FORM_SELECT = "formid,name,objecttypecode,type,formxml"

_ENTITY_ID_IN_URL = re.compile(r"\(([0-9a-fA-F-]{36})\)\s*$")

# Upper bound on nextLink pages followed by metadata listings.
_MAX_METADATA_PAGES = 50


def _escape(value: str) -> str:
    """Single quotes must be doubled inside OData string literals."""
    return value.replace("'", "''")


def _guid(value: str) -> str:
    return value.strip().strip("{}")


def _label(payload: Any, fallback: str) -> str:
    """Extract DisplayName.UserLocalizedLabel.Label with a fallback."""
    if isinstance(payload, dict):
        localized = payload.get("UserLocalizedLabel")
        if isinstance(localized, dict) and localized.get("Label"):
            return str(localized["Label"])
    return fallback


def _entity_from_payload(item: Dict[str, Any]) -> EntityDefinition:
    logical_name = item.get("LogicalName")
    if not logical_name:
        raise MalformedResponseError("Entity definition without LogicalName")
    return EntityDefinition(
        logical_name=logical_name,
        display_name=_label(item.get("DisplayName"), logical_name),
        primary_id_attribute=item.get("PrimaryIdAttribute") or f"{logical_name}id",
        primary_name_attribute=item.get("PrimaryNameAttribute"),
        entity_set_name=item.get("EntitySetName") or item.get("LogicalCollectionName"),
        raw=item,
    )


def _relationship_from_payload(item: Dict[str, Any]) -> Optional[RelationshipDefinition]:
    schema_name = item.get("SchemaName")
    referenced = item.get("ReferencedEntity")
    referencing = item.get("ReferencingEntity")
    referencing_attr = item.get("ReferencingAttribute")
    if not (schema_name and referenced and referencing and referencing_attr):
        return None
    return RelationshipDefinition(
        schema_name=schema_name,
        referenced_entity=referenced,
        referenced_attribute=item.get("ReferencedAttribute"),
        referencing_entity=referencing,
        referencing_attribute=referencing_attr,
    )


def _values(data: Any, what: str) -> List[Dict[str, Any]]:
    """Return the ``value`` array of an OData collection response."""
    raw = data.get("value") if isinstance(data, dict) else None
    if not isinstance(raw, list):
        raise MalformedResponseError(
            f"Unexpected response for {what}: expected an OData collection, "
            f"got {type(data).__name__}."
        )
    return [item for item in raw if isinstance(item, dict)]


def _any_contains(prop: str, terms: List[str]) -> str:
    ors = " or ".join(f"contains({prop},'{_escape(t)}')" for t in terms)
    return f"({ors})" if len(terms) > 1 else ors


def _same_origin(url: str, base_url: str) -> bool:
    try:
        target = httpx.URL(url)
        base = httpx.URL(base_url)
    except httpx.InvalidURL:
        return False
    return (target.scheme, target.host, target.port) == (base.scheme, base.host, base.port)


def _record_params(query: RecordListQuery) -> Dict[str, Any]:
    if query.fetch_xml:
        return {"fetchXml": query.fetch_xml}

    params: Dict[str, Any] = {}
    if query.saved_query:
        params["savedQuery"] = _guid(query.saved_query)
    elif query.user_query:
        params["userQuery"] = _guid(query.user_query)
    if query.select:
        params["$select"] = ",".join(query.select)
    if query.filter_expr:
        params["$filter"] = query.filter_expr
    if query.order_by:
        params["$orderby"] = query.order_by
    if query.top is not None:
        params["$top"] = int(query.top)
    if query.include_count:
        params["$count"] = "true"
    return params


@dataclass
class DataverseClient:
    """Wrapper around the Dataverse metadata and data endpoints."""

    config: DataverseConfig
    oauth: OAuthClient

    # Optional httpx transport, injected by tests or custom hosts.
    transport: Optional[httpx.AsyncBaseTransport] = None

    # ------------------------------------------------------------------
    # Basic health
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        """Lightweight health check: is an environment URL configured?"""
        return bool(self.config.environment_url)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        what: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        allow_not_found: bool = False,
    ) -> Optional[httpx.Response]:
        base_url = self.config.api_base_url
        if not base_url:
            raise ConfigurationError(
                "DATAVERSE_URL is not set. Please configure it before calling the Web API."
            )

        if path.startswith(("http://", "https://")):
            url = path
            # Next links carry the bearer token, so they must stay on the environment.
            if not _same_origin(url, base_url):
                raise TransportError(
                    f"Refusing to follow {what} to '{url}': not on the environment host",
                    url=url,
                )
        else:
            url = f"{base_url}/{path.lstrip('/')}"

        token = await self.oauth.get_access_token()

        request_headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "OData-MaxVersion": "4.0",
            "OData-Version": "4.0",
            "Prefer": 'odata.include-annotations="*"',
        }
        if headers:
            request_headers.update(headers)

        logger.debug("%s %s params=%s", method, url, params)

        async with httpx.AsyncClient(
            timeout=float(self.config.timeout_seconds),
            verify=self.config.verify_tls,
            transport=self.transport,
        ) as http_client:
            try:
                response = await http_client.request(
                    method, url, params=params or None, json=json, headers=request_headers
                )
            except RequestError as exc:
                raise TransportError(
                    f"Error calling Dataverse Web API ({what}) at '{url}': {exc}",
                    url=url,
                ) from exc

        if allow_not_found and response.status_code == 404:
            return None

        try:
            response.raise_for_status()
        except HTTPStatusError as exc:
            status = response.status_code
            body_preview = response.text[:500]
            raise TransportError(
                f"Failed {what} from '{url}' (HTTP {status}). "
                f"Response snippet: {body_preview}",
                status_code=status,
                url=url,
                body_preview=body_preview,
                analysis=analyze_api_error(status, response.text, response.headers),
            ) from exc

        return response

    async def _get_json(
        self,
        path: str,
        *,
        what: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        allow_not_found: bool = False,
    ) -> Optional[Dict[str, Any]]:
        response = await self._request(
            "GET",
            path,
            what=what,
            params=params,
            headers=headers,
            allow_not_found=allow_not_found,
        )
        if response is None:
            return None

        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedResponseError(f"Response for {what} is not valid JSON") from exc

        if not isinstance(data, dict):
            raise MalformedResponseError(
                f"Unexpected response for {what}: expected JSON object, "
                f"got {type(data).__name__}."
            )
        return data

    async def _get_all_values(
        self,
        path: str,
        *,
        what: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Collect a metadata listing, following @odata.nextLink."""
        data = await self._get_json(path, what=what, params=params)
        items = _values(data, what)

        pages = 1
        next_link = data.get("@odata.nextLink") if data else None
        while next_link and pages < _MAX_METADATA_PAGES:
            data = await self._get_json(next_link, what=what)
            items.extend(_values(data, what))
            next_link = data.get("@odata.nextLink") if data else None
            pages += 1

        if next_link:
            logger.warning("Stopped following %s after %d pages", what, pages)

        return items

    # ------------------------------------------------------------------
    # Table (entity) metadata
    # ------------------------------------------------------------------

    async def get_entity_definition(self, logical_name: str) -> Optional[EntityDefinition]:
        """Fetch one table definition, or None when the table does not exist."""
        data = await self._get_json(
            f"EntityDefinitions(LogicalName='{_escape(logical_name)}')",
            what=f"entity definition for '{logical_name}'",
            params={"$select": _ENTITY_SELECT},
            allow_not_found=True,
        )
        if data is None:
            return None
        return _entity_from_payload(data)

    async def get_entity_definitions(self, logical_names: Iterable[str]) -> List[EntityDefinition]:
        """Fetch several table definitions in one batched call."""
        names = sorted({n for n in logical_names if n})
        if not names:
            return []

        entity_filter = " or ".join(f"LogicalName eq '{_escape(n)}'" for n in names)
        items = await self._get_all_values(
            "EntityDefinitions",
            what="entity definitions",
            params={"$select": _ENTITY_SELECT, "$filter": entity_filter},
        )
        return [_entity_from_payload(item) for item in items if item.get("LogicalName")]

    async def list_entity_definitions(self) -> List[EntityDefinition]:
        items = await self._get_all_values(
            "EntityDefinitions",
            what="entity definitions",
            params={"$select": _ENTITY_SELECT},
        )
        return [_entity_from_payload(item) for item in items if item.get("LogicalName")]

    async def get_collection_name(self, logical_name: str) -> str:
        """Collection (entity set) name used in record URLs.

        Falls back to the logical name when metadata is unavailable.
        """
        try:
            definition = await self.get_entity_definition(logical_name)
        except TransportError as exc:
            logger.warning(
                "Failed to get collection name for %s, using logical name: %s",
                logical_name,
                exc,
            )
            return logical_name

        if definition is None or not definition.entity_set_name:
            logger.warning(
                "No collection name in metadata for %s, using logical name", logical_name
            )
            return logical_name
        return definition.entity_set_name

    # ------------------------------------------------------------------
    # Attribute metadata
    # ------------------------------------------------------------------

    async def get_lookup_attributes(self, entity_name: str) -> List[LookupAttribute]:
        """Lookup-typed attributes of a table together with their targets."""
        data = await self._get_json(
            f"EntityDefinitions(LogicalName='{_escape(entity_name)}')/Attributes/"
            "Microsoft.Dynamics.CRM.LookupAttributeMetadata",
            what=f"lookup attributes of '{entity_name}'",
            params={"$select": "LogicalName,DisplayName,Targets"},
            allow_not_found=True,
        )
        if data is None:
            return []

        lookups: List[LookupAttribute] = []
        for item in _values(data, f"lookup attributes of '{entity_name}'"):
            logical_name = item.get("LogicalName")
            if not logical_name:
                continue
            targets = item.get("Targets") or []
            lookups.append(
                LookupAttribute(
                    logical_name=logical_name,
                    display_name=_label(item.get("DisplayName"), logical_name),
                    targets=[str(t) for t in targets if t],
                )
            )
        return lookups

    async def get_attribute_definitions(
        self,
        entity_name: str,
        names: Optional[Iterable[str]] = None,
    ) -> Dict[str, AttributeDefinition]:
        """Attribute definitions keyed by logical name, optionally restricted."""
        wanted = set(names) if names is not None else None
        items = await self._get_all_values(
            f"EntityDefinitions(LogicalName='{_escape(entity_name)}')/Attributes",
            what=f"attributes of '{entity_name}'",
            params={"$select": "LogicalName,DisplayName,AttributeType,IsPrimaryId,IsPrimaryName"},
        )

        out: Dict[str, AttributeDefinition] = {}
        for item in items:
            logical_name = item.get("LogicalName")
            if not logical_name or (wanted is not None and logical_name not in wanted):
                continue
            out[logical_name] = AttributeDefinition(
                logical_name=logical_name,
                display_name=_label(item.get("DisplayName"), logical_name),
                attribute_type=item.get("AttributeType"),
                is_primary_id=bool(item.get("IsPrimaryId")),
                is_primary_name=bool(item.get("IsPrimaryName")),
            )

        if any(a.attribute_type in {"Lookup", "Customer", "Owner"} for a in out.values()):
            for lookup in await self.get_lookup_attributes(entity_name):
                if lookup.logical_name in out:
                    out[lookup.logical_name].targets = list(lookup.targets)

        return out

    # ------------------------------------------------------------------
    # Relationship metadata
    # ------------------------------------------------------------------

    async def get_one_to_many_relationships(
        self,
        referenced_entity: Optional[str] = None,
        referencing_entity: Optional[str] = None,
    ) -> List[RelationshipDefinition]:
        """One-to-many definitions filtered by either or both endpoints."""
        clauses = []
        if referenced_entity:
            clauses.append(f"ReferencedEntity eq '{_escape(referenced_entity)}'")
        if referencing_entity:
            clauses.append(f"ReferencingEntity eq '{_escape(referencing_entity)}'")

        params: Dict[str, Any] = {"$select": _RELATIONSHIP_SELECT}
        if clauses:
            params["$filter"] = " and ".join(clauses)

        items = await self._get_all_values(
            "RelationshipDefinitions/Microsoft.Dynamics.CRM.OneToManyRelationshipMetadata",
            what="one-to-many relationship definitions",
            params=params,
        )
        return [r for r in (_relationship_from_payload(i) for i in items) if r is not None]

    async def get_many_to_one_relationships(
        self,
        referencing_entity: str,
        referenced_entity: Optional[str] = None,
    ) -> List[RelationshipDefinition]:
        """Many-to-one definitions seen from the referencing table."""
        params: Dict[str, Any] = {"$select": _RELATIONSHIP_SELECT}
        if referenced_entity:
            params["$filter"] = f"ReferencedEntity eq '{_escape(referenced_entity)}'"

        data = await self._get_json(
            f"EntityDefinitions(LogicalName='{_escape(referencing_entity)}')/ManyToOneRelationships",
            what=f"many-to-one relationships of '{referencing_entity}'",
            params=params,
            allow_not_found=True,
        )
        if data is None:
            return []
        items = _values(data, "many-to-one relationship definitions")
        return [r for r in (_relationship_from_payload(i) for i in items) if r is not None]

    # ------------------------------------------------------------------
    # Saved (system) and personal queries
    # ------------------------------------------------------------------

    async def list_saved_queries(
        self,
        entity_name: Optional[str] = None,
        search: Optional[str] = None,
        query_type: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Raw savedquery rows, optionally filtered by table / name / type."""
        return await self._list_queries(
            "savedqueries", _SAVED_QUERY_SELECT, entity_name, search, query_type
        )

    async def list_user_queries(
        self,
        entity_name: Optional[str] = None,
        search: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Raw userquery rows, optionally filtered by table / name."""
        return await self._list_queries("userqueries", _USER_QUERY_SELECT, entity_name, search, None)

    async def search_saved_queries(
        self, term: str, entity_name: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        return await self.list_saved_queries(entity_name, search=term)

    async def search_user_queries(
        self, term: str, entity_name: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        return await self.list_user_queries(entity_name, search=term)

    async def _list_queries(
        self,
        collection: str,
        select: str,
        entity_name: Optional[str],
        search: Optional[str],
        query_type: Optional[int],
    ) -> List[Dict[str, Any]]:
        clauses = []
        if entity_name:
            clauses.append(f"returnedtypecode eq '{_escape(entity_name)}'")
        if search:
            clauses.append(f"contains(name,'{_escape(search)}')")
        if query_type is not None:
            clauses.append(f"querytype eq {int(query_type)}")

        params: Dict[str, Any] = {"$select": select, "$orderby": "name"}
        if clauses:
            params["$filter"] = " and ".join(clauses)

        return await self._get_all_values(collection, what=collection, params=params)

    async def get_saved_query(self, view_id: str) -> Optional[Dict[str, Any]]:
        return await self._get_json(
            f"savedqueries({_guid(view_id)})",
            what=f"saved query {view_id}",
            params={"$select": _SAVED_QUERY_SELECT},
            allow_not_found=True,
        )

    async def get_user_query(self, view_id: str) -> Optional[Dict[str, Any]]:
        return await self._get_json(
            f"userqueries({_guid(view_id)})",
            what=f"user query {view_id}",
            params={"$select": _USER_QUERY_SELECT},
            allow_not_found=True,
        )

    async def list_entities_with_views(self) -> List[str]:
        """Logical names of every table that has at least one public view."""
        items = await self._get_all_values(
            "savedqueries",
            what="tables with views",
            params={"$select": "returnedtypecode", "$filter": "querytype eq 0"},
        )
        return sorted({str(i["returnedtypecode"]) for i in items if i.get("returnedtypecode")})

    # ------------------------------------------------------------------
    # Forms
    # ------------------------------------------------------------------

    async def list_system_forms(
        self,
        entity_name: Optional[str] = None,
        contains: Optional[Iterable[str]] = None,
        publisher: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Raw systemform rows.

        ``contains`` terms are OR-ed over formxml. ``publisher`` keeps forms
        that mention the publisher prefix or namespace.
        """
        clauses = []
        terms = [t for t in (contains or []) if t]
        if terms:
            clauses.append(_any_contains("formxml", terms))
        if publisher:
            clauses.append(
                _any_contains("formxml", [f"{publisher}_", f'namespace="{publisher}"'])
            )
        if entity_name:
            clauses.append(f"objecttypecode eq '{_escape(entity_name)}'")

        params: Dict[str, Any] = {"$select": _FORM_SELECT}
        if clauses:
            params["$filter"] = " and ".join(clauses)

        return await self._get_all_values("systemforms", what="system forms", params=params)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def list_records(self, collection: str, query: RecordListQuery) -> Dict[str, Any]:
        """Fetch one page of records and return the raw OData payload."""
        headers: Dict[str, str] = {}
        if query.page_size:
            headers["Prefer"] = (
                f'odata.include-annotations="*",odata.maxpagesize={int(query.page_size)}'
            )

        if query.next_link:
            data = await self._get_json(
                query.next_link, what=f"next page of '{collection}'", headers=headers
            )
            return data or {}

        data = await self._get_json(
            collection,
            what=f"records of '{collection}'",
            params=_record_params(query),
            headers=headers,
        )
        return data or {}

    async def count_records(
        self, collection: str, query: Optional[RecordListQuery] = None
    ) -> int:
        """Count-only request; only the view reference and filter apply."""
        params: Dict[str, Any] = {}
        if query is not None:
            if query.saved_query:
                params["savedQuery"] = _guid(query.saved_query)
            elif query.user_query:
                params["userQuery"] = _guid(query.user_query)
            if query.filter_expr:
                params["$filter"] = query.filter_expr

        response = await self._request(
            "GET",
            f"{collection}/$count",
            what=f"record count of '{collection}'",
            params=params,
            headers={"Accept": "text/plain"},
        )
        if response is None:
            raise MalformedResponseError(f"No response for record count of '{collection}'")
        text = response.text.strip().lstrip("\ufeff")
        try:
            return int(text)
        except ValueError as exc:
            raise MalformedResponseError(
                f"Count response for '{collection}' is not an integer: {text[:50]!r}"
            ) from exc

    async def get_record(
        self,
        collection: str,
        record_id: str,
        select: Optional[Iterable[str]] = None,
    ) -> Optional[Dict[str, Any]]:
        params = {"$select": ",".join(select)} if select else None
        return await self._get_json(
            f"{collection}({_guid(record_id)})",
            what=f"record {record_id} of '{collection}'",
            params=params,
            allow_not_found=True,
        )

    async def create_record(self, collection: str, data: Dict[str, Any]) -> Optional[str]:
        """Create a record and return its id from the OData-EntityId header."""
        response = await self._request(
            "POST", collection, what=f"create record in '{collection}'", json=data
        )
        if response is None:
            raise MalformedResponseError(f"No response for create record in '{collection}'")
        entity_url = response.headers.get("OData-EntityId") or ""
        match = _ENTITY_ID_IN_URL.search(entity_url)
        if match:
            return match.group(1)

        if response.content:
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                for key, value in body.items():
                    if key.endswith("id") and isinstance(value, str):
                        return value
        return None

    async def update_record(
        self, collection: str, record_id: str, data: Dict[str, Any]
    ) -> None:
        await self._request(
            "PATCH",
            f"{collection}({_guid(record_id)})",
            what=f"update record {record_id} in '{collection}'",
            json=data,
            headers={"If-Match": "*"},
        )

    async def delete_record(self, collection: str, record_id: str) -> bool:
        """Delete a record. Returns False when it did not exist."""
        response = await self._request(
            "DELETE",
            f"{collection}({_guid(record_id)})",
            what=f"delete record {record_id} in '{collection}'",
            allow_not_found=True,
        )
        return response is not None

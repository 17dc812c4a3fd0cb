# Dataverse Dataset MCP Server
# File: executor.py
# Version: v1

"""Run views and raw query documents against record collections.

Nothing here raises for transport or API failures: they come back as
``RecordPage`` values with ``success=False`` and, when the Web API
answered, an error analysis.

Page size is requested with ``Prefer: odata.maxpagesize`` rather than
``$top`` because the Web API omits ``@odata.nextLink`` once ``$top`` is
present. Page N of a view is reached by following N-1 next links.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .analyzer import extract_entity_name, inject_paging
from .client import DataverseClient
from .errors import DataverseError, NotFoundError, TransportError
from .models import RecordListQuery, RecordPage, RecordQueryOptions, ViewDefinition
from .views import ViewDiscoveryService

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50

_FETCH_TOTAL_COUNT = "@Microsoft.Dynamics.CRM.totalrecordcount"


def _failure_from(
    exc: DataverseError,
    view: Optional[ViewDefinition] = None,
    query_text: Optional[str] = None,
    entity_name: Optional[str] = None,
) -> RecordPage:
    analysis = exc.analysis.to_dict() if isinstance(exc, TransportError) and exc.analysis else None
    return RecordPage.failure(
        str(exc),
        view=view,
        query_text=query_text,
        entity_name=entity_name,
        error_analysis=analysis,
    )


def _entities(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    raw = data.get("value")
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict)]


def _total_count(data: Dict[str, Any]) -> Optional[int]:
    for key in ("@odata.count", _FETCH_TOTAL_COUNT):
        value = data.get(key)
        if isinstance(value, int) and value >= 0:
            return value
    return None


class RecordQueryExecutor:
    def __init__(
        self,
        client: DataverseClient,
        views: Optional[ViewDiscoveryService] = None,
        default_page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self._client = client
        self._views = views or ViewDiscoveryService(client)
        self.default_page_size = default_page_size

    async def execute(
        self,
        view: ViewDefinition,
        options: Optional[RecordQueryOptions] = None,
    ) -> RecordPage:
        """Run a view by reference so the server applies its own query."""
        options = options or RecordQueryOptions()
        page_size = options.max_page_size or self.default_page_size
        page_number = options.page_number or 1

        try:
            collection = await self._client.get_collection_name(view.entity_name)

            if options.continuation_token:
                data = await self._client.list_records(
                    collection,
                    RecordListQuery(page_size=page_size, next_link=options.continuation_token),
                )
            else:
                query = RecordListQuery(
                    page_size=page_size,
                    include_count=options.include_count,
                    filter_expr=options.filter_expr,
                    order_by=options.order_by,
                )
                if view.is_personal:
                    query.user_query = view.id
                else:
                    query.saved_query = view.id

                data = await self._client.list_records(collection, query)
                data = await self._walk_to_page(collection, data, page_number, page_size)
        except DataverseError as exc:
            logger.warning("Executing view %s (%s) failed: %s", view.name, view.id, exc)
            return _failure_from(exc, view=view, query_text=view.query_text)

        entities = _entities(data)[:page_size]
        logger.info(
            "View %s returned %d record(s) on page %d", view.name, len(entities), page_number
        )
        return RecordPage(
            entities=entities,
            total_count=_total_count(data),
            next_link=data.get("@odata.nextLink"),
            query_text=view.query_text,
            view=view,
            entity_name=view.entity_name,
            page_number=page_number,
            page_size=page_size,
            resumed=bool(options.continuation_token),
        )

    async def _walk_to_page(
        self,
        collection: str,
        first: Dict[str, Any],
        page_number: int,
        page_size: int,
    ) -> Dict[str, Any]:
        data = first
        total = _total_count(first)
        for _ in range(page_number - 1):
            next_link = data.get("@odata.nextLink")
            if not next_link:
                # Past the last page: empty, but keep the count.
                return {"value": [], "@odata.count": total} if total is not None else {"value": []}
            data = await self._client.list_records(
                collection, RecordListQuery(page_size=page_size, next_link=next_link)
            )
        if total is not None and "@odata.count" not in data:
            data = dict(data)
            data["@odata.count"] = total
        return data

    async def execute_raw_query(
        self,
        query_text: str,
        entity_name: Optional[str] = None,
        options: Optional[RecordQueryOptions] = None,
    ) -> RecordPage:
        """Run a query document directly, with paging written into it."""
        options = options or RecordQueryOptions()
        page_size = options.max_page_size or self.default_page_size
        page_number = options.page_number or 1

        entity_name = entity_name or extract_entity_name(query_text)
        if not entity_name:
            return RecordPage.failure(
                "Could not determine the target table of the query", query_text=query_text
            )

        try:
            paged_text = inject_paging(query_text, page_number, page_size)
        except ValueError as exc:
            return RecordPage.failure(
                f"Invalid query text: {exc}", query_text=query_text, entity_name=entity_name
            )

        try:
            collection = await self._client.get_collection_name(entity_name)
            if options.continuation_token:
                query = RecordListQuery(next_link=options.continuation_token)
            else:
                query = RecordListQuery(fetch_xml=paged_text)
            data = await self._client.list_records(collection, query)
        except DataverseError as exc:
            logger.warning("Raw query against %s failed: %s", entity_name, exc)
            return _failure_from(exc, query_text=paged_text, entity_name=entity_name)

        entities = _entities(data)
        return RecordPage(
            entities=entities,
            total_count=_total_count(data),
            next_link=data.get("@odata.nextLink"),
            query_text=paged_text,
            entity_name=entity_name,
            page_number=page_number,
            page_size=page_size,
            resumed=bool(options.continuation_token),
        )

    async def get_count(self, view: ViewDefinition) -> Optional[int]:
        """Record count of a view, or None when it could not be obtained."""
        try:
            collection = await self._client.get_collection_name(view.entity_name)
            query = RecordListQuery()
            if view.is_personal:
                query.user_query = view.id
            else:
                query.saved_query = view.id
            return await self._client.count_records(collection, query)
        except DataverseError as exc:
            logger.warning("Count for view %s unavailable: %s", view.id, exc)
            return None

    async def execute_view_id(
        self,
        view_id: str,
        options: Optional[RecordQueryOptions] = None,
    ) -> RecordPage:
        try:
            view = await self._require_view(view_id)
        except NotFoundError as exc:
            return RecordPage.failure(str(exc))
        return await self.execute(view, options)

    async def _require_view(self, view_id: str) -> ViewDefinition:
        view = await self._views.get_view(view_id)
        if view is None:
            raise NotFoundError(f"View not found: {view_id}")
        return view

    async def get_paginated(
        self,
        view_id: str,
        page_number: int = 1,
        page_size: Optional[int] = None,
    ) -> RecordPage:
        options = RecordQueryOptions(
            max_page_size=page_size or self.default_page_size,
            page_number=page_number,
            include_count=True,
        )
        return await self.execute_view_id(view_id, options)

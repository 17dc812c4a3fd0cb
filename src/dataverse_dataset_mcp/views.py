# Dataverse Dataset MCP Server
# File: views.py
# Version: v1

"""Discovery of saved (system) and personal views.

Views are always read through to the Web API. They can be edited outside
this process, so nothing here is cached.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .client import DataverseClient
from .errors import DataverseError, TransportError
from .models import EntityInfo, ViewDefinition

logger = logging.getLogger(__name__)


def _view_from_row(row: Dict[str, Any], personal: bool) -> Optional[ViewDefinition]:
    id_key = "userqueryid" if personal else "savedqueryid"
    view_id = row.get(id_key)
    entity_name = row.get("returnedtypecode")
    if not view_id or not entity_name:
        return None

    query_type = row.get("querytype")
    return ViewDefinition(
        id=str(view_id),
        name=row.get("name") or str(view_id),
        entity_name=str(entity_name),
        query_text=row.get("fetchxml") or "",
        layout_text=row.get("layoutxml"),
        is_default=not personal and bool(row.get("isdefault")),
        is_personal=personal,
        is_private=personal or bool(row.get("isprivate")),
        description=row.get("description"),
        query_type=int(query_type) if isinstance(query_type, int) else None,
    )


def _sorted_views(views: List[ViewDefinition]) -> List[ViewDefinition]:
    return sorted(views, key=lambda v: v.name.lower())


class ViewDiscoveryService:
    """Lists and resolves views across the saved and personal namespaces."""

    def __init__(self, client: DataverseClient) -> None:
        self._client = client

    async def list_views(self, entity_name: str) -> List[ViewDefinition]:
        """Saved and personal views of one table, sorted by name.

        A failure listing personal views (typically a missing privilege)
        is logged and the saved views are still returned.
        """
        saved_rows = await self._client.list_saved_queries(entity_name)
        views = [v for v in (_view_from_row(r, personal=False) for r in saved_rows) if v]

        try:
            user_rows = await self._client.list_user_queries(entity_name)
        except TransportError as exc:
            logger.warning("Could not list personal views for %s: %s", entity_name, exc)
            user_rows = []
        views.extend(v for v in (_view_from_row(r, personal=True) for r in user_rows) if v)

        logger.info("Found %d views for %s", len(views), entity_name)
        return _sorted_views(views)

    async def get_view(self, view_id: str) -> Optional[ViewDefinition]:
        """Resolve a view id, saved namespace first. None when unknown."""
        try:
            row = await self._client.get_saved_query(view_id)
        except TransportError as exc:
            logger.warning("Saved view lookup failed for %s: %s", view_id, exc)
            row = None
        if row is not None:
            return _view_from_row(row, personal=False)

        try:
            row = await self._client.get_user_query(view_id)
        except TransportError as exc:
            logger.warning("Personal view lookup failed for %s: %s", view_id, exc)
            row = None
        if row is not None:
            return _view_from_row(row, personal=True)

        logger.warning("View %s not found in saved or personal views", view_id)
        return None

    async def get_default_view(self, entity_name: str) -> Optional[ViewDefinition]:
        rows = await self._client.list_saved_queries(entity_name)
        defaults = [
            v
            for v in (_view_from_row(r, personal=False) for r in rows)
            if v is not None and v.is_default
        ]
        if not defaults:
            logger.info("No default view for %s", entity_name)
            return None

        # Prefer the public (query type 0) default over lookup/associated ones.
        defaults.sort(key=lambda v: (v.query_type not in (0, None), v.name.lower()))
        return defaults[0]

    async def search_views(
        self, term: str, entity_name: Optional[str] = None
    ) -> List[ViewDefinition]:
        saved_rows = await self._client.search_saved_queries(term, entity_name)
        views = [v for v in (_view_from_row(r, personal=False) for r in saved_rows) if v]

        try:
            user_rows = await self._client.search_user_queries(term, entity_name)
        except TransportError as exc:
            logger.warning("Could not search personal views for %r: %s", term, exc)
            user_rows = []
        views.extend(v for v in (_view_from_row(r, personal=True) for r in user_rows) if v)
        return _sorted_views(views)

    async def list_entities_with_views(self) -> List[str]:
        return await self._client.list_entities_with_views()

    async def list_entities_with_display_names(self) -> List[EntityInfo]:
        """Tables with at least one view, labelled with display names.

        Display names come from one batched metadata call. When that call
        fails the logical names are used instead.
        """
        names = await self.list_entities_with_views()
        display: Dict[str, str] = {}
        try:
            for definition in await self._client.get_entity_definitions(names):
                display[definition.logical_name] = definition.display_name
        except DataverseError as exc:
            logger.warning("Falling back to logical names for view tables: %s", exc)

        infos = [EntityInfo(logical_name=n, display_name=display.get(n, n)) for n in names]
        return sorted(infos, key=lambda e: e.display_name.lower())

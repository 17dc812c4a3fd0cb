# Dataverse Dataset MCP Server
# File: tools/tasks.py
# Version: v1
#
# NOTE: This module is the single place where we define the behaviour that
# is exposed as MCP tools. The stdio transport simply calls
# `register_tools(server)` to wire these up.

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from ..analyzer import analyze_layout, analyze_query, validate_query
from ..auth import OAuthClient
from ..cache import DiscoveryCache
from ..client import DataverseClient
from ..config import DataverseConfig
from ..dataset import DatasetMaterializer
from ..errors import DataverseError, TransportError, make_error
from ..executor import RecordQueryExecutor
from ..forms import FormDiscoveryService
from ..mock import MockDataverseClient
from ..models import RecordQueryOptions
from ..relationships import LookupFieldConvention, RelationshipResolver
from ..views import ViewDiscoveryService

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Internal helpers (client factory, cache, caps)
# ---------------------------------------------------------------------------


def _cap_int(value: Optional[int], cap: int, min_value: int = 1) -> tuple[int, bool]:
    """Clamp an integer to [min_value, cap]. Returns (effective, cap_applied)."""
    try:
        v = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        v = min_value

    if v < min_value:
        return min_value, True

    if cap > 0 and v > cap:
        return cap, True

    return v, False


_CACHE: DiscoveryCache | None = None
_CACHE_SIGNATURE: tuple[int, int] | None = None


def _get_cache(cfg: DataverseConfig) -> DiscoveryCache:
    """Lazily create (or re-create) the process-wide discovery cache."""
    global _CACHE, _CACHE_SIGNATURE

    signature = (int(cfg.cache_ttl_seconds), int(cfg.cache_max_entries))
    if _CACHE is None or _CACHE_SIGNATURE != signature:
        _CACHE = DiscoveryCache(ttl_seconds=signature[0], max_entries=signature[1])
        _CACHE_SIGNATURE = signature
    return _CACHE


def _make_client(cfg: Optional[DataverseConfig] = None) -> DataverseClient:
    """Create a DataverseClient from environment variables.

    If DATAVERSE_MOCK_MODE is truthy, the in-process mock client is
    returned instead of a real HTTP client.

    Note: Callers should prefer invoking this with *no arguments* so tests
    can monkeypatch it with a no-arg lambda.
    """
    cfg = cfg or DataverseConfig.from_env()

    if cfg.mock_mode:
        return MockDataverseClient(config=cfg)  # type: ignore[return-value]

    oauth = OAuthClient(config=cfg)
    return DataverseClient(config=cfg, oauth=oauth)


def _resolver(client: DataverseClient, cfg: DataverseConfig) -> RelationshipResolver:
    return RelationshipResolver(
        client,
        cache=_get_cache(cfg),
        convention=LookupFieldConvention(cfg.lookup_field_format),
        publisher_prefix=cfg.publisher_prefix,
    )


def _error_details(exc: DataverseError) -> Optional[Dict[str, Any]]:
    if isinstance(exc, TransportError) and exc.analysis is not None:
        return exc.analysis.to_dict()
    return None


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------


async def ping() -> Dict[str, Any]:
    client = _make_client()
    ok = await client.ping()
    return {"ok": bool(ok)}


async def list_views(entity_name: str) -> Dict[str, Any]:
    views = await ViewDiscoveryService(_make_client()).list_views(entity_name)
    return {
        "entity_name": entity_name,
        "count": len(views),
        "views": [v.to_dict(include_query=False) for v in views],
    }


async def get_view(view_id: str, include_analysis: bool = True) -> Dict[str, Any]:
    view = await ViewDiscoveryService(_make_client()).get_view(view_id)
    if view is None:
        return {
            "view_id": view_id,
            "found": False,
            "view": None,
            "error": make_error("NOT_FOUND", f"View '{view_id}' not found."),
        }

    out: Dict[str, Any] = {"view_id": view_id, "found": True, "view": view.to_dict()}
    if include_analysis:
        layout = analyze_layout(view.layout_text)
        out["analysis"] = analyze_query(view.query_text).to_dict()
        out["layout"] = {
            "layout_type": layout.layout_type,
            "total_width": layout.total_width,
            "columns": [
                {"name": c.name, "order": c.order, "width": c.width, "is_primary": c.is_primary}
                for c in layout.columns
            ],
        }
    return out


async def get_default_view(entity_name: str) -> Dict[str, Any]:
    view = await ViewDiscoveryService(_make_client()).get_default_view(entity_name)
    return {
        "entity_name": entity_name,
        "found": view is not None,
        "view": view.to_dict(include_query=False) if view else None,
    }


async def search_views(
    term: str,
    entity_name: Optional[str] = None,
    limit: int = 50,
) -> Dict[str, Any]:
    views = await ViewDiscoveryService(_make_client()).search_views(term, entity_name)
    effective_limit, _ = _cap_int(limit, 500, min_value=1)
    return {
        "term": term,
        "entity_name": entity_name,
        "count": len(views),
        "truncated": len(views) > effective_limit,
        "views": [v.to_dict(include_query=False) for v in views[:effective_limit]],
    }


# ---------------------------------------------------------------------------
# Query analysis
# ---------------------------------------------------------------------------


async def analyze_query_text(query_text: str) -> Dict[str, Any]:
    return analyze_query(query_text).to_dict()


async def validate_query_text(query_text: str) -> Dict[str, Any]:
    result = validate_query(query_text)
    return {"is_valid": result.is_valid, "errors": list(result.errors)}


# ---------------------------------------------------------------------------
# Relationships
# ---------------------------------------------------------------------------


async def resolve_relationships(
    parent_entity: Optional[str] = None,
    child_entity: Optional[str] = None,
) -> Dict[str, Any]:
    """Relationships between two tables.

    Falls back to DATAVERSE_PAGE_TABLE / DATAVERSE_TARGET_TABLE when the
    tables are not given. A single result is reported as ``selected``;
    several results are ``ambiguous`` and left to the caller.
    """
    cfg = DataverseConfig.from_env()
    parent_entity = parent_entity or cfg.page_table
    child_entity = child_entity or cfg.target_table
    if not parent_entity or not child_entity:
        return {
            "parent_entity": parent_entity,
            "child_entity": child_entity,
            "relationships": [],
            "error": make_error(
                "MISSING_ARGUMENT",
                "Both parent_entity and child_entity are required "
                "(or DATAVERSE_PAGE_TABLE / DATAVERSE_TARGET_TABLE).",
            ),
        }

    relationships = await _resolver(_make_client(), cfg).resolve(parent_entity, child_entity)
    return {
        "parent_entity": parent_entity,
        "child_entity": child_entity,
        "count": len(relationships),
        "ambiguous": len(relationships) > 1,
        "selected": relationships[0].to_dict() if len(relationships) == 1 else None,
        "relationships": [r.to_dict() for r in relationships],
    }


async def related_entities(
    parent_entity: str,
    publisher_prefix: Optional[str] = None,
) -> Dict[str, Any]:
    cfg = DataverseConfig.from_env()
    infos = await _resolver(_make_client(), cfg).get_related_entities(
        parent_entity, publisher_prefix=publisher_prefix
    )
    return {
        "parent_entity": parent_entity,
        "count": len(infos),
        "entities": [
            {
                "logical_name": e.logical_name,
                "display_name": e.display_name,
                "display_text": e.display_text,
            }
            for e in infos
        ],
    }


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


def _options(
    cfg: DataverseConfig,
    max_page_size: Optional[int],
    page_number: Optional[int],
    continuation_token: Optional[str],
    include_count: bool,
    filter_expr: Optional[str] = None,
    order_by: Optional[str] = None,
) -> tuple[RecordQueryOptions, Dict[str, Any]]:
    requested = max_page_size if max_page_size is not None else cfg.default_page_size
    effective, cap_applied = _cap_int(requested, cfg.max_page_size, min_value=1)
    options = RecordQueryOptions(
        max_page_size=effective,
        page_number=page_number,
        continuation_token=continuation_token,
        include_count=include_count,
        filter_expr=filter_expr,
        order_by=order_by,
    )
    meta = {
        "requested_page_size": requested,
        "effective_page_size": effective,
        "cap_page_size": cfg.max_page_size,
        "cap_applied": bool(cap_applied),
    }
    return options, meta


async def execute_view(
    view_id: str,
    max_page_size: Optional[int] = None,
    page_number: Optional[int] = None,
    continuation_token: Optional[str] = None,
    include_count: bool = False,
    filter_expr: Optional[str] = None,
    order_by: Optional[str] = None,
) -> Dict[str, Any]:
    cfg = DataverseConfig.from_env()
    try:
        options, meta = _options(
            cfg, max_page_size, page_number, continuation_token, include_count, filter_expr, order_by
        )
    except ValueError as exc:
        return {"success": False, "error": make_error("INVALID_ARGUMENT", str(exc))}

    client = _make_client()
    executor = RecordQueryExecutor(client, default_page_size=cfg.default_page_size)
    page = await executor.execute_view_id(view_id, options)

    out = page.to_dict()
    out["meta"] = meta
    return out


async def execute_query(
    query_text: str,
    entity_name: Optional[str] = None,
    max_page_size: Optional[int] = None,
    page_number: Optional[int] = None,
) -> Dict[str, Any]:
    cfg = DataverseConfig.from_env()
    try:
        options, meta = _options(cfg, max_page_size, page_number, None, False)
    except ValueError as exc:
        return {"success": False, "error": make_error("INVALID_ARGUMENT", str(exc))}

    executor = RecordQueryExecutor(_make_client(), default_page_size=cfg.default_page_size)
    page = await executor.execute_raw_query(query_text, entity_name, options)

    out = page.to_dict()
    out["query_text"] = page.query_text
    out["meta"] = meta
    return out


async def count_view(view_id: str) -> Dict[str, Any]:
    client = _make_client()
    view = await ViewDiscoveryService(client).get_view(view_id)
    if view is None:
        return {
            "view_id": view_id,
            "count": None,
            "available": False,
            "error": make_error("NOT_FOUND", f"View '{view_id}' not found."),
        }

    count = await RecordQueryExecutor(client).get_count(view)
    return {"view_id": view_id, "entity_name": view.entity_name, "count": count, "available": count is not None}


async def materialize_view(
    view_id: str,
    max_page_size: Optional[int] = None,
    page_number: Optional[int] = None,
    include_count: bool = True,
) -> Dict[str, Any]:
    """Execute a view and shape the page into columns, records and paging."""
    cfg = DataverseConfig.from_env()
    try:
        options, meta = _options(cfg, max_page_size, page_number, None, include_count)
    except ValueError as exc:
        return {"error": make_error("INVALID_ARGUMENT", str(exc))}

    client = _make_client()
    views = ViewDiscoveryService(client)
    view = await views.get_view(view_id)
    if view is None:
        return {"view_id": view_id, "error": make_error("NOT_FOUND", f"View '{view_id}' not found.")}

    executor = RecordQueryExecutor(client, views=views, default_page_size=cfg.default_page_size)
    page = await executor.execute(view, options)

    # Metadata only enriches the dataset; it is not required.
    entity = None
    attributes = None
    try:
        entity = await client.get_entity_definition(view.entity_name)
        attributes = await client.get_attribute_definitions(view.entity_name)
    except DataverseError as exc:
        logger.warning("Materialising %s without attribute metadata: %s", view.entity_name, exc)

    materializer = DatasetMaterializer(LookupFieldConvention(cfg.lookup_field_format))
    dataset = materializer.materialize_view(page, view, attributes=attributes, entity=entity)

    out = dataset.to_dict()
    out["view"] = view.to_dict(include_query=False)
    out["meta"] = meta
    return out


# ---------------------------------------------------------------------------
# Forms
# ---------------------------------------------------------------------------


async def discover_forms(
    control_name: str,
    entity_name: Optional[str] = None,
    publisher: Optional[str] = None,
) -> Dict[str, Any]:
    cfg = DataverseConfig.from_env()
    service = FormDiscoveryService(
        _make_client(), cache=_get_cache(cfg), publisher_prefix=cfg.publisher_prefix
    )
    try:
        matches = await service.discover_forms(control_name, entity_name, publisher)
    except DataverseError as exc:
        return {
            "control_name": control_name,
            "forms": [],
            "error": make_error("BACKEND_ERROR", str(exc), _error_details(exc)),
        }

    return {
        "control_name": control_name,
        "entity_name": entity_name,
        "count": len(matches),
        "forms": [m.to_dict() for m in matches],
    }


# ---------------------------------------------------------------------------
# Diagnostics & cache
# ---------------------------------------------------------------------------


def _collect_environment_info(cfg: DataverseConfig) -> Dict[str, Any]:
    """Redacted snapshot of environment / OAuth configuration."""
    host = None
    if cfg.environment_url:
        host = urlparse(cfg.environment_url).hostname or cfg.environment_url

    return {
        "environment_url": cfg.environment_url,
        "host": host,
        "api_base_url": cfg.api_base_url,
        "mock_mode": bool(cfg.mock_mode),
        "verify_tls": bool(cfg.verify_tls),
        "oauth": {
            "token_url_configured": bool(cfg.oauth_token_url),
            "client_id_configured": bool(cfg.client_id),
            "client_secret_configured": bool(cfg.client_secret),
        },
        "limits": {
            "max_page_size": cfg.max_page_size,
            "default_page_size": cfg.default_page_size,
        },
        "discovery": {
            "publisher_prefix": cfg.publisher_prefix,
            "page_table": cfg.page_table,
            "target_table": cfg.target_table,
            "lookup_field_format": cfg.lookup_field_format,
        },
        "cache_config": {
            "ttl_seconds": cfg.cache_ttl_seconds,
            "max_entries": cfg.cache_max_entries,
        },
    }


def _elapsed_ms(t0: float) -> int:
    return int((time.time() - t0) * 1000)


async def diagnostics() -> Dict[str, Any]:
    started = time.time()
    cfg = DataverseConfig.from_env()
    config_info = _collect_environment_info(cfg)
    cache = _get_cache(cfg)

    checks: List[Dict[str, Any]] = []
    overall_ok = True

    t0 = time.time()
    try:
        client = _make_client()
        checks.append({"name": "client_init", "ok": True, "error": None, "elapsed_ms": _elapsed_ms(t0)})
    except DataverseError as exc:
        checks.append(
            {
                "name": "client_init",
                "ok": False,
                "error": make_error("CONFIG_ERROR", str(exc)),
                "elapsed_ms": _elapsed_ms(t0),
            }
        )
        return {
            "ok": False,
            "mock_mode": config_info["mock_mode"],
            "config": config_info,
            "checks": checks,
            "meta": {"elapsed_ms": _elapsed_ms(started), "cache": cache.stats()},
        }

    t0 = time.time()
    ok_ping = await client.ping()
    if ok_ping:
        checks.append({"name": "ping", "ok": True, "error": None, "elapsed_ms": _elapsed_ms(t0)})
    else:
        overall_ok = False
        checks.append(
            {
                "name": "ping",
                "ok": False,
                "error": make_error("CONFIG_ERROR", "DATAVERSE_URL is not configured."),
                "elapsed_ms": _elapsed_ms(t0),
            }
        )

    t0 = time.time()
    try:
        entities = await client.list_entities_with_views()
        checks.append(
            {
                "name": "list_entities_with_views",
                "ok": True,
                "count": len(entities),
                "error": None,
                "elapsed_ms": _elapsed_ms(t0),
            }
        )
    except DataverseError as exc:
        overall_ok = False
        checks.append(
            {
                "name": "list_entities_with_views",
                "ok": False,
                "error": make_error("BACKEND_ERROR", str(exc), _error_details(exc)),
                "elapsed_ms": _elapsed_ms(t0),
            }
        )

    return {
        "ok": overall_ok,
        "mock_mode": config_info["mock_mode"],
        "config": config_info,
        "checks": checks,
        "meta": {"elapsed_ms": _elapsed_ms(started), "cache": cache.stats()},
    }


async def cache_clear() -> Dict[str, Any]:
    cfg = DataverseConfig.from_env()
    cleared = _get_cache(cfg).clear()
    return {"cleared": cleared}


# ---------------------------------------------------------------------------
# MCP tool registration
# ---------------------------------------------------------------------------


def register_tools(server: Any) -> None:
    """Register MCP tools on an MCP Server-like instance."""
    if server is None or not hasattr(server, "tool"):
        raise ValueError(
            "register_tools(server) expects an MCP Server-like object that exposes a .tool() decorator."
        )

    @server.tool(name="dataverse_ping", description="Basic health check for the Dataverse dataset MCP server.")
    async def mcp_ping() -> Dict[str, Any]:
        return await ping()

    @server.tool(
        name="dataverse_list_views",
        description="List saved and personal views of a Dataverse table, sorted by name.",
    )
    async def mcp_list_views(entity_name: str) -> Dict[str, Any]:
        return await list_views(entity_name=entity_name)

    @server.tool(
        name="dataverse_get_view",
        description="Get one view by id (saved first, then personal) with its query and layout analysis.",
    )
    async def mcp_get_view(view_id: str, include_analysis: bool = True) -> Dict[str, Any]:
        return await get_view(view_id=view_id, include_analysis=include_analysis)

    @server.tool(name="dataverse_get_default_view", description="Get the default saved view of a Dataverse table.")
    async def mcp_get_default_view(entity_name: str) -> Dict[str, Any]:
        return await get_default_view(entity_name=entity_name)

    @server.tool(
        name="dataverse_search_views",
        description="Search saved and personal views by partial name, optionally within one table.",
    )
    async def mcp_search_views(term: str, entity_name: Optional[str] = None, limit: int = 50) -> Dict[str, Any]:
        return await search_views(term=term, entity_name=entity_name, limit=limit)

    @server.tool(
        name="dataverse_analyze_query",
        description="Statically analyse a FetchXML query: attributes, filters, joins, complexity and advice.",
    )
    async def mcp_analyze_query(query_text: str) -> Dict[str, Any]:
        return await analyze_query_text(query_text=query_text)

    @server.tool(name="dataverse_validate_query", description="Structural validation of a FetchXML query.")
    async def mcp_validate_query(query_text: str) -> Dict[str, Any]:
        return await validate_query_text(query_text=query_text)

    @server.tool(
        name="dataverse_resolve_relationships",
        description="Find the relationships through which child table rows reference a parent table.",
    )
    async def mcp_resolve_relationships(
        parent_entity: Optional[str] = None,
        child_entity: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await resolve_relationships(parent_entity=parent_entity, child_entity=child_entity)

    @server.tool(
        name="dataverse_related_entities",
        description="List browsable tables (with at least one view) that reference a parent table.",
    )
    async def mcp_related_entities(parent_entity: str, publisher_prefix: Optional[str] = None) -> Dict[str, Any]:
        return await related_entities(parent_entity=parent_entity, publisher_prefix=publisher_prefix)

    @server.tool(
        name="dataverse_execute_view",
        description="Execute a view by id and return one page of raw records (page number or continuation token).",
    )
    async def mcp_execute_view(
        view_id: str,
        max_page_size: Optional[int] = None,
        page_number: Optional[int] = None,
        continuation_token: Optional[str] = None,
        include_count: bool = False,
        filter_expr: Optional[str] = None,
        order_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await execute_view(
            view_id=view_id,
            max_page_size=max_page_size,
            page_number=page_number,
            continuation_token=continuation_token,
            include_count=include_count,
            filter_expr=filter_expr,
            order_by=order_by,
        )

    @server.tool(
        name="dataverse_execute_query",
        description="Execute a raw FetchXML query with paging written into the document.",
    )
    async def mcp_execute_query(
        query_text: str,
        entity_name: Optional[str] = None,
        max_page_size: Optional[int] = None,
        page_number: Optional[int] = None,
    ) -> Dict[str, Any]:
        return await execute_query(
            query_text=query_text,
            entity_name=entity_name,
            max_page_size=max_page_size,
            page_number=page_number,
        )

    @server.tool(
        name="dataverse_count_view",
        description="Count the records of a view. count is null when it could not be obtained.",
    )
    async def mcp_count_view(view_id: str) -> Dict[str, Any]:
        return await count_view(view_id=view_id)

    @server.tool(
        name="dataverse_materialize_view",
        description="Execute a view and return a typed dataset: columns, records keyed by id, paging state.",
    )
    async def mcp_materialize_view(
        view_id: str,
        max_page_size: Optional[int] = None,
        page_number: Optional[int] = None,
        include_count: bool = True,
    ) -> Dict[str, Any]:
        return await materialize_view(
            view_id=view_id,
            max_page_size=max_page_size,
            page_number=page_number,
            include_count=include_count,
        )

    @server.tool(
        name="dataverse_discover_forms",
        description="Find system forms hosting a custom control (Namespace.Constructor) and its dataset binding.",
    )
    async def mcp_discover_forms(
        control_name: str,
        entity_name: Optional[str] = None,
        publisher: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await discover_forms(control_name=control_name, entity_name=entity_name, publisher=publisher)

    @server.tool(
        name="dataverse_diagnostics",
        description="Run high-level health checks against the MCP server and Dataverse environment.",
    )
    async def mcp_diagnostics() -> Dict[str, Any]:
        return await diagnostics()

    @server.tool(name="dataverse_cache_clear", description="Clear the relationship / form discovery cache.")
    async def mcp_cache_clear() -> Dict[str, Any]:
        return await cache_clear()

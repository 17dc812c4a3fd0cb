# Dataverse Dataset MCP Server
# File: analyzer.py
# Version: v1

"""Static analysis of FetchXML-style query documents and view layouts.

A query document looks like::

    <fetch>
      <entity name="account" page="1" count="50">
        <attribute name="name" />
        <order attribute="name" descending="false" />
        <filter type="and">
          <condition attribute="statecode" operator="eq" value="0" />
        </filter>
        <link-entity name="contact" from="parentcustomerid" to="accountid" alias="c">
          <attribute name="fullname" />
        </link-entity>
      </entity>
    </fetch>

Nothing in this module raises on malformed input: problems are reported on
the returned ``QueryAnalysis`` / ``ValidationResult``. The only exception is
``inject_paging``, which has to produce a document and raises ``ValueError``
when it cannot.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from typing import List, Optional, Tuple

from .models import (
    ComplexityScore,
    LayoutColumn,
    PaginationHint,
    QueryAggregate,
    QueryAnalysis,
    QueryFilter,
    QueryJoin,
    QueryOrder,
    ValidationResult,
    ViewLayout,
)

logger = logging.getLogger(__name__)

# Operators that force a scan instead of an index seek.
SUBSTRING_OPERATORS = frozenset(
    {
        "like",
        "not-like",
        "contains",
        "does-not-contain",
        "begins-with",
        "not-begin-with",
        "ends-with",
        "not-end-with",
    }
)

MANY_ATTRIBUTES = 10
MANY_FILTERS = 5
OVER_SELECTION_ATTRIBUTES = 20
MANY_JOINS = 3


def _parse(query_text: str) -> Tuple[Optional[ET.Element], Optional[str]]:
    if not query_text or not query_text.strip():
        return None, "Query text is empty"
    try:
        return ET.fromstring(query_text), None
    except ET.ParseError as exc:
        return None, f"Invalid XML structure: {exc}"


def _find_fetch_and_entity(
    root: ET.Element,
) -> Tuple[Optional[ET.Element], Optional[ET.Element]]:
    fetch = root if root.tag == "fetch" else root.find(".//fetch")
    if fetch is None:
        return None, None
    return fetch, fetch.find("entity")


def _parse_int(raw: Optional[str]) -> Optional[int]:
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _is_true(raw: Optional[str]) -> bool:
    return (raw or "").strip().lower() in {"true", "1"}


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def _extract_attributes(entity: ET.Element) -> List[str]:
    return [a.get("name") for a in entity.iter("attribute") if a.get("name")]


def _extract_filters(entity: ET.Element) -> List[QueryFilter]:
    filters: List[QueryFilter] = []
    for condition in entity.iter("condition"):
        attribute = condition.get("attribute")
        operator = condition.get("operator")
        if not attribute or not operator:
            continue

        value = condition.get("value")
        if value is None:
            # multi-value operators (in, between) carry <value> children
            values = [v.text for v in condition.findall("value") if v.text]
            value = ",".join(values) if values else None

        filters.append(
            QueryFilter(
                attribute=attribute,
                operator=operator,
                value=value,
                entity_alias=condition.get("entityname"),
            )
        )
    return filters


def _extract_joins(entity: ET.Element) -> List[QueryJoin]:
    joins: List[QueryJoin] = []
    for link in entity.iter("link-entity"):
        name = link.get("name")
        from_attr = link.get("from")
        to_attr = link.get("to")
        if not (name and from_attr and to_attr):
            continue
        joins.append(
            QueryJoin(
                entity_name=name,
                alias=link.get("alias"),
                join_type=link.get("link-type") or "inner",
                from_attribute=from_attr,
                to_attribute=to_attr,
            )
        )
    return joins


def _extract_order_by(entity: ET.Element) -> List[QueryOrder]:
    orders: List[QueryOrder] = []
    for order in entity.iter("order"):
        attribute = order.get("attribute") or order.get("alias")
        if not attribute:
            continue
        orders.append(
            QueryOrder(
                attribute=attribute,
                descending=_is_true(order.get("descending")),
                entity_alias=order.get("entityname"),
            )
        )
    return orders


def _extract_group_by(entity: ET.Element) -> List[str]:
    return [
        a.get("name")
        for a in entity.iter("attribute")
        if a.get("name") and _is_true(a.get("groupby"))
    ]


def _extract_aggregates(entity: ET.Element) -> List[QueryAggregate]:
    aggregates: List[QueryAggregate] = []
    for attr in entity.iter("attribute"):
        function = attr.get("aggregate")
        name = attr.get("name")
        alias = attr.get("alias")
        if function and name and alias:
            aggregates.append(
                QueryAggregate(
                    attribute=name,
                    function=function,
                    alias=alias,
                    entity_alias=attr.get("entityname"),
                )
            )
    return aggregates


# ---------------------------------------------------------------------------
# Scoring & heuristics
# ---------------------------------------------------------------------------


def score_complexity(analysis: QueryAnalysis) -> ComplexityScore:
    """Additive complexity score over the counted structural elements."""
    score = 0
    factors: List[str] = []

    if len(analysis.attributes) > MANY_ATTRIBUTES:
        score += 2
        factors.append(f"Many attributes ({len(analysis.attributes)})")

    if len(analysis.filters) > MANY_FILTERS:
        score += 2
        factors.append(f"Many filters ({len(analysis.filters)})")

    if analysis.joins:
        score += 2 * len(analysis.joins)
        factors.append(f"{len(analysis.joins)} join(s)")

    if analysis.aggregates:
        score += len(analysis.aggregates)
        factors.append(f"{len(analysis.aggregates)} aggregate(s)")

    if analysis.group_by:
        score += 2
        factors.append("Grouping operations")

    return ComplexityScore(score=score, factors=factors)


def _performance_advice(
    analysis: QueryAnalysis, selects_all: bool
) -> Tuple[List[str], List[str]]:
    warnings: List[str] = []
    suggestions: List[str] = []

    if len(analysis.attributes) > OVER_SELECTION_ATTRIBUTES:
        warnings.append("Query selects many attributes which may impact performance")
        suggestions.append("Consider selecting only needed attributes")

    if selects_all:
        warnings.append("Query selects all attributes")
        suggestions.append("Replace <all-attributes/> with the columns actually used")

    if len(analysis.joins) > MANY_JOINS:
        warnings.append("Multiple joins may slow down the query")
        suggestions.append("Review if all joins are necessary")

    if not analysis.filters and not analysis.joins:
        warnings.append("Query has no filters and may return large result set")
        suggestions.append("Add appropriate filters to limit results")

    if not analysis.pagination.has_page_info and analysis.joins:
        suggestions.append("Consider adding pagination for queries with joins")

    if any(f.operator.lower() in SUBSTRING_OPERATORS for f in analysis.filters):
        warnings.append("Query contains potentially slow text search operators")
        suggestions.append("Consider using exact matches where possible")

    return warnings, suggestions


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def analyze_query(query_text: str) -> QueryAnalysis:
    """Parse and statically analyse one query document. Never raises."""
    analysis = QueryAnalysis()

    root, parse_error = _parse(query_text)
    if root is None:
        analysis.errors.append(parse_error or "Invalid XML structure")
        return analysis

    fetch, entity = _find_fetch_and_entity(root)
    if fetch is None or entity is None:
        analysis.errors.append("Missing fetch or entity element")
        return analysis

    analysis.is_valid = True
    analysis.entity_name = entity.get("name")
    analysis.pagination = PaginationHint(
        page=_parse_int(entity.get("page") or fetch.get("page")),
        count=_parse_int(entity.get("count") or fetch.get("count")),
    )
    analysis.attributes = _extract_attributes(entity)
    analysis.filters = _extract_filters(entity)
    analysis.joins = _extract_joins(entity)
    analysis.order_by = _extract_order_by(entity)
    analysis.group_by = _extract_group_by(entity)
    analysis.aggregates = _extract_aggregates(entity)
    analysis.complexity = score_complexity(analysis)

    selects_all = entity.find("all-attributes") is not None
    analysis.warnings, analysis.suggestions = _performance_advice(analysis, selects_all)

    return analysis


def validate_query(query_text: str) -> ValidationResult:
    """Structural checks only: required elements and required attributes."""
    errors: List[str] = []

    root, parse_error = _parse(query_text)
    if root is None:
        return ValidationResult(is_valid=False, errors=[parse_error or "Invalid XML syntax"])

    fetch, entity = _find_fetch_and_entity(root)
    if fetch is None:
        errors.append("Missing <fetch> element")
    if entity is None:
        errors.append("Missing <entity> element")
        return ValidationResult(is_valid=False, errors=errors)

    if not entity.get("name"):
        errors.append("Entity element missing name attribute")

    for index, attr in enumerate(entity.iter("attribute"), start=1):
        if not attr.get("name"):
            errors.append(f"Attribute {index} missing name attribute")

    for index, condition in enumerate(entity.iter("condition"), start=1):
        if not condition.get("attribute"):
            errors.append(f"Condition {index} missing attribute")
        if not condition.get("operator"):
            errors.append(f"Condition {index} missing operator")

    return ValidationResult(is_valid=not errors, errors=errors)


def extract_entity_name(query_text: str) -> Optional[str]:
    root, _ = _parse(query_text)
    if root is None:
        return None
    _, entity = _find_fetch_and_entity(root)
    return entity.get("name") if entity is not None else None


def extract_referenced_entities(query_text: str) -> List[str]:
    """Target table plus every linked table, in document order."""
    root, _ = _parse(query_text)
    if root is None:
        return []
    _, entity = _find_fetch_and_entity(root)
    if entity is None:
        return []

    names: List[str] = []
    for elem in [entity, *entity.iter("link-entity")]:
        name = elem.get("name")
        if name and name not in names:
            names.append(name)
    return names


def inject_paging(query_text: str, page: int, count: int) -> str:
    """Return a copy of ``query_text`` with page/count set on the entity element.

    The query dialect carries paging inline, so raw query execution mutates the
    document rather than passing separate parameters.
    """
    root, parse_error = _parse(query_text)
    if root is None:
        raise ValueError(parse_error or "Invalid XML structure")

    fetch, entity = _find_fetch_and_entity(root)
    if entity is None:
        raise ValueError("Missing fetch or entity element")

    entity.set("page", str(int(page)))
    entity.set("count", str(int(count)))
    return ET.tostring(root, encoding="unicode")


def analyze_layout(layout_text: Optional[str]) -> ViewLayout:
    """Extract column order, widths and flags from a view layout document."""
    layout = ViewLayout()
    if not layout_text:
        return layout

    root, parse_error = _parse(layout_text)
    if root is None:
        logger.warning("Failed to parse view layout: %s", parse_error)
        return layout

    if root.tag == "grid" or root.find(".//grid") is not None:
        layout.layout_type = "grid"
    elif root.tag == "list" or root.find(".//list") is not None:
        layout.layout_type = "list"

    total_width = 0
    for cell in root.iter("cell"):
        name = cell.get("name")
        if not name:
            continue

        width = _parse_int(cell.get("width"))
        column = LayoutColumn(
            name=name,
            order=len(layout.columns),
            width=width,
            is_visible=not _is_true(cell.get("ishidden")),
            is_primary=_is_true(cell.get("isprimary")),
            is_sortable=not _is_true(cell.get("disableSorting")),
            display_name=cell.get("LabelId") or cell.get("label"),
        )
        if width:
            total_width += width
            layout.has_custom_width = True
        layout.columns.append(column)

    if total_width:
        layout.total_width = total_width

    return layout


class QueryTextAnalyzer:
    """Injectable wrapper over the module-level analysis functions."""

    def analyze(self, query_text: str) -> QueryAnalysis:
        return analyze_query(query_text)

    def validate(self, query_text: str) -> ValidationResult:
        return validate_query(query_text)

    def analyze_layout(self, layout_text: Optional[str]) -> ViewLayout:
        return analyze_layout(layout_text)

    def inject_paging(self, query_text: str, page: int, count: int) -> str:
        return inject_paging(query_text, page, count)

# Dataverse Dataset MCP Server
# File: models.py
# Version: v1

"""Domain models used by the Dataverse Dataset MCP server."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------


@dataclass
class EntityDefinition:
    """Table (entity) definition as returned by EntityDefinitions."""

    logical_name: str
    display_name: str
    primary_id_attribute: str
    primary_name_attribute: Optional[str] = None

    # Collection name used in record URLs, e.g. "accounts".
    entity_set_name: Optional[str] = None

    # Raw JSON payload from the API, for debugging / advanced use.
    raw: Optional[Dict[str, Any]] = None


@dataclass
class EntityInfo:
    """Lightweight table descriptor for pickers and listings."""

    logical_name: str
    display_name: str

    @property
    def display_text(self) -> str:
        if self.display_name == self.logical_name:
            return self.logical_name
        return f"{self.display_name} ({self.logical_name})"


@dataclass
class LookupAttribute:
    logical_name: str
    display_name: str
    targets: List[str] = field(default_factory=list)


@dataclass
class AttributeDefinition:
    logical_name: str
    display_name: str
    attribute_type: Optional[str] = None
    is_primary_id: bool = False
    is_primary_name: bool = False
    targets: List[str] = field(default_factory=list)


@dataclass
class RelationshipDefinition:
    """One row of OneToManyRelationshipMetadata."""

    schema_name: str
    referenced_entity: str
    referenced_attribute: Optional[str]
    referencing_entity: str
    referencing_attribute: str


class RelationshipType(str, Enum):
    ONE_TO_MANY = "OneToMany"
    MANY_TO_ONE = "ManyToOne"


@dataclass(frozen=True)
class EntityRelationship:
    """A resolved relationship between a parent and a child table."""

    schema_name: str
    referencing_entity: str
    referenced_entity: str
    referencing_attribute: str
    lookup_field_name: str
    relationship_type: RelationshipType
    referenced_attribute: Optional[str] = None
    source: str = "lookup_attribute"

    def filter_for(self, record_id: str) -> str:
        """OData filter selecting referencing rows that point at ``record_id``."""
        return f"{self.lookup_field_name} eq {record_id.strip('{}')}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_name": self.schema_name,
            "relationship_type": self.relationship_type.value,
            "referencing_entity": self.referencing_entity,
            "referenced_entity": self.referenced_entity,
            "referencing_attribute": self.referencing_attribute,
            "referenced_attribute": self.referenced_attribute,
            "lookup_field_name": self.lookup_field_name,
            "source": self.source,
        }


# ---------------------------------------------------------------------------
# Views and query analysis
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ViewDefinition:
    """A saved (system) or personal view bound to one table."""

    id: str
    name: str
    entity_name: str
    query_text: str
    layout_text: Optional[str] = None
    is_default: bool = False
    is_personal: bool = False
    is_private: bool = False
    description: Optional[str] = None
    query_type: Optional[int] = None

    @property
    def query_parameter(self) -> str:
        """Web API parameter used to reference this view by id."""
        return "userQuery" if self.is_personal else "savedQuery"

    def to_dict(self, include_query: bool = True) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "entity_name": self.entity_name,
            "is_default": self.is_default,
            "is_personal": self.is_personal,
            "is_private": self.is_private,
            "description": self.description,
            "query_type": self.query_type,
        }
        if include_query:
            out["query_text"] = self.query_text
            out["layout_text"] = self.layout_text
        return out


@dataclass
class QueryFilter:
    attribute: str
    operator: str
    value: Optional[str] = None
    entity_alias: Optional[str] = None


@dataclass
class QueryJoin:
    entity_name: str
    from_attribute: str
    to_attribute: str
    alias: Optional[str] = None
    join_type: str = "inner"


@dataclass
class QueryOrder:
    attribute: str
    descending: bool = False
    entity_alias: Optional[str] = None

    @property
    def direction(self) -> str:
        return "desc" if self.descending else "asc"


@dataclass
class QueryAggregate:
    attribute: str
    function: str
    alias: str
    entity_alias: Optional[str] = None


@dataclass
class PaginationHint:
    page: Optional[int] = None
    count: Optional[int] = None

    @property
    def has_page_info(self) -> bool:
        return self.page is not None or self.count is not None


class ComplexityLevel(str, Enum):
    SIMPLE = "Simple"
    MODERATE = "Moderate"
    COMPLEX = "Complex"
    VERY_COMPLEX = "Very Complex"

    @classmethod
    def for_score(cls, score: int) -> "ComplexityLevel":
        if score <= 2:
            return cls.SIMPLE
        if score <= 5:
            return cls.MODERATE
        if score <= 10:
            return cls.COMPLEX
        return cls.VERY_COMPLEX


@dataclass
class ComplexityScore:
    score: int = 0
    factors: List[str] = field(default_factory=list)

    @property
    def level(self) -> ComplexityLevel:
        return ComplexityLevel.for_score(self.score)


@dataclass
class QueryAnalysis:
    """Static analysis of one query document."""

    is_valid: bool = False
    entity_name: Optional[str] = None
    attributes: List[str] = field(default_factory=list)
    filters: List[QueryFilter] = field(default_factory=list)
    joins: List[QueryJoin] = field(default_factory=list)
    order_by: List[QueryOrder] = field(default_factory=list)
    group_by: List[str] = field(default_factory=list)
    aggregates: List[QueryAggregate] = field(default_factory=list)
    pagination: PaginationHint = field(default_factory=PaginationHint)
    complexity: ComplexityScore = field(default_factory=ComplexityScore)
    warnings: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "entity_name": self.entity_name,
            "attributes": list(self.attributes),
            "filters": [
                {
                    "attribute": f.attribute,
                    "operator": f.operator,
                    "value": f.value,
                    "entity_alias": f.entity_alias,
                }
                for f in self.filters
            ],
            "joins": [
                {
                    "entity_name": j.entity_name,
                    "alias": j.alias,
                    "join_type": j.join_type,
                    "from_attribute": j.from_attribute,
                    "to_attribute": j.to_attribute,
                }
                for j in self.joins
            ],
            "order_by": [
                {"attribute": o.attribute, "direction": o.direction, "entity_alias": o.entity_alias}
                for o in self.order_by
            ],
            "group_by": list(self.group_by),
            "aggregates": [
                {
                    "attribute": a.attribute,
                    "function": a.function,
                    "alias": a.alias,
                    "entity_alias": a.entity_alias,
                }
                for a in self.aggregates
            ],
            "pagination": {
                "has_page_info": self.pagination.has_page_info,
                "page": self.pagination.page,
                "count": self.pagination.count,
            },
            "complexity": {
                "score": self.complexity.score,
                "level": self.complexity.level.value,
                "factors": list(self.complexity.factors),
            },
            "performance": {
                "warnings": list(self.warnings),
                "suggestions": list(self.suggestions),
            },
            "errors": list(self.errors),
        }


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)


@dataclass
class LayoutColumn:
    name: str
    order: int
    width: Optional[int] = None
    is_visible: bool = True
    is_primary: bool = False
    is_sortable: bool = True
    display_name: Optional[str] = None


@dataclass
class ViewLayout:
    """Column layout parsed from a view's layout document."""

    columns: List[LayoutColumn] = field(default_factory=list)
    layout_type: str = "unknown"
    has_custom_width: bool = False
    total_width: Optional[int] = None


# ---------------------------------------------------------------------------
# Record pages
# ---------------------------------------------------------------------------


@dataclass
class RecordListQuery:
    """Structured parameters for one request against a record collection.

    ``next_link`` resumes a previous query verbatim. ``fetch_xml`` carries
    its own projection, filter, order and paging, so structured options
    are ignored when it is set.
    """

    select: List[str] = field(default_factory=list)
    filter_expr: Optional[str] = None
    order_by: Optional[str] = None
    top: Optional[int] = None
    page_size: Optional[int] = None
    include_count: bool = False
    saved_query: Optional[str] = None
    user_query: Optional[str] = None
    fetch_xml: Optional[str] = None
    next_link: Optional[str] = None


@dataclass
class RecordQueryOptions:
    """Paging, filter and ordering options for one record query.

    ``page_number`` (offset-style) and ``continuation_token`` (cursor-style)
    are mutually exclusive.
    """

    max_page_size: Optional[int] = None
    page_number: Optional[int] = None
    continuation_token: Optional[str] = None
    include_count: bool = False
    filter_expr: Optional[str] = None
    order_by: Optional[str] = None

    def __post_init__(self) -> None:
        if self.page_number is not None and self.continuation_token:
            raise ValueError("page_number and continuation_token cannot be combined")
        if self.page_number is not None and self.page_number < 1:
            raise ValueError("page_number starts at 1")
        if self.max_page_size is not None and self.max_page_size < 1:
            raise ValueError("max_page_size must be positive")


@dataclass
class RecordPage:
    """One page of raw records as returned by the Web API."""

    entities: List[Dict[str, Any]] = field(default_factory=list)
    total_count: Optional[int] = None
    next_link: Optional[str] = None
    success: bool = True
    error: Optional[str] = None
    error_analysis: Optional[Dict[str, Any]] = None
    query_text: Optional[str] = None
    view: Optional[ViewDefinition] = None
    entity_name: Optional[str] = None
    page_number: int = 1
    page_size: Optional[int] = None
    # Fetched by following a continuation token; page_number is then unknown.
    resumed: bool = False

    @classmethod
    def failure(
        cls,
        error: str,
        view: Optional[ViewDefinition] = None,
        query_text: Optional[str] = None,
        entity_name: Optional[str] = None,
        error_analysis: Optional[Dict[str, Any]] = None,
    ) -> "RecordPage":
        return cls(
            success=False,
            error=error,
            error_analysis=error_analysis,
            view=view,
            query_text=query_text,
            entity_name=entity_name or (view.entity_name if view else None),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "error_analysis": self.error_analysis,
            "entity_name": self.entity_name,
            "view_id": self.view.id if self.view else None,
            "record_count": len(self.entities),
            "total_count": self.total_count,
            "next_link": self.next_link,
            "page_number": self.page_number,
            "resumed": self.resumed,
            "page_size": self.page_size,
            "entities": list(self.entities),
        }


# ---------------------------------------------------------------------------
# Materialised dataset
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScalarValue:
    raw: Any
    formatted: Optional[str] = None
    kind: str = field(default="scalar", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "raw": self.raw, "formatted": self.formatted}


@dataclass(frozen=True)
class LookupValue:
    id: str
    name: Optional[str] = None
    entity_type: Optional[str] = None
    kind: str = field(default="lookup", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "id": self.id, "name": self.name, "entity_type": self.entity_type}


@dataclass(frozen=True)
class OptionSetValue:
    value: Any
    label: Optional[str] = None
    kind: str = field(default="optionset", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "value": self.value, "label": self.label}


FieldValue = Union[ScalarValue, LookupValue, OptionSetValue]


@dataclass
class DatasetColumn:
    name: str
    display_name: str
    data_type: str = "SingleLine.Text"
    alias: Optional[str] = None
    order: int = 0
    is_primary: bool = False
    width: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "data_type": self.data_type,
            "alias": self.alias or self.name,
            "order": self.order,
            "is_primary": self.is_primary,
            "width": self.width,
        }


@dataclass
class DatasetRecord:
    id: str
    entity_name: Optional[str] = None
    fields: Dict[str, FieldValue] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_name": self.entity_name,
            "fields": {name: value.to_dict() for name, value in self.fields.items()},
        }


@dataclass
class PagingState:
    page_number: int = 1
    page_size: Optional[int] = None
    total_count: Optional[int] = None
    has_next_page: bool = False
    has_previous_page: bool = False
    next_link: Optional[str] = None

    @property
    def total_pages(self) -> Optional[int]:
        if self.total_count is None or not self.page_size:
            return None
        return max(1, math.ceil(self.total_count / self.page_size))


@dataclass
class MaterializedDataset:
    """Columns + records + paging state, ready for a UI layer."""

    entity_name: Optional[str] = None
    columns: List[DatasetColumn] = field(default_factory=list)
    records: Dict[str, DatasetRecord] = field(default_factory=dict)
    paging: PagingState = field(default_factory=PagingState)
    column_source: Optional[str] = None
    error: Optional[str] = None

    @property
    def sorted_record_ids(self) -> List[str]:
        return list(self.records.keys())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_name": self.entity_name,
            "columns": [c.to_dict() for c in self.columns],
            "sorted_record_ids": self.sorted_record_ids,
            "records": {rid: r.to_dict() for rid, r in self.records.items()},
            "paging": {
                "page_number": self.paging.page_number,
                "page_size": self.paging.page_size,
                "total_count": self.paging.total_count,
                "total_pages": self.paging.total_pages,
                "has_next_page": self.paging.has_next_page,
                "has_previous_page": self.paging.has_previous_page,
            },
            "column_source": self.column_source,
            "error": self.error,
        }


# ---------------------------------------------------------------------------
# Forms
# ---------------------------------------------------------------------------


@dataclass
class FormDataSet:
    """Subgrid binding of a custom control (its ``data-set`` parameter)."""

    name: str
    view_id: Optional[str] = None
    is_user_view: bool = False
    target_entity: Optional[str] = None
    relationship_name: Optional[str] = None
    enable_view_picker: bool = False
    filtered_view_ids: List[str] = field(default_factory=list)

    @property
    def is_related(self) -> bool:
        return bool(self.relationship_name and self.relationship_name.strip())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "view_id": self.view_id,
            "is_user_view": self.is_user_view,
            "target_entity": self.target_entity,
            "relationship_name": self.relationship_name,
            "is_related": self.is_related,
            "enable_view_picker": self.enable_view_picker,
            "filtered_view_ids": list(self.filtered_view_ids),
        }


@dataclass
class FormControl:
    """One custom control hosted on a form.

    ``name`` is the full control name as written in the form
    (``prefix_Namespace.Constructor``); ``namespace`` has the publisher
    prefix removed.
    """

    control_id: Optional[str]
    name: str
    namespace: str = ""
    constructor: str = ""
    version: Optional[str] = None
    form_factor: Optional[str] = None
    data_set: Optional[FormDataSet] = None
    parameters: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "control_id": self.control_id,
            "name": self.name,
            "namespace": self.namespace,
            "constructor": self.constructor,
            "version": self.version,
            "form_factor": self.form_factor,
            "data_set": self.data_set.to_dict() if self.data_set else None,
            "parameters": dict(self.parameters),
        }


@dataclass
class FormMatch:
    form_id: str
    form_name: str
    entity_name: Optional[str]
    controls: List[FormControl] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "form_id": self.form_id,
            "form_name": self.form_name,
            "entity_name": self.entity_name,
            "controls": [c.to_dict() for c in self.controls],
        }

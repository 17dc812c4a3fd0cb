# Dataverse Dataset MCP Server
# File: dataset.py
# Version: v1

"""Turn a raw ``RecordPage`` into a ``MaterializedDataset``.

Columns come from, in order of preference:

- the view's layout document
- the attributes projected by the view's query
- the union of keys seen on the records themselves

Each field is typed explicitly as a scalar, lookup or option set value.
Fields missing from a record stay missing; nothing is padded with nulls.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from .analyzer import analyze_layout, analyze_query
from .client import FORMATTED_VALUE_SUFFIX, LOOKUP_LOGICAL_NAME_SUFFIX
from .models import (
    AttributeDefinition,
    DatasetColumn,
    DatasetRecord,
    EntityDefinition,
    FieldValue,
    LookupValue,
    MaterializedDataset,
    OptionSetValue,
    PagingState,
    QueryAnalysis,
    RecordPage,
    ScalarValue,
    ViewDefinition,
    ViewLayout,
)
from .relationships import LookupFieldConvention

logger = logging.getLogger(__name__)

DEFAULT_DATA_TYPE = "SingleLine.Text"

# Dataverse attribute types to dataset column types.
ATTRIBUTE_TYPE_MAP: Dict[str, str] = {
    "String": "SingleLine.Text",
    "Memo": "Multiple",
    "Integer": "Whole.None",
    "BigInt": "Whole.None",
    "Double": "Decimal",
    "Decimal": "Decimal",
    "Money": "Currency",
    "Boolean": "TwoOptions",
    "DateTime": "DateAndTime.DateAndTime",
    "Picklist": "OptionSet",
    "State": "OptionSet",
    "Status": "OptionSet",
    "Lookup": "Lookup.Simple",
    "Customer": "Lookup.Customer",
    "Owner": "Lookup.Owner",
    "Uniqueidentifier": "SingleLine.Text",
    "Virtual": "SingleLine.Text",
    "MultiSelectPicklist": "MultiSelectPicklist",
}

OPTION_SET_TYPES = frozenset({"OptionSet", "TwoOptions", "MultiSelectPicklist"})

COLUMNS_FROM_LAYOUT = "layout"
COLUMNS_FROM_QUERY = "query"
COLUMNS_FROM_RECORDS = "records"

_ISO_DATETIME = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}")


def map_attribute_type(attribute: AttributeDefinition) -> str:
    attribute_type = attribute.attribute_type or ""
    if attribute_type == "Integer" and "duration" in attribute.logical_name:
        return "Whole.Duration"
    if attribute_type == "Virtual" and "multiselect" in attribute.logical_name:
        return "MultiSelectPicklist"
    return ATTRIBUTE_TYPE_MAP.get(attribute_type, DEFAULT_DATA_TYPE)


def infer_data_type(value: Any) -> str:
    """Best-effort column type from a sample value."""
    if isinstance(value, bool):
        return "TwoOptions"
    if isinstance(value, int):
        return "Whole.None"
    if isinstance(value, float):
        return "Decimal"
    if isinstance(value, str) and _ISO_DATETIME.match(value):
        return "DateAndTime.DateAndTime"
    return DEFAULT_DATA_TYPE


def format_display_name(name: str) -> str:
    """``new_firstname`` -> ``New firstname``; ``firstName`` -> ``First Name``."""
    spaced = re.sub(r"([A-Z])", r" \1", name).replace("_", " ").strip()
    return spaced[:1].upper() + spaced[1:]


class DatasetMaterializer:
    def __init__(self, convention: Optional[LookupFieldConvention] = None) -> None:
        self.convention = convention or LookupFieldConvention()

    def materialize(
        self,
        page: RecordPage,
        layout: Optional[ViewLayout] = None,
        analysis: Optional[QueryAnalysis] = None,
        attributes: Optional[Dict[str, AttributeDefinition]] = None,
        entity: Optional[EntityDefinition] = None,
    ) -> MaterializedDataset:
        attributes = attributes or {}
        entity_name = page.entity_name or (entity.logical_name if entity else None)
        records = page.entities if page.success else []

        columns, column_source = self._columns(records, layout, analysis, attributes)
        paging = self._paging(page)

        if not page.success:
            return MaterializedDataset(
                entity_name=entity_name,
                columns=columns,
                paging=paging,
                column_source=column_source,
                error=page.error or "Record query failed",
            )

        if entity is not None:
            id_attribute = entity.primary_id_attribute
        else:
            id_attribute = f"{entity_name}id" if entity_name else None
        types = {c.name: c.data_type for c in columns}

        out: Dict[str, DatasetRecord] = {}
        for raw in records:
            record_id = raw.get(id_attribute) if id_attribute else None
            if record_id is None:
                logger.warning(
                    "Skipping %s record without primary id %s", entity_name, id_attribute
                )
                continue
            record_id = str(record_id)
            if record_id in out:
                logger.warning("Duplicate %s record id %s, keeping the first", entity_name, record_id)
                continue

            fields: Dict[str, FieldValue] = {}
            for column in columns:
                value = self._field(raw, column.name, types[column.name])
                if value is not None:
                    fields[column.name] = value
            out[record_id] = DatasetRecord(id=record_id, entity_name=entity_name, fields=fields)

        logger.info(
            "Materialised %d record(s) and %d column(s) for %s from %s",
            len(out),
            len(columns),
            entity_name,
            column_source,
        )
        return MaterializedDataset(
            entity_name=entity_name,
            columns=columns,
            records=out,
            paging=paging,
            column_source=column_source,
        )

    def materialize_view(
        self,
        page: RecordPage,
        view: ViewDefinition,
        attributes: Optional[Dict[str, AttributeDefinition]] = None,
        entity: Optional[EntityDefinition] = None,
    ) -> MaterializedDataset:
        """``materialize`` with the layout and analysis taken from ``view``."""
        layout = analyze_layout(view.layout_text) if view.layout_text else None
        analysis = analyze_query(view.query_text) if view.query_text else None
        return self.materialize(
            page, layout=layout, analysis=analysis, attributes=attributes, entity=entity
        )

    # ------------------------------------------------------------------
    # Columns
    # ------------------------------------------------------------------

    def _columns(
        self,
        records: List[Dict[str, Any]],
        layout: Optional[ViewLayout],
        analysis: Optional[QueryAnalysis],
        attributes: Dict[str, AttributeDefinition],
    ):
        if layout is not None and layout.columns:
            columns = []
            for index, cell in enumerate(layout.columns):
                column = self._column(cell.name, index, records, attributes)
                column.width = cell.width
                column.is_primary = column.is_primary or cell.is_primary
                if cell.display_name and cell.name not in attributes:
                    column.display_name = cell.display_name
                columns.append(column)
            return columns, COLUMNS_FROM_LAYOUT

        if analysis is not None and analysis.attributes:
            names = list(dict.fromkeys(analysis.attributes))
            return (
                [self._column(n, i, records, attributes) for i, n in enumerate(names)],
                COLUMNS_FROM_QUERY,
            )

        names = self._record_keys(records)
        return (
            [self._column(n, i, records, attributes) for i, n in enumerate(names)],
            COLUMNS_FROM_RECORDS,
        )

    def _record_keys(self, records: List[Dict[str, Any]]) -> List[str]:
        names: Dict[str, None] = {}
        for raw in records:
            for key in raw:
                if "@" in key:
                    continue
                names.setdefault(self.convention.attribute_for(key) or key, None)
        return list(names)

    def _column(
        self,
        name: str,
        order: int,
        records: List[Dict[str, Any]],
        attributes: Dict[str, AttributeDefinition],
    ) -> DatasetColumn:
        attribute = attributes.get(name)
        if attribute is not None:
            return DatasetColumn(
                name=name,
                display_name=attribute.display_name,
                data_type=map_attribute_type(attribute),
                order=order,
                is_primary=attribute.is_primary_name,
            )

        lookup_key = self.convention.field_name(name)
        if any(lookup_key in raw for raw in records):
            data_type = "Lookup.Simple"
        else:
            sample = next((raw[name] for raw in records if raw.get(name) is not None), None)
            data_type = infer_data_type(sample)

        return DatasetColumn(
            name=name,
            display_name=format_display_name(name),
            data_type=data_type,
            order=order,
        )

    # ------------------------------------------------------------------
    # Fields and paging
    # ------------------------------------------------------------------

    def _field(self, raw: Dict[str, Any], name: str, data_type: str) -> Optional[FieldValue]:
        lookup_key = self.convention.field_name(name)
        if lookup_key in raw:
            lookup_id = raw[lookup_key]
            if lookup_id is None:
                return ScalarValue(raw=None)
            return LookupValue(
                id=str(lookup_id),
                name=raw.get(lookup_key + FORMATTED_VALUE_SUFFIX),
                entity_type=raw.get(lookup_key + LOOKUP_LOGICAL_NAME_SUFFIX),
            )

        if name not in raw:
            return None

        value = raw[name]
        formatted = raw.get(name + FORMATTED_VALUE_SUFFIX)
        if data_type in OPTION_SET_TYPES:
            return OptionSetValue(value=value, label=formatted)
        return ScalarValue(raw=value, formatted=formatted)

    @staticmethod
    def _paging(page: RecordPage) -> PagingState:
        paging = PagingState(
            page_number=page.page_number,
            page_size=page.page_size,
            total_count=page.total_count,
            next_link=page.next_link,
            has_previous_page=page.resumed or page.page_number > 1,
        )
        total_pages = paging.total_pages
        paging.has_next_page = bool(page.next_link) or (
            not page.resumed and total_pages is not None and page.page_number < total_pages
        )
        return paging

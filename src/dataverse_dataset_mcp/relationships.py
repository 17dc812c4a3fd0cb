# Dataverse Dataset MCP Server
# File: relationships.py
# Version: v1

"""Resolve how two tables are related.

``RelationshipResolver.resolve`` runs an ordered strategy chain and stops
at the first strategy that finds anything:

1. lookup attributes on the child whose targets include the parent
2. one-to-many relationship definitions between the two tables
3. nothing: an empty list, never a guess based on name similarity

Several results mean the caller must pick one. The resolver makes no
selection and keeps no state besides the optional discovery cache.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .cache import DiscoveryCache, make_key
from .client import DataverseClient
from .config import DEFAULT_LOOKUP_FIELD_FORMAT
from .errors import DataverseError, TransportError
from .models import EntityInfo, EntityRelationship, RelationshipDefinition, RelationshipType

logger = logging.getLogger(__name__)

SOURCE_LOOKUP_ATTRIBUTE = "lookup_attribute"
SOURCE_RELATIONSHIP_METADATA = "relationship_metadata"


@dataclass(frozen=True)
class LookupFieldConvention:
    """How the Web API exposes a lookup's referenced id on a record.

    The default turns ``parentcustomerid`` into ``_parentcustomerid_value``.
    """

    template: str = DEFAULT_LOOKUP_FIELD_FORMAT

    def field_name(self, attribute: str) -> str:
        return self.template.replace("{attribute}", attribute)

    def attribute_for(self, field_name: str) -> Optional[str]:
        """Inverse of ``field_name``; None when the name does not match."""
        prefix, _, suffix = self.template.partition("{attribute}")
        if len(field_name) <= len(prefix) + len(suffix):
            return None
        if not (field_name.startswith(prefix) and field_name.endswith(suffix)):
            return None
        return field_name[len(prefix) : len(field_name) - len(suffix)]


def _dedupe(relationships: Iterable[EntityRelationship]) -> List[EntityRelationship]:
    seen = set()
    out: List[EntityRelationship] = []
    for rel in relationships:
        if rel.schema_name in seen:
            continue
        seen.add(rel.schema_name)
        out.append(rel)
    return out


class RelationshipResolver:
    def __init__(
        self,
        client: DataverseClient,
        cache: Optional[DiscoveryCache] = None,
        convention: Optional[LookupFieldConvention] = None,
        publisher_prefix: Optional[str] = None,
    ) -> None:
        self._client = client
        self._cache = cache
        self.convention = convention or LookupFieldConvention()
        self.publisher_prefix = publisher_prefix

    def _build_relationship(
        self,
        definition: RelationshipDefinition,
        relationship_type: RelationshipType,
        source: str,
    ) -> EntityRelationship:
        return EntityRelationship(
            schema_name=definition.schema_name,
            referencing_entity=definition.referencing_entity,
            referenced_entity=definition.referenced_entity,
            referencing_attribute=definition.referencing_attribute,
            referenced_attribute=definition.referenced_attribute,
            lookup_field_name=self.convention.field_name(definition.referencing_attribute),
            relationship_type=relationship_type,
            source=source,
        )

    async def resolve(self, parent_entity: str, child_entity: str) -> List[EntityRelationship]:
        """All relationships through which ``child_entity`` rows point at ``parent_entity``."""
        key = make_key("relationships", parent_entity, child_entity)
        if self._cache is not None:
            cached = self._cache.get(key)
            if cached is not None:
                logger.debug("Relationship cache hit for %s -> %s", parent_entity, child_entity)
                return list(cached)

        found = await self._from_lookup_attributes(parent_entity, child_entity)
        if not found:
            found = await self._from_relationship_metadata(parent_entity, child_entity)

        results = _dedupe(found)
        if not results:
            logger.info("No relationship found between %s and %s", parent_entity, child_entity)
            return []

        logger.info(
            "Found %d relationship(s) between %s and %s",
            len(results),
            parent_entity,
            child_entity,
        )
        if self._cache is not None:
            self._cache.set(key, tuple(results))
        return results

    async def _from_lookup_attributes(
        self, parent_entity: str, child_entity: str
    ) -> List[EntityRelationship]:
        try:
            lookups = await self._client.get_lookup_attributes(child_entity)
        except TransportError as exc:
            logger.warning("Lookup attribute scan of %s failed: %s", child_entity, exc)
            return []

        matching = [lookup for lookup in lookups if parent_entity in lookup.targets]
        if not matching:
            return []

        # Real schema names live in the relationship metadata; a failure here
        # only costs us the names, not the relationships.
        by_attribute: Dict[str, RelationshipDefinition] = {}
        try:
            for definition in await self._client.get_many_to_one_relationships(
                child_entity, referenced_entity=parent_entity
            ):
                by_attribute.setdefault(definition.referencing_attribute, definition)
        except TransportError as exc:
            logger.warning("Relationship names for %s unavailable: %s", child_entity, exc)

        out = []
        for lookup in matching:
            definition = by_attribute.get(lookup.logical_name) or RelationshipDefinition(
                schema_name=f"{child_entity}_{lookup.logical_name}",
                referenced_entity=parent_entity,
                referenced_attribute=None,
                referencing_entity=child_entity,
                referencing_attribute=lookup.logical_name,
            )
            out.append(
                self._build_relationship(
                    definition, RelationshipType.ONE_TO_MANY, SOURCE_LOOKUP_ATTRIBUTE
                )
            )
        return out

    async def _from_relationship_metadata(
        self, parent_entity: str, child_entity: str
    ) -> List[EntityRelationship]:
        out: List[EntityRelationship] = []
        try:
            for definition in await self._client.get_one_to_many_relationships(
                referenced_entity=parent_entity, referencing_entity=child_entity
            ):
                out.append(
                    self._build_relationship(
                        definition, RelationshipType.ONE_TO_MANY, SOURCE_RELATIONSHIP_METADATA
                    )
                )

            for definition in await self._client.get_one_to_many_relationships(
                referenced_entity=child_entity, referencing_entity=parent_entity
            ):
                out.append(
                    self._build_relationship(
                        definition, RelationshipType.MANY_TO_ONE, SOURCE_RELATIONSHIP_METADATA
                    )
                )
        except TransportError as exc:
            logger.warning(
                "Relationship metadata scan for %s/%s failed: %s",
                parent_entity,
                child_entity,
                exc,
            )
        return out

    async def get_related_entities(
        self,
        parent_entity: str,
        publisher_prefix: Optional[str] = None,
    ) -> List[EntityInfo]:
        """Browsable tables that reference ``parent_entity``, by display name.

        Only tables that have at least one view are returned. Any failure
        yields an empty list.
        """
        prefix = publisher_prefix or self.publisher_prefix
        try:
            definitions = await self._client.get_one_to_many_relationships(
                referenced_entity=parent_entity
            )
            names = {
                d.referencing_entity for d in definitions if d.referencing_entity != parent_entity
            }
            if prefix:
                names = {n for n in names if n.startswith(f"{prefix}_")}
            if not names:
                return []

            names &= set(await self._client.list_entities_with_views())
            if not names:
                return []

            display = {
                d.logical_name: d.display_name
                for d in await self._client.get_entity_definitions(names)
            }
        except DataverseError as exc:
            logger.warning("Could not list entities related to %s: %s", parent_entity, exc)
            return []

        infos = [EntityInfo(logical_name=n, display_name=display.get(n, n)) for n in names]
        return sorted(infos, key=lambda e: (e.display_name.lower(), e.logical_name))

"""
Relationship Discoverer - finds the lookup column linking two entities.

Combines several sources, most trusted first:
1. Lookup attribute metadata of the child (and of the parent, reversed)
2. Published relationship definitions (optional)
3. Naming conventions (fallback, low confidence)

Relationships can also be inferred from sample records or column lists.
Everything found is kept in the session MetadataCache.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import pandas as pd
import yaml

from relmap.discovery.lookup_fields import (
    LOOKUP_LOGICAL_NAME_ANNOTATION,
    build_filter,
    extract_field_name,
    is_lookup_column,
    is_lookup_type,
    is_lookup_value_column,
    lookup_field_name,
)
from relmap.discovery.strategies import (
    DirectMetadataStrategy,
    DiscoveryStrategy,
    default_strategies,
)
from relmap.metadata.cache import MetadataCache
from relmap.metadata.resolver import EntityMetadataResolver, normalize_entity_name
from relmap.models import (
    ColumnAnalysisResult,
    ColumnDescriptor,
    Confidence,
    DiscoveredRelationship,
    PotentialLookup,
    RelationshipMapping,
    RelationshipSource,
)

logger = logging.getLogger(__name__)

PRIMARY_KEY_WARNING = "This appears to be the primary key, not a lookup"

Records = Union[pd.DataFrame, Sequence[Dict[str, Any]]]
Columns = Iterable[Union[ColumnDescriptor, Dict[str, Any], str]]


class RelationshipDiscoverer:
    """
    Discovers parent/child relationships at runtime.

    Usage:
        discoverer = RelationshipDiscoverer(resolver, cache)
        rel = await discoverer.discover("account", "contact")
        if rel and not rel.needs_review:
            print(rel.lookup_column)  # _parentcustomerid_value
    """

    def __init__(
        self,
        resolver: EntityMetadataResolver,
        cache: MetadataCache,
        strategies: Optional[List[DiscoveryStrategy]] = None,
    ):
        """
        Initialize the discoverer.

        Args:
            resolver: Resolver used by the metadata strategies
            cache: Session cache shared with the resolver
            strategies: Strategy chain; defaults to direct, reverse, pattern
        """
        self.resolver = resolver
        self.cache = cache
        self.strategies = strategies if strategies is not None else default_strategies(resolver)
        self._direct = DirectMetadataStrategy(resolver)

    async def discover(self, parent_entity: str, child_entity: str) -> Optional[DiscoveredRelationship]:
        """
        Discover the relationship between two entities.

        Returns the cached result when the pair was seen before. Otherwise
        the strategies run in order and the first answer is cached under the
        requested pair, low-confidence guesses included.

        Returns:
            DiscoveredRelationship, or None for invalid names or when no
            strategy answered
        """
        parent, child = normalize_entity_name(parent_entity), normalize_entity_name(child_entity)
        if parent is None or child is None:
            logger.debug(f"Skipping discovery for invalid pair {parent_entity!r}->{child_entity!r}")
            return None
        parent_entity, child_entity = parent, child

        cached = self.cache.get_relationship(parent_entity, child_entity)
        if cached:
            logger.debug(f"Using cached relationship {parent_entity}->{child_entity}")
            return cached

        for strategy in self.strategies:
            result = await strategy.attempt(parent_entity, child_entity)
            if result is None:
                continue

            self.cache.put_relationship(result, parent_entity, child_entity)
            logger.info(
                f"Discovered {parent_entity}->{child_entity} via {strategy.name}: "
                f"{result.lookup_column} ({result.confidence.value} confidence)"
            )
            return result

        logger.warning(f"No relationship found between {parent_entity} and {child_entity}")
        return None

    async def discover_lookup_column(self, parent_entity: str, child_entity: str) -> Optional[str]:
        """Lookup column from child metadata alone, no fallbacks."""
        parent_entity = normalize_entity_name(parent_entity)
        child_entity = normalize_entity_name(child_entity)
        if parent_entity is None or child_entity is None:
            return None

        cached = self.cache.get_relationship(parent_entity, child_entity)
        if cached:
            return cached.lookup_column

        result = await self._direct.attempt(parent_entity, child_entity)
        if result is None:
            return None
        self.cache.put_relationship(result)
        return result.lookup_column

    async def build_relationship_filter(
        self,
        parent_entity: str,
        child_entity: str,
        parent_record_id: str,
    ) -> Optional[str]:
        """`<lookup column> eq <id>` for the pair, or None when nothing was found."""
        relationship = await self.discover(parent_entity, child_entity)
        if relationship is None or not parent_record_id:
            return None
        return build_filter(relationship.lookup_column, parent_record_id)

    async def infer_from_records(
        self,
        child_entity: str,
        records: Records,
    ) -> List[DiscoveredRelationship]:
        """
        Infer relationships from sample records of the child entity.

        Each `_<attr>_value` field other than the child's own key yields one
        relationship per target entity. Targets come from the record's
        lookup-logical-name annotation when present, else from metadata.

        Args:
            child_entity: Entity the records belong to
            records: List of record dicts or a pandas DataFrame

        Returns:
            Inferred relationships (high confidence, source record-analysis)
        """
        child_entity = normalize_entity_name(child_entity)
        if child_entity is None:
            return []

        if isinstance(records, pd.DataFrame):
            records = records.to_dict(orient="records")
        if not records:
            return []

        columns: Dict[str, None] = {}
        for record in records:
            for key in record:
                if is_lookup_value_column(key):
                    columns.setdefault(key)
        if not columns:
            return []

        primary_id = await self.resolver.primary_id_attribute(child_entity)
        relationships: List[DiscoveredRelationship] = []

        for column in columns:
            field_name = extract_field_name(column)
            if not field_name:
                continue
            if self._is_primary_key(field_name, primary_id):
                logger.debug(f"Skipping primary key column {column} on {child_entity}")
                continue

            targets = self._annotated_targets(records, column)
            if not targets:
                targets = await self.resolver.lookup_targets(child_entity, field_name)

            for target in targets:
                relationships.append(
                    DiscoveredRelationship(
                        parent_entity=target,
                        child_entity=child_entity,
                        lookup_column=lookup_field_name(field_name),
                        display_name=field_name,
                        confidence=Confidence.HIGH,
                        source=RelationshipSource.RECORD_ANALYSIS,
                    )
                )

        self._remember(relationships)
        logger.info(f"Inferred {len(relationships)} relationships from {len(records)} {child_entity} records")
        return relationships

    async def infer_from_columns(self, child_entity: str, columns: Columns) -> ColumnAnalysisResult:
        """
        Infer relationships from a column list.

        Columns qualify when named like lookup fields or typed Lookup,
        Customer or Owner. Primary key columns are reported with a warning
        and skipped.
        """
        result = ColumnAnalysisResult()
        child_entity = normalize_entity_name(child_entity)
        if child_entity is None:
            return result

        descriptors = [self._to_descriptor(c) for c in columns]
        candidates = [
            d for d in descriptors
            if d.name and "@" not in d.name
            and (is_lookup_column(d.name) or is_lookup_type(d.data_type))
        ]
        if not candidates:
            return result

        primary_id = await self.resolver.primary_id_attribute(child_entity)

        for descriptor in candidates:
            field_name = (
                extract_field_name(descriptor.name)
                if is_lookup_column(descriptor.name)
                else descriptor.name
            )
            if not field_name:
                continue
            is_primary_key = self._is_primary_key(field_name, primary_id)
            result.potential_lookups.append(
                PotentialLookup(
                    column_name=descriptor.name,
                    field_name=field_name,
                    is_primary_key=is_primary_key,
                    warning=PRIMARY_KEY_WARNING if is_primary_key else None,
                )
            )
            if is_primary_key:
                continue

            lookup_column = lookup_field_name(field_name)
            for target in await self.resolver.lookup_targets(child_entity, field_name):
                result.discovered_relationships.append(
                    DiscoveredRelationship(
                        parent_entity=target,
                        child_entity=child_entity,
                        lookup_column=lookup_column,
                        display_name=field_name,
                        confidence=Confidence.HIGH,
                        source=RelationshipSource.COLUMN_ANALYSIS,
                    )
                )

        self._remember(result.discovered_relationships)
        return result

    def discovered_relationships(self, entity_name: Optional[str] = None) -> List[DiscoveredRelationship]:
        """Cached relationships, optionally those involving one entity."""
        relationships = self.cache.relationships()
        if entity_name:
            relationships = [
                r for r in relationships
                if entity_name in (r.parent_entity, r.child_entity)
            ]
        return relationships

    def export_discovered_mappings(self, min_confidence: Confidence = Confidence.MEDIUM) -> str:
        """
        Export cached relationships as a YAML mappings document.

        Relationships below `min_confidence` are left out. The output can be
        loaded back with RelationshipMapper.load_mappings.
        """
        min_confidence = Confidence(min_confidence)
        mappings = [
            RelationshipMapping.from_relationship(r).to_dict()
            for r in self.discovered_relationships()
            if r.confidence.at_least(min_confidence)
        ]

        header = (
            "# Relationship mappings discovered at runtime\n"
            f"# Generated {datetime.now(timezone.utc).isoformat()}"
            f" (minimum confidence: {min_confidence.value})\n"
        )
        logger.info(f"Exporting {len(mappings)} discovered mappings")
        return header + yaml.safe_dump({"mappings": mappings}, sort_keys=False)

    def clear_cache(self) -> None:
        self.cache.clear()

    def _remember(self, relationships: List[DiscoveredRelationship]) -> None:
        # Inferred results never replace an earlier answer for the same pair
        for relationship in relationships:
            self.cache.remember_relationship(relationship)

    @staticmethod
    def _is_primary_key(field_name: str, primary_id: Optional[str]) -> bool:
        return bool(primary_id) and field_name.lower() == primary_id.lower()

    @staticmethod
    def _annotated_targets(records: Sequence[Dict[str, Any]], column: str) -> List[str]:
        targets: Dict[str, None] = {}
        for record in records:
            value = record.get(f"{column}{LOOKUP_LOGICAL_NAME_ANNOTATION}")
            if isinstance(value, str) and value:
                targets.setdefault(value)
        return list(targets)

    @staticmethod
    def _to_descriptor(column: Union[ColumnDescriptor, Dict[str, Any], str]) -> ColumnDescriptor:
        if isinstance(column, ColumnDescriptor):
            return column
        if isinstance(column, dict):
            return ColumnDescriptor.from_dict(column)
        return ColumnDescriptor(name=str(column))

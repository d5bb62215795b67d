"""
Session-lifetime store for entity metadata and discovered relationships.

One instance is created per session and handed to the resolver and the
discoverer. Entries never expire; `clear()` is the only way to drop them,
e.g. after switching to another environment.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from relmap.models import CacheEntry, DiscoveredRelationship, EntityMetadata

logger = logging.getLogger(__name__)


def relationship_key(parent_entity: str, child_entity: str) -> str:
    return f"{parent_entity}->{child_entity}"


@dataclass
class CacheStats:
    entity_count: int
    relationship_count: int
    entities: List[str]
    relationships: List[str]


class MetadataCache:
    """Plain key/value stores for metadata and relationships."""

    def __init__(self):
        self._entities: Dict[str, CacheEntry[EntityMetadata]] = {}
        self._relationships: Dict[str, CacheEntry[DiscoveredRelationship]] = {}

    # Entity metadata

    def get_entity(self, entity_name: str) -> Optional[EntityMetadata]:
        entry = self._entities.get(entity_name)
        return entry.value if entry else None

    def has_entity(self, entity_name: str) -> bool:
        return entity_name in self._entities

    def put_entity(self, metadata: EntityMetadata) -> None:
        self._entities[metadata.logical_name] = CacheEntry(metadata)

    def entity_entry(self, entity_name: str) -> Optional[CacheEntry[EntityMetadata]]:
        return self._entities.get(entity_name)

    # Relationships keyed by parent->child

    def get_relationship(self, parent_entity: str, child_entity: str) -> Optional[DiscoveredRelationship]:
        entry = self._relationships.get(relationship_key(parent_entity, child_entity))
        return entry.value if entry else None

    def put_relationship(
        self,
        relationship: DiscoveredRelationship,
        parent_entity: Optional[str] = None,
        child_entity: Optional[str] = None,
    ) -> None:
        """
        Store a relationship.

        The key defaults to the relationship's own pair; pass the requested
        pair when a strategy answered with the roles swapped.
        """
        key = relationship_key(
            parent_entity or relationship.parent_entity,
            child_entity or relationship.child_entity,
        )
        self._relationships[key] = CacheEntry(relationship)

    def remember_relationship(self, relationship: DiscoveredRelationship) -> bool:
        """Store a relationship only if its pair has no entry yet."""
        if relationship.key in self._relationships:
            return False
        self.put_relationship(relationship)
        return True

    def relationships(self) -> List[DiscoveredRelationship]:
        """All cached relationships, deduplicated by pair and lookup column."""
        unique: Dict[str, DiscoveredRelationship] = {}
        for entry in self._relationships.values():
            rel = entry.value
            key = f"{rel.parent_entity}->{rel.child_entity}->{rel.lookup_column}"
            unique.setdefault(key, rel)
        return list(unique.values())

    # Housekeeping

    def clear(self) -> None:
        self._entities.clear()
        self._relationships.clear()
        logger.info("Discovery cache cleared")

    def clear_relationships(self) -> None:
        self._relationships.clear()

    def stats(self) -> CacheStats:
        return CacheStats(
            entity_count=len(self._entities),
            relationship_count=len(self._relationships),
            entities=sorted(self._entities),
            relationships=sorted(self._relationships),
        )

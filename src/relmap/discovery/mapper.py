"""
Named relationship mappings.

A flat table of relationship name -> lookup column. Entries come from
discovery (promoted at runtime) or from a mappings YAML file, typically one
written by `RelationshipDiscoverer.export_discovered_mappings`.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Union

import yaml

from relmap.discovery.lookup_fields import build_filter
from relmap.models import RelationshipMapping

if TYPE_CHECKING:
    from relmap.discovery.discoverer import RelationshipDiscoverer

logger = logging.getLogger(__name__)


class RelationshipMapper:
    """Lookup table of promoted relationships keyed by relationship name."""

    def __init__(self, mappings: Optional[List[RelationshipMapping]] = None):
        self._mappings: Dict[str, RelationshipMapping] = {}
        for mapping in mappings or []:
            self.add_mapping(mapping)

    def __len__(self) -> int:
        return len(self._mappings)

    @property
    def mappings(self) -> List[RelationshipMapping]:
        return list(self._mappings.values())

    def add_mapping(self, mapping: RelationshipMapping) -> bool:
        """Add a mapping. An existing name is kept and the new one ignored."""
        if mapping.relationship_name in self._mappings:
            logger.warning(f"Relationship mapping for '{mapping.relationship_name}' already exists")
            return False
        self._mappings[mapping.relationship_name] = mapping
        logger.debug(f"Added relationship mapping: {mapping.relationship_name} -> {mapping.lookup_column}")
        return True

    def get(self, relationship_name: str) -> Optional[RelationshipMapping]:
        return self._mappings.get(relationship_name)

    def is_known(self, relationship_name: str) -> bool:
        return relationship_name in self._mappings

    def map_to_lookup_column(self, relationship_name: str) -> Optional[str]:
        mapping = self._mappings.get(relationship_name)
        return mapping.lookup_column if mapping else None

    async def map_with_discovery(
        self,
        relationship_name: str,
        parent_entity: Optional[str],
        child_entity: Optional[str],
        discoverer: Optional[RelationshipDiscoverer],
    ) -> Optional[str]:
        """
        Resolve a relationship name to a lookup column, discovering it if needed.

        A discovered relationship is promoted to a mapping under
        `relationship_name` so later calls need neither network nor cache.
        """
        known = self.map_to_lookup_column(relationship_name)
        if known:
            return known

        if parent_entity and child_entity and discoverer is not None:
            relationship = await discoverer.discover(parent_entity, child_entity)
            if relationship is not None:
                mapping = RelationshipMapping.from_relationship(relationship, relationship_name)
                mapping.description = f"{relationship.display_name} (auto-discovered)"
                self.add_mapping(mapping)
                logger.info(f"Runtime discovery for {relationship_name}: {relationship.lookup_column}")
                return relationship.lookup_column

        logger.warning(f"Could not find lookup column for relationship: {relationship_name}")
        return None

    def mappings_for_parent(self, parent_entity: str) -> List[RelationshipMapping]:
        return [m for m in self._mappings.values() if m.parent_entity == parent_entity]

    def mappings_for_child(self, child_entity: str) -> List[RelationshipMapping]:
        return [m for m in self._mappings.values() if m.child_entity == child_entity]

    def suggest_mappings(self, parent_entity: str, child_entity: str) -> List[RelationshipMapping]:
        """Mappings touching either entity in either role."""
        entities = {parent_entity, child_entity}
        return [
            m for m in self._mappings.values()
            if m.parent_entity in entities or m.child_entity in entities
        ]

    def build_relationship_filter(self, relationship_name: str, parent_record_id: str) -> Optional[str]:
        lookup_column = self.map_to_lookup_column(relationship_name)
        if not lookup_column or not parent_record_id:
            return None
        return build_filter(lookup_column, parent_record_id)

    def load_mappings(self, source: Union[str, Path]) -> int:
        """
        Load mappings from a YAML file path or YAML text.

        Accepts a document with a top-level `mappings` list or a bare list.

        Returns:
            Number of mappings added
        """
        if isinstance(source, Path) or (isinstance(source, str) and "\n" not in source and Path(source).exists()):
            with open(source, "r") as f:
                data = yaml.safe_load(f)
        else:
            data = yaml.safe_load(source)

        if isinstance(data, dict):
            data = data.get("mappings") or []
        if not isinstance(data, list):
            raise ValueError("Mappings document must contain a list of mappings")

        added = sum(1 for item in data if self.add_mapping(RelationshipMapping.from_dict(item)))
        logger.info(f"Loaded {added} relationship mappings")
        return added

    def clear(self) -> None:
        self._mappings.clear()

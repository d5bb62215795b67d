"""
Discovery strategies.

Each strategy answers one question: given a parent and a child entity, which
lookup column on the child points at the parent? Strategies are tried in
order by the RelationshipDiscoverer and the first answer wins.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, TypeVar

from relmap.discovery.lookup_fields import lookup_field_name
from relmap.metadata.resolver import EntityMetadataResolver
from relmap.models import (
    Confidence,
    DiscoveredRelationship,
    RelationshipSource,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

PREFERRED_NAME_HINTS = ("parent", "primary")


def pick_preferred(candidates: Sequence[T], names: Sequence[str], parent_entity: str) -> T:
    """
    Choose among several matching lookups.

    Prefers a name mentioning the parent entity, "parent" or "primary";
    falls back to the first candidate.
    """
    parent_lower = parent_entity.lower()
    for candidate, name in zip(candidates, names):
        name_lower = name.lower()
        if parent_lower in name_lower or any(hint in name_lower for hint in PREFERRED_NAME_HINTS):
            return candidate
    return candidates[0]


class DiscoveryStrategy:
    """Base class for strategies. Subclasses implement `attempt`."""

    name = "base"

    async def attempt(self, parent_entity: str, child_entity: str) -> Optional[DiscoveredRelationship]:
        raise NotImplementedError


class DirectMetadataStrategy(DiscoveryStrategy):
    """Find lookups on the child whose targets include the parent."""

    name = "direct-metadata"

    def __init__(self, resolver: EntityMetadataResolver):
        self.resolver = resolver

    async def attempt(self, parent_entity: str, child_entity: str) -> Optional[DiscoveredRelationship]:
        metadata = await self.resolver.resolve(child_entity)
        if metadata is None:
            return None

        matches = metadata.lookups_targeting(parent_entity)
        if not matches:
            logger.debug(f"No lookup on {child_entity} targets {parent_entity}")
            return None

        if len(matches) == 1:
            attr, confidence = matches[0], Confidence.HIGH
        else:
            attr = pick_preferred(matches, [m.logical_name for m in matches], parent_entity)
            confidence = Confidence.MEDIUM
            logger.debug(
                f"{len(matches)} lookups on {child_entity} target {parent_entity}, "
                f"picked {attr.logical_name}"
            )

        return DiscoveredRelationship(
            parent_entity=parent_entity,
            child_entity=child_entity,
            lookup_column=attr.lookup_field_name,
            display_name=attr.display_name,
            confidence=confidence,
            source=RelationshipSource.METADATA,
        )


class ReverseLookupStrategy(DiscoveryStrategy):
    """
    Same search with the roles swapped.

    The answer describes the swapped pair: its parent is the requested child.
    """

    name = "reverse-lookup"

    def __init__(self, resolver: EntityMetadataResolver):
        self._direct = DirectMetadataStrategy(resolver)

    async def attempt(self, parent_entity: str, child_entity: str) -> Optional[DiscoveredRelationship]:
        return await self._direct.attempt(child_entity, parent_entity)


class RelationshipDefinitionStrategy(DiscoveryStrategy):
    """Read the published 1:N and N:1 relationship definitions for the pair."""

    name = "relationship-definition"

    def __init__(self, resolver: EntityMetadataResolver):
        self.resolver = resolver

    async def attempt(self, parent_entity: str, child_entity: str) -> Optional[DiscoveredRelationship]:
        definitions = await self.resolver.relationship_definitions(parent_entity, child_entity)
        if not definitions:
            return None

        if len(definitions) == 1:
            definition, confidence = definitions[0], Confidence.HIGH
        else:
            definition = pick_preferred(
                definitions, [d.referencing_attribute for d in definitions], parent_entity
            )
            confidence = Confidence.MEDIUM

        return DiscoveredRelationship(
            parent_entity=parent_entity,
            child_entity=child_entity,
            lookup_column=definition.lookup_field_name,
            display_name=definition.schema_name or definition.referencing_attribute,
            confidence=confidence,
            source=RelationshipSource.RELATIONSHIP_DEFINITION,
        )


class PatternStrategy(DiscoveryStrategy):
    """
    Naming-convention fallback. Always answers, with low confidence.

    The guess is not verified against metadata; callers should surface it
    for review.
    """

    name = "pattern"

    @staticmethod
    def candidate_lookup_columns(parent_entity: str) -> List[str]:
        """Candidate lookup columns for a parent, most likely first."""
        candidates = [
            lookup_field_name(f"{parent_entity}id"),
            lookup_field_name(f"parent{parent_entity}id"),
            lookup_field_name(f"primary{parent_entity}id"),
            lookup_field_name(parent_entity),
            lookup_field_name(f"{parent_entity.lower()}id"),
        ]
        return list(dict.fromkeys(candidates))

    async def attempt(self, parent_entity: str, child_entity: str) -> Optional[DiscoveredRelationship]:
        lookup_column = self.candidate_lookup_columns(parent_entity)[0]
        logger.warning(
            f"Guessing {lookup_column} for {parent_entity}->{child_entity} from naming conventions"
        )
        return DiscoveredRelationship(
            parent_entity=parent_entity,
            child_entity=child_entity,
            lookup_column=lookup_column,
            display_name=f"{parent_entity} (pattern guess)",
            confidence=Confidence.LOW,
            source=RelationshipSource.PATTERN,
        )


def default_strategies(
    resolver: EntityMetadataResolver,
    use_relationship_definitions: bool = False,
) -> List[DiscoveryStrategy]:
    """The standard chain: direct, reverse, optional definitions, pattern."""
    strategies: List[DiscoveryStrategy] = [
        DirectMetadataStrategy(resolver),
        ReverseLookupStrategy(resolver),
    ]
    if use_relationship_definitions:
        strategies.append(RelationshipDefinitionStrategy(resolver))
    strategies.append(PatternStrategy())
    return strategies

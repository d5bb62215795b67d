"""
Runtime relationship discovery.

Finds which lookup column links two entities without a static schema:
- Lookup attribute metadata (direct and reversed)
- Published relationship definitions (optional)
- Naming-convention fallback
- Inference from sample records and column lists

Usage:
    from relmap.discovery import RelationshipDiscoverer

    rel = await discoverer.discover("account", "contact")
"""

from relmap.discovery.discoverer import RelationshipDiscoverer
from relmap.discovery.mapper import RelationshipMapper
from relmap.discovery.strategies import (
    DirectMetadataStrategy,
    DiscoveryStrategy,
    PatternStrategy,
    RelationshipDefinitionStrategy,
    ReverseLookupStrategy,
    default_strategies,
)

__all__ = [
    "RelationshipDiscoverer",
    "RelationshipMapper",
    "DiscoveryStrategy",
    "DirectMetadataStrategy",
    "ReverseLookupStrategy",
    "RelationshipDefinitionStrategy",
    "PatternStrategy",
    "default_strategies",
]

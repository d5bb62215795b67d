"""
Metadata introspection for the Web API.

Provides the HTTP client, the session cache and the resolver that turns an
entity name into its lookup attributes and their targets.
"""

from relmap.metadata.cache import MetadataCache
from relmap.metadata.client import WebApiClient
from relmap.metadata.resolver import (
    EntityMetadataResolver,
    is_valid_entity_name,
    normalize_entity_name,
)

__all__ = [
    "MetadataCache",
    "WebApiClient",
    "EntityMetadataResolver",
    "is_valid_entity_name",
    "normalize_entity_name",
]

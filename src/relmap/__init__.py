"""
relmap - Runtime Relationship Discovery for Web API Entities

Discovers, from live entity metadata, which lookup column links a parent
entity to a child entity, and synthesizes the filtered list queries that
use it. No static schema file is needed.

Features:
- Multi-strategy discovery (metadata, reverse lookup, relationship
  definitions, naming conventions) with confidence levels
- Inference from sample records and column lists
- Rate-limited, cached metadata resolution
- Actionable analysis of failed Web API responses
"""

__version__ = "0.1.0"

from relmap.models import (
    Confidence,
    DiscoveredRelationship,
    EntityMetadata,
    ErrorAnalysis,
    ListQuery,
    LookupAttribute,
    RelationshipMapping,
    RelationshipSource,
)
from relmap.config import DiscoveryConfig
from relmap.exceptions import ConfigError, QueueClearedError, RelmapError
from relmap.utils.rate_limiter import RateLimiter
from relmap.metadata import EntityMetadataResolver, MetadataCache, WebApiClient
from relmap.discovery import RelationshipDiscoverer, RelationshipMapper
from relmap.query import QueryExecutor, QuerySynthesizer
from relmap.diagnostics import ErrorAnalyzer
from relmap.session import DiscoverySession

__all__ = [
    # Core models
    "Confidence",
    "DiscoveredRelationship",
    "EntityMetadata",
    "ErrorAnalysis",
    "ListQuery",
    "LookupAttribute",
    "RelationshipMapping",
    "RelationshipSource",
    # Configuration
    "DiscoveryConfig",
    "ConfigError",
    "QueueClearedError",
    "RelmapError",
    # Services
    "RateLimiter",
    "MetadataCache",
    "WebApiClient",
    "EntityMetadataResolver",
    "RelationshipDiscoverer",
    "RelationshipMapper",
    "QuerySynthesizer",
    "QueryExecutor",
    "ErrorAnalyzer",
    "DiscoverySession",
]

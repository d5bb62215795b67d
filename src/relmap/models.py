"""
Core data models for the relmap package.

Defines the fundamental data structures used throughout the system including
entity metadata, discovered relationships, query descriptors and error
analysis results.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Set, Tuple, TypeVar

T = TypeVar("T")

LOOKUP_COLUMN_RE = re.compile(r"^_.+_value$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Confidence(str, Enum):
    """How far a discovered relationship can be trusted without review."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"low": 0, "medium": 1, "high": 2}[self.value]

    def at_least(self, other: Confidence) -> bool:
        return self.rank >= other.rank


class RelationshipSource(str, Enum):
    """Where a relationship came from. Kept for debugging only."""
    METADATA = "metadata"
    RELATIONSHIP_DEFINITION = "relationship-definition"
    PATTERN = "pattern"
    RECORD_ANALYSIS = "record-analysis"
    COLUMN_ANALYSIS = "column-analysis"
    MANUAL = "manual"


class FailureKind(str, Enum):
    """Why a resolution produced no value."""
    INVALID_INPUT = "invalid-input"
    NOT_FOUND = "not-found"
    HTTP_ERROR = "http-error"
    TRANSPORT = "transport"
    UNPARSEABLE = "unparseable"


class ErrorKind(str, Enum):
    """Classification of a failed Web API response."""
    FIELD = "field"
    ENTITY = "entity"
    RELATIONSHIP = "relationship"
    PERMISSION = "permission"
    NETWORK = "network"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class LookupAttribute:
    """A lookup attribute and the entities it may point at."""
    logical_name: str
    display_name: str
    targets: Tuple[str, ...] = ()  # empty when metadata is incomplete

    @property
    def lookup_field_name(self) -> str:
        """The `_<attribute>_value` column used in OData filters."""
        return f"_{self.logical_name}_value"

    @property
    def is_polymorphic(self) -> bool:
        return len(self.targets) > 1

    def targets_entity(self, entity_name: str) -> bool:
        return entity_name in self.targets

    def to_dict(self) -> Dict[str, Any]:
        return {
            "logical_name": self.logical_name,
            "display_name": self.display_name,
            "targets": list(self.targets),
            "lookup_field_name": self.lookup_field_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> LookupAttribute:
        return cls(
            logical_name=data["logical_name"],
            display_name=data.get("display_name") or data["logical_name"],
            targets=tuple(data.get("targets") or ()),
        )


@dataclass(frozen=True)
class EntityMetadata:
    """Normalized metadata for one entity. Immutable once fetched."""
    logical_name: str
    display_name: str
    entity_set_name: str
    lookup_attributes: Tuple[LookupAttribute, ...] = ()
    primary_id_attribute: Optional[str] = None
    primary_name_attribute: Optional[str] = None

    def get_lookup(self, logical_name: str) -> Optional[LookupAttribute]:
        """Get a lookup attribute by logical name (case-insensitive)."""
        name_lower = logical_name.lower()
        for attr in self.lookup_attributes:
            if attr.logical_name.lower() == name_lower:
                return attr
        return None

    def lookups_targeting(self, entity_name: str) -> List[LookupAttribute]:
        """Lookup attributes that may reference the given entity."""
        return [a for a in self.lookup_attributes if a.targets_entity(entity_name)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "logical_name": self.logical_name,
            "display_name": self.display_name,
            "entity_set_name": self.entity_set_name,
            "lookup_attributes": [a.to_dict() for a in self.lookup_attributes],
            "primary_id_attribute": self.primary_id_attribute,
            "primary_name_attribute": self.primary_name_attribute,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> EntityMetadata:
        return cls(
            logical_name=data["logical_name"],
            display_name=data.get("display_name") or data["logical_name"],
            entity_set_name=data.get("entity_set_name") or f"{data['logical_name']}s",
            lookup_attributes=tuple(
                LookupAttribute.from_dict(a) for a in data.get("lookup_attributes", [])
            ),
            primary_id_attribute=data.get("primary_id_attribute"),
            primary_name_attribute=data.get("primary_name_attribute"),
        )


@dataclass(frozen=True)
class RelationshipDefinition:
    """A 1:N or N:1 relationship descriptor as published by the metadata API."""
    schema_name: str
    referencing_entity: str
    referencing_attribute: str
    referenced_entity: str
    referenced_attribute: Optional[str] = None
    relationship_type: str = "OneToMany"

    @property
    def lookup_field_name(self) -> str:
        return f"_{self.referencing_attribute}_value"

    @classmethod
    def from_api(cls, data: Dict[str, Any], relationship_type: str) -> RelationshipDefinition:
        return cls(
            schema_name=data.get("SchemaName", ""),
            referencing_entity=data["ReferencingEntity"],
            referencing_attribute=data["ReferencingAttribute"],
            referenced_entity=data["ReferencedEntity"],
            referenced_attribute=data.get("ReferencedAttribute"),
            relationship_type=relationship_type,
        )


@dataclass
class DiscoveredRelationship:
    """
    A relationship found at runtime between a parent and a child entity.

    `lookup_column` always has the `_<attribute>_value` shape, so filters can
    be built from it without further checks.
    """
    parent_entity: str
    child_entity: str
    lookup_column: str
    display_name: str
    confidence: Confidence
    source: RelationshipSource
    discovered_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        if not LOOKUP_COLUMN_RE.match(self.lookup_column or ""):
            raise ValueError(
                f"Lookup column must look like '_<attribute>_value', got {self.lookup_column!r}"
            )
        self.confidence = Confidence(self.confidence)
        self.source = RelationshipSource(self.source)

    @property
    def key(self) -> str:
        return f"{self.parent_entity}->{self.child_entity}"

    @property
    def needs_review(self) -> bool:
        """Low-confidence results should be shown to a human, not trusted."""
        return self.confidence == Confidence.LOW

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parent_entity": self.parent_entity,
            "child_entity": self.child_entity,
            "lookup_column": self.lookup_column,
            "display_name": self.display_name,
            "confidence": self.confidence.value,
            "source": self.source.value,
            "discovered_at": self.discovered_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> DiscoveredRelationship:
        discovered_at = data.get("discovered_at")
        return cls(
            parent_entity=data["parent_entity"],
            child_entity=data["child_entity"],
            lookup_column=data["lookup_column"],
            display_name=data.get("display_name", ""),
            confidence=Confidence(data.get("confidence", "low")),
            source=RelationshipSource(data.get("source", "manual")),
            discovered_at=datetime.fromisoformat(discovered_at) if discovered_at else _utcnow(),
        )


@dataclass
class RelationshipMapping:
    """A named, promoted relationship reused by relationship name."""
    relationship_name: str
    lookup_column: str
    parent_entity: str
    child_entity: str
    description: str = ""
    is_discovered: bool = False
    confidence: Optional[Confidence] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "relationship_name": self.relationship_name,
            "lookup_column": self.lookup_column,
            "parent_entity": self.parent_entity,
            "child_entity": self.child_entity,
            "description": self.description,
            "is_discovered": self.is_discovered,
            "confidence": self.confidence.value if self.confidence else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> RelationshipMapping:
        confidence = data.get("confidence")
        return cls(
            relationship_name=data["relationship_name"],
            lookup_column=data["lookup_column"],
            parent_entity=data["parent_entity"],
            child_entity=data["child_entity"],
            description=data.get("description", ""),
            is_discovered=data.get("is_discovered", False),
            confidence=Confidence(confidence) if confidence else None,
        )

    @classmethod
    def from_relationship(
        cls,
        relationship: DiscoveredRelationship,
        relationship_name: Optional[str] = None,
    ) -> RelationshipMapping:
        """Promote a discovered relationship to a named mapping."""
        return cls(
            relationship_name=relationship_name
            or f"{relationship.parent_entity}_{relationship.child_entity}",
            lookup_column=relationship.lookup_column,
            parent_entity=relationship.parent_entity,
            child_entity=relationship.child_entity,
            description=(
                f"{relationship.display_name} "
                f"(discovered {relationship.discovered_at.isoformat()})"
            ),
            is_discovered=relationship.source != RelationshipSource.MANUAL,
            confidence=relationship.confidence,
        )


@dataclass
class CacheEntry(Generic[T]):
    """A cached value with the time it was stored."""
    value: T
    cached_at: datetime = field(default_factory=_utcnow)


@dataclass
class Resolution(Generic[T]):
    """
    Outcome of a metadata resolution.

    Either `value` is set, or `failure` says why not. Absence and failure are
    kept apart so callers don't have to guess from a bare None.
    """
    value: Optional[T] = None
    failure: Optional[FailureKind] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.value is not None

    @classmethod
    def success(cls, value: T) -> Resolution[T]:
        return cls(value=value)

    @classmethod
    def failed(cls, failure: FailureKind, detail: Optional[str] = None) -> Resolution[T]:
        return cls(failure=failure, detail=detail)


@dataclass
class ColumnDescriptor:
    """Schema-shaped column info (name plus declared type)."""
    name: str
    data_type: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ColumnDescriptor:
        return cls(
            name=data.get("name") or data.get("Name") or "",
            data_type=data.get("data_type") or data.get("dataType") or data.get("AttributeType"),
        )


@dataclass
class PotentialLookup:
    """A column that looks like a lookup field."""
    column_name: str
    field_name: str
    is_primary_key: bool = False
    warning: Optional[str] = None


@dataclass
class ColumnAnalysisResult:
    """Result of scanning columns for lookup relationships."""
    potential_lookups: List[PotentialLookup] = field(default_factory=list)
    discovered_relationships: List[DiscoveredRelationship] = field(default_factory=list)

    @property
    def skipped_primary_keys(self) -> List[PotentialLookup]:
        return [p for p in self.potential_lookups if p.is_primary_key]


@dataclass
class ListQuery:
    """A list query against an entity collection."""
    entity_logical_name: str
    collection_name: str
    odata_query: str
    select: List[str] = field(default_factory=lambda: ["*"])
    filter: Optional[str] = None
    page_size: Optional[int] = None
    view_id: Optional[str] = None
    relationship_name: Optional[str] = None
    lookup_column: Optional[str] = None

    @property
    def is_related_query(self) -> bool:
        return bool(self.relationship_name or self.lookup_column)

    @property
    def options(self) -> str:
        """The part of the query after the collection name."""
        return self.odata_query.split("?", 1)[1] if "?" in self.odata_query else ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_logical_name": self.entity_logical_name,
            "collection_name": self.collection_name,
            "odata_query": self.odata_query,
            "select": self.select,
            "filter": self.filter,
            "page_size": self.page_size,
            "view_id": self.view_id,
            "relationship_name": self.relationship_name,
            "lookup_column": self.lookup_column,
            "is_related_query": self.is_related_query,
        }


@dataclass
class QueryValidation:
    is_valid: bool
    errors: List[str] = field(default_factory=list)


@dataclass
class ErrorAnalysis:
    """Classification of one failed response plus what to do about it."""
    status: Optional[int] = None
    status_text: str = ""
    error_code: Optional[str] = None
    message: Optional[str] = None
    kinds: Set[ErrorKind] = field(default_factory=set)
    field_name: Optional[str] = None
    segment: Optional[str] = None
    correlation_id: Optional[str] = None
    request_id: Optional[str] = None
    rate_limit_remaining: Optional[str] = None
    rate_limit_window: Optional[str] = None
    raw_body: Optional[str] = None
    suggestions: List[str] = field(default_factory=list)

    @property
    def is_field_error(self) -> bool:
        return ErrorKind.FIELD in self.kinds

    @property
    def is_entity_error(self) -> bool:
        return ErrorKind.ENTITY in self.kinds

    @property
    def is_relationship_error(self) -> bool:
        return ErrorKind.RELATIONSHIP in self.kinds

    @property
    def is_permission_error(self) -> bool:
        return ErrorKind.PERMISSION in self.kinds

    @property
    def is_network_error(self) -> bool:
        return ErrorKind.NETWORK in self.kinds

    @property
    def is_unclassified(self) -> bool:
        return ErrorKind.UNCLASSIFIED in self.kinds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "status_text": self.status_text,
            "error_code": self.error_code,
            "message": self.message,
            "kinds": sorted(k.value for k in self.kinds),
            "field_name": self.field_name,
            "segment": self.segment,
            "correlation_id": self.correlation_id,
            "request_id": self.request_id,
            "suggestions": list(self.suggestions),
        }


@dataclass
class QueryResult:
    """Outcome of executing a list query."""
    entity_logical_name: str
    entities: List[Dict[str, Any]] = field(default_factory=list)
    success: bool = False
    total_count: int = 0
    next_link: Optional[str] = None
    error: Optional[str] = None
    error_analysis: Optional[ErrorAnalysis] = None

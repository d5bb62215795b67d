"""
Entity metadata resolver.

Turns an entity logical name into EntityMetadata, resolving which entities
each lookup attribute may target. Every outbound call goes through the
metadata rate limiter and every success lands in the shared MetadataCache.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import httpx

from relmap.metadata.cache import MetadataCache
from relmap.metadata.client import WebApiClient, localized_label
from relmap.models import (
    EntityMetadata,
    FailureKind,
    LookupAttribute,
    RelationshipDefinition,
    Resolution,
)
from relmap.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

PLACEHOLDER_ENTITY_NAMES = {"unknown"}


def is_valid_entity_name(entity_name: Optional[str]) -> bool:
    """False for None, blank and placeholder names left by uninitialized callers."""
    if not entity_name or not isinstance(entity_name, str):
        return False
    stripped = entity_name.strip()
    return bool(stripped) and stripped.lower() not in PLACEHOLDER_ENTITY_NAMES


def normalize_entity_name(entity_name: Optional[str]) -> Optional[str]:
    """Stripped name, or None when it is not a usable entity name."""
    if not is_valid_entity_name(entity_name):
        return None
    return entity_name.strip()


class EntityMetadataResolver:
    """
    Resolves entity metadata from the Web API.

    Two fetch modes:
    1. Per-attribute (default): one call for the entity definition, one for
       its lookup attributes, then one targets call per lookup attribute
    2. Bulk (`bulk_lookups=True`): definition plus a single call returning
       every lookup attribute with its targets
    """

    def __init__(
        self,
        client: WebApiClient,
        cache: MetadataCache,
        rate_limiter: RateLimiter,
        bulk_lookups: bool = False,
    ):
        self.client = client
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.bulk_lookups = bulk_lookups

    async def _call(self, func: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        return await self.rate_limiter.execute(functools.partial(func, *args))

    async def resolve(self, entity_name: str) -> Optional[EntityMetadata]:
        """
        Resolve metadata for one entity.

        Returns:
            EntityMetadata, or None when the name is invalid or resolution failed
        """
        return (await self.fetch(entity_name)).value

    async def fetch(self, entity_name: str) -> Resolution[EntityMetadata]:
        """Resolve metadata for one entity, saying why when nothing comes back."""
        name = normalize_entity_name(entity_name)
        if name is None:
            return Resolution.failed(FailureKind.INVALID_INPUT, f"Invalid entity name: {entity_name!r}")
        entity_name = name

        cached = self.cache.get_entity(entity_name)
        if cached:
            logger.debug(f"Using cached metadata for {entity_name}")
            return Resolution.success(cached)

        try:
            definition = await self._call(self.client.get_entity_definition, entity_name)
            if self.bulk_lookups:
                lookups = await self._fetch_lookups_bulk(entity_name)
            else:
                lookups = await self._fetch_lookups(entity_name)
            metadata = self._build_metadata(entity_name, definition, lookups)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            kind = FailureKind.NOT_FOUND if status == 404 else FailureKind.HTTP_ERROR
            logger.debug(f"Metadata request for {entity_name} failed with {status}")
            return Resolution.failed(kind, f"HTTP {status} for {entity_name}")
        except httpx.TransportError as e:
            logger.debug(f"Metadata request for {entity_name} failed: {e}")
            return Resolution.failed(FailureKind.TRANSPORT, str(e))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.debug(f"Unparseable metadata for {entity_name}: {e}")
            return Resolution.failed(FailureKind.UNPARSEABLE, str(e))

        self.cache.put_entity(metadata)
        logger.info(
            f"Discovered {len(metadata.lookup_attributes)} lookup attributes for {entity_name}"
        )
        return Resolution.success(metadata)

    async def resolve_many(self, entity_names: Iterable[str]) -> Dict[str, EntityMetadata]:
        """
        Resolve several entities, fetching only the ones not cached yet.

        Entities that fail to resolve are simply absent from the result.
        """
        names: List[str] = []
        for name in entity_names:
            name = normalize_entity_name(name)
            if name is not None and name not in names:
                names.append(name)

        to_fetch = [n for n in names if not self.cache.has_entity(n)]
        if to_fetch:
            logger.info(f"Fetching metadata for {len(to_fetch)} of {len(names)} entities")
            await asyncio.gather(*(self.fetch(n) for n in to_fetch))

        results: Dict[str, EntityMetadata] = {}
        for name in names:
            metadata = self.cache.get_entity(name)
            if metadata:
                results[name] = metadata
        return results

    async def lookup_targets(self, entity_name: str, attribute_name: str) -> List[str]:
        """Targets of one lookup attribute; empty when unknown."""
        entity_name = normalize_entity_name(entity_name)
        if entity_name is None or not attribute_name:
            return []

        cached = self.cache.get_entity(entity_name)
        if cached:
            attr = cached.get_lookup(attribute_name)
            if attr and attr.targets:
                return list(attr.targets)

        return await self._fetch_targets(entity_name, attribute_name)

    async def primary_id_attribute(self, entity_name: str) -> Optional[str]:
        """Primary key attribute, falling back to the `<entity>id` convention."""
        entity_name = normalize_entity_name(entity_name)
        if entity_name is None:
            return None
        metadata = await self.resolve(entity_name)
        if metadata and metadata.primary_id_attribute:
            return metadata.primary_id_attribute
        return f"{entity_name}id"

    async def relationship_definitions(
        self,
        parent_entity: str,
        child_entity: str,
    ) -> List[RelationshipDefinition]:
        """1:N relationships of the parent and N:1 relationships of the child linking the pair."""
        parent_entity = normalize_entity_name(parent_entity)
        child_entity = normalize_entity_name(child_entity)
        if parent_entity is None or child_entity is None:
            return []

        one_to_many, many_to_one = await asyncio.gather(
            self._safe_definitions(
                self.client.get_one_to_many_relationships, parent_entity, child_entity, "OneToMany"
            ),
            self._safe_definitions(
                self.client.get_many_to_one_relationships, child_entity, parent_entity, "ManyToOne"
            ),
        )

        definitions: Dict[str, RelationshipDefinition] = {}
        for definition in one_to_many + many_to_one:
            # The same relationship shows up from both sides
            definitions.setdefault(definition.schema_name or definition.lookup_field_name, definition)
        return [
            d for d in definitions.values()
            if d.referencing_entity == child_entity and d.referenced_entity == parent_entity
        ]

    async def _safe_definitions(
        self,
        func: Callable[..., Awaitable[List[Dict[str, Any]]]],
        entity_name: str,
        other_entity: str,
        relationship_type: str,
    ) -> List[RelationshipDefinition]:
        try:
            rows = await self._call(func, entity_name, other_entity)
            return [RelationshipDefinition.from_api(row, relationship_type) for row in rows]
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.debug(f"{relationship_type} relationships unavailable for {entity_name}: {e}")
            return []

    async def _fetch_lookups(self, entity_name: str) -> List[LookupAttribute]:
        rows = await self._call(self.client.get_lookup_attributes, entity_name)
        rows = [r for r in rows if r.get("LogicalName")]
        targets = await asyncio.gather(
            *(self._fetch_targets(entity_name, r["LogicalName"]) for r in rows)
        )
        return [self._to_lookup(row, row_targets) for row, row_targets in zip(rows, targets)]

    async def _fetch_lookups_bulk(self, entity_name: str) -> List[LookupAttribute]:
        rows = await self._call(self.client.get_lookup_attributes_with_targets, entity_name)
        lookups = []
        for row in rows:
            if not row.get("LogicalName"):
                continue
            targets = row.get("Targets") or []
            if not targets:
                logger.debug(f"No targets for {entity_name}.{row['LogicalName']}")
            lookups.append(self._to_lookup(row, targets))
        return lookups

    async def _fetch_targets(self, entity_name: str, attribute_name: str) -> List[str]:
        try:
            return await self._call(self.client.get_lookup_targets, entity_name, attribute_name)
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            # Incomplete metadata is a valid state: keep the attribute, no targets
            logger.debug(f"Could not get targets for {entity_name}.{attribute_name}: {e}")
            return []

    @staticmethod
    def _to_lookup(row: Dict[str, Any], targets: List[str]) -> LookupAttribute:
        logical_name = row["LogicalName"]
        return LookupAttribute(
            logical_name=logical_name,
            display_name=localized_label(row.get("DisplayName"), logical_name),
            targets=tuple(targets),
        )

    @staticmethod
    def _build_metadata(
        entity_name: str,
        definition: Dict[str, Any],
        lookups: List[LookupAttribute],
    ) -> EntityMetadata:
        primary_id = definition.get("PrimaryIdAttribute")

        # An entity's own key is never one of its lookups
        if primary_id:
            lookups = [a for a in lookups if a.logical_name.lower() != primary_id.lower()]

        return EntityMetadata(
            logical_name=entity_name,
            display_name=localized_label(definition.get("DisplayName"), entity_name),
            entity_set_name=definition.get("EntitySetName") or f"{entity_name}s",
            lookup_attributes=tuple(lookups),
            primary_id_attribute=primary_id,
            primary_name_attribute=definition.get("PrimaryNameAttribute"),
        )

"""
Query synthesizer.

Builds list queries against entity collections, including the lookup filter
that restricts a child collection to the records of one parent.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, List, Optional, Sequence

from relmap.discovery.lookup_fields import build_filter, is_lookup_column
from relmap.discovery.mapper import RelationshipMapper
from relmap.models import ListQuery, QueryValidation

if TYPE_CHECKING:
    from relmap.discovery.discoverer import RelationshipDiscoverer

logger = logging.getLogger(__name__)

EMPTY_GUID = "00000000-0000-0000-0000-000000000000"
GUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

# `<lookup column> eq '<value>'` inside a $filter
QUOTED_LOOKUP_FILTER_RE = re.compile(r"(_\w+_value)\s+eq\s+'")


class QuerySynthesizer:
    """
    Builds OData list queries.

    Usage:
        synthesizer = QuerySynthesizer(mapper)
        query = synthesizer.build_list_query(
            "contact",
            lookup_column="_parentcustomerid_value",
            parent_record_id="0b5f...",
        )
        query.odata_query  # contacts?$select=*&$filter=_parentcustomerid_value eq 0b5f...
    """

    def __init__(self, mapper: Optional[RelationshipMapper] = None, development_mode: bool = False):
        """
        Args:
            mapper: Named mappings used to resolve relationship names
            development_mode: Never send saved view ids (local dev servers
                hand out ids the platform does not know)
        """
        self.mapper = mapper or RelationshipMapper()
        self.development_mode = development_mode

    @staticmethod
    def build_filter(lookup_column: str, parent_record_id: str) -> str:
        """Exactly `<lookup column> eq <id>`, id unquoted."""
        return build_filter(lookup_column, parent_record_id)

    @staticmethod
    def collection_name(entity_name: str) -> str:
        """Plural collection name for an entity logical name."""
        name = entity_name.strip()
        lower = name.lower()

        if lower.endswith("s"):
            return name
        if lower.endswith("y") and len(lower) > 1 and lower[-2] not in "aeiou":
            return name[:-1] + "ies"
        if lower.endswith(("x", "z", "ch", "sh")):
            return name + "es"
        return name + "s"

    def is_usable_view_id(self, view_id: Optional[str]) -> bool:
        if not view_id or view_id == EMPTY_GUID:
            return False
        if self.development_mode:
            logger.debug(f"Skipping savedQuery in development mode: {view_id}")
            return False
        return bool(GUID_RE.match(view_id))

    def build_list_query(
        self,
        entity_name: str,
        select: Optional[Sequence[str]] = None,
        page_size: Optional[int] = None,
        view_id: Optional[str] = None,
        is_custom_view: bool = False,
        lookup_column: Optional[str] = None,
        relationship_name: Optional[str] = None,
        parent_record_id: Optional[str] = None,
        collection_name: Optional[str] = None,
    ) -> ListQuery:
        """
        Build a list query for an entity collection.

        Args:
            entity_name: Entity logical name
            select: Extra columns, always preceded by `*`
            page_size: Adds `$top` only when positive
            view_id: Saved view id, sent as `savedQuery` when usable
            is_custom_view: Custom views are never sent as `savedQuery`
            lookup_column: Lookup column to filter on
            relationship_name: Named mapping to take the lookup column from
            parent_record_id: Parent record the children must point at
            collection_name: Entity set name when known from metadata

        Returns:
            ListQuery
        """
        if lookup_column is None and relationship_name:
            lookup_column = self.mapper.map_to_lookup_column(relationship_name)
            if lookup_column is None:
                logger.warning(
                    f"Unknown relationship: {relationship_name}. Consider adding it to the mappings."
                )

        return self._assemble(
            entity_name,
            select=select,
            page_size=page_size,
            view_id=view_id,
            is_custom_view=is_custom_view,
            lookup_column=lookup_column,
            relationship_name=relationship_name,
            parent_record_id=parent_record_id,
            collection_name=collection_name,
        )

    async def build_list_query_with_discovery(
        self,
        entity_name: str,
        discoverer: Optional[RelationshipDiscoverer],
        parent_entity: Optional[str] = None,
        relationship_name: Optional[str] = None,
        parent_record_id: Optional[str] = None,
        select: Optional[Sequence[str]] = None,
        page_size: Optional[int] = None,
        view_id: Optional[str] = None,
        is_custom_view: bool = False,
        collection_name: Optional[str] = None,
    ) -> ListQuery:
        """Like build_list_query, discovering the lookup column when not mapped yet."""
        lookup_column = None
        if parent_record_id and (relationship_name or parent_entity):
            name = relationship_name or f"{parent_entity}_{entity_name}"
            lookup_column = await self.mapper.map_with_discovery(
                name, parent_entity, entity_name, discoverer
            )
            if lookup_column is None:
                logger.warning(
                    f"Could not build relationship filter for {name} "
                    f"(parent={parent_entity}, child={entity_name})"
                )

        return self._assemble(
            entity_name,
            select=select,
            page_size=page_size,
            view_id=view_id,
            is_custom_view=is_custom_view,
            lookup_column=lookup_column,
            relationship_name=relationship_name,
            parent_record_id=parent_record_id,
            collection_name=collection_name,
        )

    def _assemble(
        self,
        entity_name: str,
        select: Optional[Sequence[str]],
        page_size: Optional[int],
        view_id: Optional[str],
        is_custom_view: bool,
        lookup_column: Optional[str],
        relationship_name: Optional[str],
        parent_record_id: Optional[str],
        collection_name: Optional[str],
    ) -> ListQuery:
        collection = collection_name or self.collection_name(entity_name)
        select_fields: List[str] = ["*"] + [s for s in (select or []) if s and s != "*"]
        query = f"{collection}?$select={','.join(select_fields)}"

        if page_size is not None and page_size > 0:
            query += f"&$top={page_size}"

        if view_id and not is_custom_view and self.is_usable_view_id(view_id):
            query += f"&savedQuery={view_id}"

        filter_expression = None
        if lookup_column and parent_record_id:
            filter_expression = self.build_filter(lookup_column, parent_record_id)
            query += f"&$filter={filter_expression}"
            logger.debug(f"Applied relationship filter: {filter_expression}")

        return ListQuery(
            entity_logical_name=entity_name,
            collection_name=collection,
            odata_query=query,
            select=select_fields,
            filter=filter_expression,
            page_size=page_size if page_size and page_size > 0 else None,
            view_id=view_id,
            relationship_name=relationship_name,
            lookup_column=lookup_column,
        )

    @staticmethod
    def validate_query(query: ListQuery) -> QueryValidation:
        """Check a query before it is sent. Never raises."""
        errors: List[str] = []

        if not query.entity_logical_name:
            errors.append("Entity logical name is required")
        if not query.odata_query:
            errors.append("OData query is required")
        elif "?" not in query.odata_query:
            errors.append("OData query must include query parameters")

        if query.lookup_column and not is_lookup_column(query.lookup_column):
            errors.append(f"Lookup column must look like '_<attribute>_value': {query.lookup_column}")

        if query.odata_query and QUOTED_LOOKUP_FILTER_RE.search(query.odata_query):
            errors.append("Lookup filter values must not be quoted")

        return QueryValidation(is_valid=not errors, errors=errors)

    @staticmethod
    def build_metadata_query(entity_name: str) -> str:
        return (
            f"EntityDefinitions(LogicalName='{entity_name}')"
            "?$select=LogicalName,DisplayName,EntitySetName"
            "&$expand=Attributes($select=LogicalName,DisplayName,AttributeType)"
        )

    @staticmethod
    def build_view_definition_query(view_id: str) -> str:
        return f"savedqueries({view_id})?$select=name,fetchxml,layoutxml,returnedtypecode"

"""Executes list queries against the Web API through the data rate limiter."""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import List, Optional, Tuple

import httpx

from relmap.diagnostics.error_analyzer import ErrorAnalyzer
from relmap.discovery.discoverer import RelationshipDiscoverer
from relmap.metadata.client import WebApiClient
from relmap.models import ListQuery, QueryResult
from relmap.query.synthesizer import QuerySynthesizer
from relmap.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

CONNECTION_TEST_QUERY = "systemusers?$select=systemuserid&$top=1"


class QueryExecutor:
    """
    Runs ListQuery objects and returns QueryResult objects.

    Failures never raise: the result carries the error text and, for HTTP
    and transport failures, an ErrorAnalysis.
    """

    def __init__(
        self,
        client: WebApiClient,
        rate_limiter: RateLimiter,
        synthesizer: QuerySynthesizer,
        analyzer: ErrorAnalyzer,
        discoverer: Optional[RelationshipDiscoverer] = None,
        discover_on_error: bool = True,
    ):
        self.client = client
        self.rate_limiter = rate_limiter
        self.synthesizer = synthesizer
        self.analyzer = analyzer
        self.discoverer = discoverer
        self.discover_on_error = discover_on_error

    async def execute(self, query: ListQuery, parent_entity: Optional[str] = None) -> QueryResult:
        """
        Validate and run one query.

        Args:
            query: Query to run
            parent_entity: Parent of a related query, lets error analysis
                run discovery for the pair

        Returns:
            QueryResult
        """
        entity = query.entity_logical_name
        validation = self.synthesizer.validate_query(query)
        if not validation.is_valid:
            return QueryResult(
                entity_logical_name=entity,
                error=f"Query validation failed: {', '.join(validation.errors)}",
            )

        logger.info(f"Executing query for {entity}: {query.odata_query}")
        try:
            response = await self.rate_limiter.execute(
                functools.partial(self.client.retrieve_multiple, query.odata_query)
            )
        except httpx.TransportError as e:
            logger.error(f"Query for {entity} failed: {e}")
            return QueryResult(
                entity_logical_name=entity,
                error=str(e) or type(e).__name__,
                error_analysis=self.analyzer.analyze_transport_error(e),
            )

        if response.is_error:
            if self.discover_on_error and self.discoverer is not None and parent_entity:
                analysis = await self.analyzer.analyze_with_discovery(
                    response, parent_entity, entity, self.discoverer
                )
            else:
                analysis = self.analyzer.analyze(response)
            logger.warning(f"Query for {entity} failed with {response.status_code} {response.reason_phrase}")
            return QueryResult(
                entity_logical_name=entity,
                error=f"{response.status_code} {response.reason_phrase}",
                error_analysis=analysis,
            )

        try:
            data = response.json()
        except ValueError:
            return QueryResult(entity_logical_name=entity, error="Response body is not valid JSON")

        entities = data.get("value", []) if isinstance(data, dict) else []
        logger.info(f"Query successful: {len(entities)} records retrieved")
        return QueryResult(
            entity_logical_name=entity,
            entities=entities,
            success=True,
            total_count=data.get("@odata.count", len(entities)),
            next_link=data.get("@odata.nextLink"),
        )

    async def execute_batch(
        self,
        queries: List[ListQuery],
        parent_entity: Optional[str] = None,
    ) -> List[QueryResult]:
        """Run several queries concurrently. Results keep the input order."""
        return list(await asyncio.gather(*(self.execute(q, parent_entity) for q in queries)))

    async def test_connection(self) -> Tuple[bool, Optional[str]]:
        """
        Check that the Web API answers an authenticated request.

        Returns:
            (success, error message)
        """
        try:
            response = await self.rate_limiter.execute(
                functools.partial(self.client.retrieve_multiple, CONNECTION_TEST_QUERY)
            )
        except httpx.TransportError as e:
            logger.error(f"Web API connectivity test failed: {e}")
            return False, str(e) or type(e).__name__

        if response.is_error:
            message = f"{response.status_code} {response.reason_phrase}"
            logger.error(f"Web API connectivity test failed: {message}")
            return False, message
        return True, None

"""
Discovery session: wires the client, limiters, cache and services together.

Usage:
    config = DiscoveryConfig.load(Path("relmap.yaml"))
    async with DiscoverySession(config) as session:
        rel = await session.discoverer.discover("account", "contact")
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from relmap.config import DiscoveryConfig
from relmap.diagnostics.error_analyzer import ErrorAnalyzer
from relmap.discovery.discoverer import RelationshipDiscoverer
from relmap.discovery.mapper import RelationshipMapper
from relmap.discovery.strategies import default_strategies
from relmap.metadata.cache import MetadataCache
from relmap.metadata.client import WebApiClient
from relmap.metadata.resolver import EntityMetadataResolver
from relmap.query.executor import QueryExecutor
from relmap.query.synthesizer import QuerySynthesizer
from relmap.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class DiscoverySession:
    """One Web API connection with its own cache and rate limiters."""

    def __init__(
        self,
        config: DiscoveryConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            config: Session configuration (validated here)
            transport: Optional httpx transport, mainly for tests
        """
        config.require_base_url()
        self.config = config

        self.client = WebApiClient(
            config.api_url,
            access_token=config.access_token,
            timeout=config.timeout,
            transport=transport,
            headers=config.extra_headers,
        )
        self.metadata_limiter = RateLimiter(config.metadata_min_delay, config.metadata_max_concurrent)
        self.data_limiter = RateLimiter(config.data_min_delay, config.data_max_concurrent)

        self.cache = MetadataCache()
        self.resolver = EntityMetadataResolver(
            self.client, self.cache, self.metadata_limiter, bulk_lookups=config.bulk_lookups
        )
        self.discoverer = RelationshipDiscoverer(
            self.resolver,
            self.cache,
            default_strategies(self.resolver, config.use_relationship_definitions),
        )

        self.mapper = RelationshipMapper()
        if config.mappings_file:
            self.mapper.load_mappings(config.mappings_file)

        self.synthesizer = QuerySynthesizer(self.mapper, development_mode=config.development_mode)
        self.analyzer = ErrorAnalyzer()
        self.executor = QueryExecutor(
            self.client,
            self.data_limiter,
            self.synthesizer,
            self.analyzer,
            discoverer=self.discoverer,
            discover_on_error=config.discover_on_error,
        )

    async def __aenter__(self) -> DiscoverySession:
        self.client.connect()
        logger.debug(f"Session opened for {self.config.api_url}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Reject queued calls and close the HTTP client."""
        self.metadata_limiter.clear_queue()
        self.data_limiter.clear_queue()
        await self.client.disconnect()

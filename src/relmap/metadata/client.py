"""
Web API client for entity metadata and record lists.

Thin async wrapper over httpx that knows the metadata endpoint shapes.
Non-2xx responses raise httpx.HTTPStatusError and transport failures raise
httpx.TransportError; callers decide what absence means.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

LOOKUP_METADATA_TYPE = "Microsoft.Dynamics.CRM.LookupAttributeMetadata"

ENTITY_SELECT = "LogicalName,DisplayName,EntitySetName,PrimaryIdAttribute,PrimaryNameAttribute"
RELATIONSHIP_SELECT = (
    "SchemaName,ReferencingEntity,ReferencingAttribute,ReferencedEntity,ReferencedAttribute"
)

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "OData-MaxVersion": "4.0",
    "OData-Version": "4.0",
    "Prefer": 'odata.include-annotations="*"',
}


def entity_path(entity_name: str) -> str:
    return f"EntityDefinitions(LogicalName='{entity_name}')"


class WebApiClient:
    """
    Async client for the metadata and data endpoints of the Web API.

    Usage:
        async with WebApiClient("https://org.example.com/api/data/v9.2/", token) as client:
            definition = await client.get_entity_definition("contact")
    """

    def __init__(
        self,
        base_url: str,
        access_token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Versioned API root, e.g. https://org/api/data/v9.2/
            access_token: Optional bearer token
            timeout: Request timeout in seconds (the only timeout relmap applies)
            transport: Optional httpx transport, mainly for tests
            headers: Extra headers sent with every request
        """
        self.base_url = base_url
        self.timeout = timeout
        self._transport = transport

        self.headers = dict(DEFAULT_HEADERS)
        if access_token:
            self.headers["Authorization"] = f"Bearer {access_token}"
        if headers:
            self.headers.update(headers)

        self._client: Optional[httpx.AsyncClient] = None
        self.request_count = 0

    def connect(self) -> None:
        """Create the underlying HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.timeout,
                transport=self._transport,
            )

    async def disconnect(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()

    async def send(self, path: str, params: Optional[Dict[str, str]] = None) -> httpx.Response:
        """Issue a GET and return the raw response, whatever its status."""
        self.connect()
        self.request_count += 1
        logger.debug(f"GET {path} {params or ''}")
        return await self._client.get(path, params=params)

    async def get_json(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        """Issue a GET, raise for non-2xx status and decode the JSON body."""
        response = await self.send(path, params)
        response.raise_for_status()
        return response.json()

    async def get_entity_definition(self, entity_name: str) -> Dict[str, Any]:
        return await self.get_json(entity_path(entity_name), {"$select": ENTITY_SELECT})

    async def get_lookup_attributes(self, entity_name: str) -> List[Dict[str, Any]]:
        """Lookup-typed attributes of an entity, without targets."""
        data = await self.get_json(
            f"{entity_path(entity_name)}/Attributes",
            {
                "$filter": "AttributeType eq 'Lookup'",
                "$select": "LogicalName,DisplayName",
            },
        )
        return data.get("value", [])

    async def get_lookup_targets(self, entity_name: str, attribute_name: str) -> List[str]:
        data = await self.get_json(
            f"{entity_path(entity_name)}/Attributes(LogicalName='{attribute_name}')/{LOOKUP_METADATA_TYPE}",
            {"$select": "Targets"},
        )
        return list(data.get("Targets") or [])

    async def get_lookup_attributes_with_targets(self, entity_name: str) -> List[Dict[str, Any]]:
        """All lookup attributes with their targets in one request."""
        data = await self.get_json(
            f"{entity_path(entity_name)}/Attributes/{LOOKUP_METADATA_TYPE}",
            {"$select": "LogicalName,DisplayName,Targets"},
        )
        return data.get("value", [])

    async def get_one_to_many_relationships(
        self,
        entity_name: str,
        referencing_entity: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        params = {"$select": RELATIONSHIP_SELECT}
        if referencing_entity:
            params["$filter"] = f"ReferencingEntity eq '{referencing_entity}'"
        data = await self.get_json(f"{entity_path(entity_name)}/OneToManyRelationships", params)
        return data.get("value", [])

    async def get_many_to_one_relationships(
        self,
        entity_name: str,
        referenced_entity: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        params = {"$select": RELATIONSHIP_SELECT}
        if referenced_entity:
            params["$filter"] = f"ReferencedEntity eq '{referenced_entity}'"
        data = await self.get_json(f"{entity_path(entity_name)}/ManyToOneRelationships", params)
        return data.get("value", [])

    async def retrieve_multiple(self, odata_query: str) -> httpx.Response:
        """Run a list query such as `contacts?$select=*&$filter=...`."""
        return await self.send(odata_query)


def localized_label(value: Any, fallback: str) -> str:
    """Pull the user-localized label out of a metadata DisplayName payload."""
    if isinstance(value, dict):
        label = (value.get("UserLocalizedLabel") or {}).get("Label")
        if label:
            return label
        for localized in value.get("LocalizedLabels") or []:
            if localized.get("Label"):
                return localized["Label"]
    elif isinstance(value, str) and value:
        return value
    return fallback

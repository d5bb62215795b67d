"""
Shared fixtures: an in-memory Web API served through httpx.MockTransport.
"""

import json
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote

import httpx
import pytest
import pytest_asyncio

from relmap.config import DiscoveryConfig
from relmap.metadata.cache import MetadataCache
from relmap.metadata.client import WebApiClient
from relmap.metadata.resolver import EntityMetadataResolver
from relmap.discovery.discoverer import RelationshipDiscoverer
from relmap.utils.rate_limiter import RateLimiter

BASE_URL = "https://org.example.com/api/data/v9.2/"
API_PREFIX = "/api/data/v9.2/"

_ENTITY = r"EntityDefinitions\(LogicalName='(?P<entity>[^']+)'\)"
DEFINITION_RE = re.compile(rf"^{_ENTITY}$")
ATTRIBUTES_RE = re.compile(rf"^{_ENTITY}/Attributes$")
TARGETS_RE = re.compile(
    rf"^{_ENTITY}/Attributes\(LogicalName='(?P<attr>[^']+)'\)/Microsoft\.Dynamics\.CRM\.LookupAttributeMetadata$"
)
BULK_RE = re.compile(rf"^{_ENTITY}/Attributes/Microsoft\.Dynamics\.CRM\.LookupAttributeMetadata$")
RELATIONSHIPS_RE = re.compile(rf"^{_ENTITY}/(?P<kind>OneToMany|ManyToOne)Relationships$")
FILTER_VALUE_RE = re.compile(r"eq '([^']+)'")


def label(text: str) -> Dict[str, Any]:
    return {"UserLocalizedLabel": {"Label": text}, "LocalizedLabels": [{"Label": text}]}


def error_body(message: str, code: str = "0x80060888") -> Dict[str, Any]:
    return {"error": {"code": code, "message": message}}


class FakeWebApi:
    """Serves entity metadata and record lists, recording every request path."""

    def __init__(self):
        self.definitions: Dict[str, Dict[str, Any]] = {}
        self.lookups: Dict[str, List[Tuple[str, str, List[str]]]] = {}
        self.relationships: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
        self.records: Dict[str, List[Dict[str, Any]]] = {}
        self.errors: Dict[str, Tuple[int, Any, Dict[str, str]]] = {}
        self.failing_targets = set()
        self.calls: List[str] = []

    def add_entity(
        self,
        name: str,
        lookups: Optional[List[Tuple[str, str, List[str]]]] = None,
        primary_id: Optional[str] = None,
        entity_set_name: Optional[str] = None,
    ) -> None:
        self.definitions[name] = {
            "LogicalName": name,
            "DisplayName": label(name.title()),
            "EntitySetName": entity_set_name or f"{name}s",
            "PrimaryIdAttribute": primary_id or f"{name}id",
            "PrimaryNameAttribute": "name",
        }
        self.lookups[name] = list(lookups or [])

    def add_relationship(self, parent: str, child: str, attribute: str, schema_name: str) -> None:
        row = {
            "SchemaName": schema_name,
            "ReferencingEntity": child,
            "ReferencingAttribute": attribute,
            "ReferencedEntity": parent,
            "ReferencedAttribute": f"{parent}id",
        }
        self.relationships.setdefault((parent, "OneToMany"), []).append(row)
        self.relationships.setdefault((child, "ManyToOne"), []).append(row)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def count(self, fragment: str = "") -> int:
        return sum(1 for path in self.calls if fragment in path)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = unquote(request.url.path)
        if path.startswith(API_PREFIX):
            path = path[len(API_PREFIX):]
        self.calls.append(path)

        match = TARGETS_RE.match(path)
        if match:
            entity, attr = match.group("entity"), match.group("attr")
            if (entity, attr) in self.failing_targets:
                return httpx.Response(500, json=error_body("Generic SQL error"))
            for name, _, targets in self.lookups.get(entity, []):
                if name == attr:
                    return httpx.Response(200, json={"Targets": targets})
            return httpx.Response(404, json=error_body(f"Attribute {attr} not found"))

        match = BULK_RE.match(path)
        if match:
            entity = match.group("entity")
            if entity not in self.definitions:
                return self._not_found(entity)
            return httpx.Response(200, json={"value": [
                {"LogicalName": n, "DisplayName": label(d), "Targets": t}
                for n, d, t in self.lookups[entity]
            ]})

        match = ATTRIBUTES_RE.match(path)
        if match:
            entity = match.group("entity")
            if entity not in self.definitions:
                return self._not_found(entity)
            return httpx.Response(200, json={"value": [
                {"LogicalName": n, "DisplayName": label(d)} for n, d, _ in self.lookups[entity]
            ]})

        match = RELATIONSHIPS_RE.match(path)
        if match:
            rows = self.relationships.get((match.group("entity"), match.group("kind")), [])
            value = FILTER_VALUE_RE.search(request.url.params.get("$filter", ""))
            if value:
                key = "ReferencingEntity" if match.group("kind") == "OneToMany" else "ReferencedEntity"
                rows = [r for r in rows if r[key] == value.group(1)]
            return httpx.Response(200, json={"value": rows})

        match = DEFINITION_RE.match(path)
        if match:
            entity = match.group("entity")
            if entity not in self.definitions:
                return self._not_found(entity)
            return httpx.Response(200, json=self.definitions[entity])

        if path in self.errors:
            status, body, headers = self.errors[path]
            content = body if isinstance(body, str) else json.dumps(body)
            return httpx.Response(status, content=content.encode(), headers=headers)
        if path in self.records:
            return httpx.Response(200, json={"value": self.records[path]})
        return httpx.Response(
            404, json=error_body(f"Resource not found for the segment '{path}'.", "0x8006088a")
        )

    @staticmethod
    def _not_found(entity: str) -> httpx.Response:
        return httpx.Response(
            404,
            json=error_body(f"Could not find an entity with name '{entity}'", "0x80060888"),
        )


def crm_fake_api() -> FakeWebApi:
    api = FakeWebApi()
    api.add_entity(
        "account",
        lookups=[
            ("primarycontactid", "Primary Contact", ["contact"]),
            ("parentaccountid", "Parent Account", ["account"]),
            ("accountid", "Account", ["account"]),
        ],
        primary_id="accountid",
        entity_set_name="accounts",
    )
    api.add_entity(
        "contact",
        lookups=[
            ("parentcustomerid", "Company Name", ["account", "contact"]),
            ("ownerid", "Owner", ["systemuser", "team"]),
            ("contactid", "Contact", ["contact"]),
        ],
        primary_id="contactid",
        entity_set_name="contacts",
    )
    api.add_entity(
        "opportunity",
        lookups=[
            ("customerid", "Potential Customer", ["account", "contact"]),
            ("parentaccountid", "Account", ["account"]),
        ],
        primary_id="opportunityid",
        entity_set_name="opportunities",
    )
    api.add_entity("systemuser", primary_id="systemuserid")
    api.records["contacts"] = [
        {"contactid": "c1", "fullname": "Ada", "_parentcustomerid_value": "a1"},
    ]
    return api


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep RELMAP_* variables from the outer environment out of the tests."""
    for name in DiscoveryConfig.model_fields:
        monkeypatch.delenv(f"RELMAP_{name.upper()}", raising=False)


@pytest.fixture
def fake_api():
    return crm_fake_api()


@pytest.fixture
def limiter():
    return RateLimiter(min_delay=0, max_concurrent=5)


@pytest.fixture
def cache():
    return MetadataCache()


@pytest_asyncio.fixture
async def client(fake_api):
    client = WebApiClient(BASE_URL, access_token="token", transport=fake_api.transport)
    client.connect()
    yield client
    await client.disconnect()


@pytest.fixture
def resolver(client, cache, limiter):
    return EntityMetadataResolver(client, cache, limiter)


@pytest.fixture
def discoverer(resolver, cache):
    return RelationshipDiscoverer(resolver, cache)

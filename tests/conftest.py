"""Shared fixtures: configuration trees, sample API descriptions and fakes."""

import asyncio
import copy
import json
import re
from typing import Callable, List, Optional

import pytest

from core.config import DEFAULT_CONFIG, build_config
from core.exceptions import EmbeddingUnavailableError
from core.http_client import HTTPResponse
from core.models import Endpoint, Parameter, ParameterLocation
from core.utils import merge_dicts

SAMPLE_OPENAPI = """
openapi: 3.0.3
info:
  title: Users
  version: "1.0"
servers:
  - url: https://api.example.com/v1
paths:
  /users/{id}:
    parameters:
      - name: id
        in: path
        required: true
        schema:
          type: integer
    get:
      operationId: getUser
      summary: Fetch a user by id
      tags: [user]
      parameters:
        - name: fields
          in: query
          schema:
            type: string
      responses:
        "200":
          description: The user
          content:
            application/json:
              schema:
                $ref: "#/components/schemas/User"
    delete:
      operationId: deleteUser
      summary: Delete a user
      tags: [admin]
      responses:
        "204":
          description: Deleted
  /users:
    post:
      operationId: createUser
      summary: Create a user
      requestBody:
        content:
          application/json:
            schema:
              $ref: "#/components/schemas/NewUser"
      responses:
        "201":
          description: Created
components:
  schemas:
    User:
      type: object
      properties:
        id:
          type: integer
        email:
          type: string
    NewUser:
      type: object
      required: [email]
      properties:
        email:
          type: string
          format: email
        age:
          type: integer
"""

SAMPLE_SWAGGER = {
    "swagger": "2.0",
    "info": {"title": "Legacy", "version": "1"},
    "host": "legacy.example.com",
    "basePath": "/api",
    "paths": {
        "/orders/{orderId}": {
            "get": {
                "parameters": [
                    {"name": "orderId", "in": "path", "required": True, "type": "string"},
                    {"name": "X-Trace", "in": "header", "type": "string"},
                ],
                "responses": {"200": {"description": "ok"}},
            },
            "put": {
                "parameters": [
                    {"name": "orderId", "in": "path", "required": True, "type": "string"},
                    {
                        "name": "order",
                        "in": "body",
                        "schema": {"type": "object", "properties": {"qty": {"type": "integer"}}},
                    },
                ],
                "responses": {"200": {"description": "ok"}},
            },
        }
    },
}

SAMPLE_POSTMAN = {
    "info": {"name": "Shop", "schema": "https://schema.getpostman.com/json/collection/v2.1.0/collection.json"},
    "variable": [{"key": "baseUrl", "value": "https://shop.example.com"}, {"key": "version", "value": "v2"}],
    "item": [
        {
            "name": "Products",
            "item": [
                {
                    "name": "Get product",
                    "request": {
                        "method": "GET",
                        "url": {
                            "raw": "{{baseUrl}}/{{version}}/products/:productId?expand=true",
                            "path": ["{{version}}", "products", ":productId"],
                            "query": [{"key": "expand", "value": "true"}],
                            "variable": [{"key": "productId", "value": "42"}],
                        },
                    },
                },
                {
                    "name": "Create product",
                    "request": {
                        "method": "POST",
                        "header": [{"key": "Content-Type", "value": "application/json"}, {"key": "X-Tenant", "value": "a"}],
                        "url": "{{baseUrl}}/{{version}}/products",
                        "body": {"mode": "raw", "raw": "{\"name\": \"lamp\", \"price\": 12.5}"},
                    },
                },
            ],
        }
    ],
}

SAMPLE_HAR = {
    "log": {
        "version": "1.2",
        "entries": [
            {
                "request": {
                    "method": "GET",
                    "url": "https://app.example.com/api/accounts/1234/invoices?page=2",
                    "headers": [{"name": "Accept", "value": "*/*"}, {"name": "X-Api-Version", "value": "3"}],
                },
                "response": {
                    "status": 200,
                    "statusText": "OK",
                    "content": {"mimeType": "application/json", "text": "{\"items\": [], \"total\": 0}"},
                },
            },
            {
                "request": {"method": "GET", "url": "https://app.example.com/api/accounts/98/invoices?page=1"},
                "response": {"status": 200, "content": {"mimeType": "application/json", "text": "{}"}},
            },
            {
                "request": {"method": "GET", "url": "https://app.example.com/static/app.js"},
                "response": {"status": 200, "content": {"mimeType": "application/javascript"}},
            },
        ],
    }
}

SAMPLE_SDL = '''
"""Root queries"""
type Query {
  user(id: ID!): User
  search(term: String, limit: Int): [User!]!
}

type Mutation {
  updateEmail(id: ID!, email: String!): User @auth
}

type User {
  id: ID!
  email: String
}
'''

SAMPLE_KONG = """
_format_version: "3.0"
services:
  - name: billing
    url: http://billing.internal:8080
    routes:
      - name: invoices
        paths: ["/invoices"]
        methods: ["GET", "POST"]
      - name: invoice
        paths: ["~/invoices/(?<invoiceId>[0-9]+)$"]
"""

DOC_VOCABULARY = [
    "user", "users", "email", "delete", "order", "orders", "invoice", "invoices",
    "product", "products", "search", "fetch", "create", "id",
]


def keyword_vector(text: str) -> List[float]:
    """Bag-of-words vector over a fixed vocabulary."""
    words = re.findall(r"[a-z]+", text.lower())
    return [float(words.count(term)) for term in DOC_VOCABULARY]


class FakeEmbeddingProvider:
    """Deterministic embedding provider; can be switched to unavailable."""

    def __init__(self, unavailable: bool = False, reject: Optional[Callable[[str], bool]] = None):
        self.unavailable = unavailable
        self.reject = reject
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.unavailable:
            raise EmbeddingUnavailableError("provider down")
        if self.reject is not None and self.reject(text):
            raise ValueError("rejected")
        return keyword_vector(text)


class FakeClient:
    """
    Stand-in for AsyncHTTPClient that sleeps, records requests and counts
    how many are in flight at once.
    """

    def __init__(self, responder: Optional[Callable] = None, delay: float = 0.0):
        self.responder = responder
        self.delay = delay
        self.in_flight = 0
        self.peak = 0
        self.requests: List[dict] = []

    async def request(self, method, url, **kwargs):
        self.requests.append({"method": method, "url": url, **kwargs})
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            result = self.responder(method, url, kwargs) if self.responder else None
            if isinstance(result, Exception):
                raise result
            if result is None:
                result = HTTPResponse(url=url, status=200, headers={}, body="{\"ok\": true}", elapsed=self.delay)
            return result
        finally:
            self.in_flight -= 1

    async def get(self, url, **kwargs):
        return await self.request("GET", url, **kwargs)

    async def post(self, url, **kwargs):
        return await self.request("POST", url, **kwargs)


def response(url: str, body: str = "", status: int = 200, elapsed: float = 0.01) -> HTTPResponse:
    return HTTPResponse(url=url, status=status, headers={"Content-Type": "application/json"}, body=body, elapsed=elapsed)


@pytest.fixture
def config_tree():
    """Default tree with no documentation sources and code discovery off."""
    tree = copy.deepcopy(DEFAULT_CONFIG)
    tree["rag"]["documentation_sources"] = []
    tree["enrichment"]["code_discovery"]["enabled"] = False
    return tree


@pytest.fixture
def make_config(config_tree):
    """Build a ScanConfig from the default tree plus overrides."""

    def _make(overrides: Optional[dict] = None):
        return build_config(merge_dicts(copy.deepcopy(config_tree), overrides or {}))

    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def search_endpoint():
    return Endpoint(
        method="GET",
        path="/search",
        source_format="openapi",
        parameters=(Parameter("q", ParameterLocation.QUERY, "string"),),
        summary="Search users",
    )


@pytest.fixture
def sample_openapi():
    return SAMPLE_OPENAPI


@pytest.fixture
def sample_swagger():
    return json.dumps(SAMPLE_SWAGGER)


@pytest.fixture
def sample_postman():
    return json.dumps(SAMPLE_POSTMAN)


@pytest.fixture
def sample_har():
    return json.dumps(SAMPLE_HAR)


@pytest.fixture
def sample_sdl():
    return SAMPLE_SDL


@pytest.fixture
def sample_kong():
    return SAMPLE_KONG


@pytest.fixture
def fake_provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def fake_client():
    return FakeClient()

"""Tests for drift detection between ingested endpoints and the live API.

Tests cover:
- New, missing and confirmed endpoints
- Path template normalization
- Soft 404 calibration
- OPTIONS discovery
- Unreachable endpoints kept apart from missing ones
- The concurrency bound and request options
"""

import re
from urllib.parse import urlsplit

import pytest

from conftest import FakeClient, response
from core.exceptions import ProbeNetworkError
from core.http_client import HTTPResponse
from core.models import Endpoint, Parameter, ParameterLocation
from phase4_probing.drift import COMMON_PATHS, DriftDetector, normalize_path

BASE_URL = "https://api.example.com"

USER_ROUTES = {
    ("GET", r"/users/\d+"): 200,
    ("POST", r"/users"): 201,
    ("GET", r"/health"): 200,
    ("POST", r"/admin"): 403,
}


def live_api(routes, options=None, fail=()):
    """Answers the given (method, path regex) routes and 404 for everything else."""

    def responder(method, url, kwargs):
        path = urlsplit(url).path
        if path in fail:
            return ProbeNetworkError("connection refused", attempts=3)
        if method == "OPTIONS" and options is not None:
            return options
        for (route_method, pattern), status in routes.items():
            if route_method == method and re.fullmatch(pattern, path):
                return response(url, body='{"ok": true}', status=status)
        return response(url, body="not found", status=404)

    return responder


@pytest.fixture
def endpoints():
    return [
        Endpoint("GET", "/users/{id}", "openapi", (Parameter("id", ParameterLocation.PATH, "integer"),)),
        Endpoint("POST", "/users", "openapi"),
        Endpoint("GET", "/legacy", "openapi"),
    ]


class TestCompare:
    """Classifying endpoints as confirmed, missing or new."""

    async def test_new_and_missing_endpoints(self, config, endpoints) -> None:
        client = FakeClient(live_api(USER_ROUTES))
        report = await DriftDetector(config, client).compare(endpoints, BASE_URL)

        assert report.confirmed == ["GET /users/{id}", "POST /users"]
        assert [e.label for e in report.missing_endpoints] == ["GET /legacy"]
        assert [e.label for e in report.new_endpoints] == ["POST /admin", "GET /health"]
        assert all(e.discovery == "crawling" for e in report.new_endpoints)
        assert report.coverage == 50

        summary = report.summary()
        assert summary["documented"] == 3
        assert summary["total_differences"] == 3
        assert summary["high_severity"] == 1

    async def test_documented_crawl_hit_is_not_new(self, config) -> None:
        client = FakeClient(live_api({("GET", r"/health/?"): 200}))
        report = await DriftDetector(config, client).compare([Endpoint("GET", "/health/", "har")], BASE_URL)

        assert report.confirmed == ["GET /health/"]
        assert report.new_endpoints == []
        assert report.coverage == 100

    async def test_nothing_live(self, config) -> None:
        client = FakeClient(live_api({}))
        report = await DriftDetector(config, client).compare([], BASE_URL)

        assert report.differences == []
        assert report.coverage == 100

    async def test_extra_paths_are_crawled(self, config) -> None:
        client = FakeClient(live_api({("GET", r"/internal/metrics"): 200}))
        report = await DriftDetector(config, client, paths=["/internal/metrics", "/health"]).compare([], BASE_URL)

        assert [e.label for e in report.new_endpoints] == ["GET /internal/metrics"]
        crawled = [urlsplit(r["url"]).path for r in client.requests if r["method"] == "GET"]
        assert crawled.count("/health") == 1


class TestPathNormalization:
    """Template syntaxes compare equal."""

    def test_templates(self) -> None:
        assert normalize_path("/users/:id/") == "/users/{}"
        assert normalize_path("/users/{userId}") == "/users/{}"
        assert normalize_path("/orders/{orderId}/items/:item") == "/orders/{}/items/{}"

    def test_fragment_and_query_dropped(self) -> None:
        assert normalize_path("/graphql#user") == "/graphql"
        assert normalize_path("/search?q=1") == "/search"
        assert normalize_path("") == "/"


class TestRuntimeDiscovery:
    """Soft 404s, OPTIONS and unreachable endpoints."""

    async def test_soft_404_filtered(self, config) -> None:
        shell = "<html><body>app shell</body></html>"

        def responder(method, url, kwargs):
            if urlsplit(url).path == "/status":
                return response(url, body='{"status": "up", "version": "2.4.1", "uptime": 81234}')
            return response(url, body=shell)

        report = await DriftDetector(config, FakeClient(responder)).compare([], BASE_URL)

        assert [e.label for e in report.new_endpoints] == ["GET /status", "POST /status"]

    async def test_options_allow_header(self, config) -> None:
        options = HTTPResponse(url=BASE_URL, status=204, headers={"allow": "GET, POST, OPTIONS"}, body="", elapsed=0.0)
        client = FakeClient(live_api({("GET", r"/"): 200}, options=options))

        report = await DriftDetector(config, client).compare([Endpoint("GET", "/", "openapi")], BASE_URL)

        assert [(e.label, e.discovery) for e in report.new_endpoints] == [("POST /", "options")]

    async def test_unreachable_is_not_missing(self, config, endpoints) -> None:
        client = FakeClient(live_api(USER_ROUTES, fail=("/legacy",)))
        report = await DriftDetector(config, client).compare(endpoints, BASE_URL)

        assert report.missing_endpoints == []
        unreachable = [d for d in report.differences if d.kind == "unreachable-endpoint"]
        assert [(d.method, d.path, d.severity) for d in unreachable] == [("GET", "/legacy", "low")]
        assert "connection refused" in unreachable[0].details["error"]
        assert "GET /legacy" not in report.confirmed


class TestRequests:
    """What goes over the wire."""

    async def test_concurrency_bound(self, make_config, endpoints) -> None:
        config = make_config({"dast": {"max_concurrent": 2}})
        client = FakeClient(live_api(USER_ROUTES), delay=0.01)

        await DriftDetector(config, client).compare(endpoints, BASE_URL)

        assert client.peak <= 2
        assert len(client.requests) == 2 + 2 * len(COMMON_PATHS) + len(endpoints)

    async def test_request_options(self, make_config, endpoints) -> None:
        config = make_config({"dast": {"custom_headers": {"Authorization": "Bearer t"}}})
        client = FakeClient(live_api(USER_ROUTES))

        await DriftDetector(config, client).compare(endpoints, BASE_URL)

        assert all(r["allow_redirects"] is False for r in client.requests)
        assert all(r["headers"]["Authorization"] == "Bearer t" for r in client.requests)
        assert any(r["method"] == "GET" and r["url"] == f"{BASE_URL}/users/1" for r in client.requests)


class TestReport:
    """Serialized drift reports."""

    async def test_to_dict_and_text(self, config, endpoints) -> None:
        report = await DriftDetector(config, FakeClient(live_api(USER_ROUTES))).compare(endpoints, BASE_URL)

        data = report.to_dict()
        assert data["summary"]["coverage"] == 50
        assert data["missing_endpoints"][0]["path"] == "/legacy"
        assert [d["type"] for d in data["differences"]] == ["missing-endpoint", "new-endpoint", "new-endpoint"]
        assert data["differences"][0]["severity"] == "high"

        text = report.to_text()
        assert "+ POST /admin (crawling, HTTP 403)" in text
        assert "- GET /legacy (openapi)" in text
        assert "Coverage: 50%" in text

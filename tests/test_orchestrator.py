"""End-to-end tests for SpecProbeOrchestrator with fake transport and embeddings."""

import pytest

from conftest import SAMPLE_OPENAPI, FakeClient, FakeEmbeddingProvider, response
from core.exceptions import ConfigurationInvalidError, NoEndpointsError
from orchestrator import ScanTarget, SpecProbeOrchestrator

BASE_URL = "https://api.example.com"

USER_DOCS = """# Users

## Fetch user
GET /users/{id} fetch a user by id.
"""


def sql_error_on_fields(method, url, kwargs):
    """Fails with a database error whenever `fields` carries a quote."""
    params = kwargs.get("params") or {}
    if "'" in params.get("fields", ""):
        return response(url, body="You have an error in your SQL syntax", status=200)
    return response(url, body='{"id": 1}')


@pytest.fixture
def scan_config(make_config):
    return make_config({"dast": {"vulnerability_classes": ["injection", "xss"]}})


@pytest.fixture
def docs(tmp_path):
    path = tmp_path / "users.md"
    path.write_text(USER_DOCS, encoding="utf-8")
    return str(path)


class TestPipeline:
    """All phases in order."""

    async def test_full_run(self, tmp_path, scan_config, docs) -> None:
        client = FakeClient(responder=sql_error_on_fields)
        output_dir = tmp_path / "out"
        orchestrator = SpecProbeOrchestrator(
            scan_config, output_dir=str(output_dir), embedding_provider=FakeEmbeddingProvider(), client=client
        )
        target = ScanTarget(
            BASE_URL,
            sources=[("openapi.yaml", SAMPLE_OPENAPI), ("notes.txt", "not an api")],
            documentation_sources=[docs],
        )

        report = await orchestrator.run(target)

        assert [e.label for e in report.endpoints] == ["GET /users/{id}", "DELETE /users/{id}", "POST /users"]
        assert report.sources[0]["ingestor"] == "openapi"
        assert report.ingestion_failures[0]["source"] == "notes.txt"
        assert report.errors[0].startswith("notes.txt: ")

        assert report.documentation["available"] is True
        assert report.endpoints[0].documented is True

        assert report.probe_stats["baseline"] == 3
        assert len(report.findings) == 4
        assert {f.vulnerability_class for f in report.findings} == {"injection"}
        assert {f.payload.parameter for f in report.findings} == {"fields"}
        assert all("error_fingerprint" in f.signatures for f in report.findings)

        assert report.stats["total_findings"] == 4
        assert report.stats["has_high"] is True
        assert len(list(output_dir.glob("*.json"))) == 1
        assert len(list(output_dir.glob("*.md"))) == 1

    async def test_probe_disabled(self, scan_config) -> None:
        client = FakeClient()
        orchestrator = SpecProbeOrchestrator(scan_config, client=client)
        report = await orchestrator.run(ScanTarget(BASE_URL, [("openapi.yaml", SAMPLE_OPENAPI)], probe=False))

        assert len(report.endpoints) == 3
        assert report.findings == []
        assert report.probe_stats == {}
        assert client.requests == []

    async def test_stop_before_probing(self, scan_config) -> None:
        client = FakeClient()
        orchestrator = SpecProbeOrchestrator(scan_config, client=client)
        orchestrator.stop()
        report = await orchestrator.run(ScanTarget(BASE_URL, [("openapi.yaml", SAMPLE_OPENAPI)]))

        assert client.requests == []
        assert report.findings == []
        assert report.probe_stats["dropped"] > 0

    async def test_unavailable_embeddings_do_not_stop_probing(self, scan_config, docs) -> None:
        orchestrator = SpecProbeOrchestrator(
            scan_config, embedding_provider=FakeEmbeddingProvider(unavailable=True), client=FakeClient()
        )
        report = await orchestrator.run(
            ScanTarget(BASE_URL, [("openapi.yaml", SAMPLE_OPENAPI)], documentation_sources=[docs])
        )

        assert report.documentation["available"] is False
        assert report.documentation["documented"] == 0
        assert report.probe_stats["completed"] > 0


class TestAborts:
    """Conditions that stop a run."""

    def test_invalid_config(self, config_tree) -> None:
        config_tree["dast"]["max_concurrent"] = "many"
        with pytest.raises(ConfigurationInvalidError) as exc_info:
            SpecProbeOrchestrator(config_tree)
        assert any("max_concurrent" in e for e in exc_info.value.errors)

    def test_unknown_encoding_rejected_before_any_stage(self, config_tree) -> None:
        config_tree["dast"]["payload_encodings"] = ["html"]
        client = FakeClient()
        with pytest.raises(ConfigurationInvalidError) as exc_info:
            SpecProbeOrchestrator(config_tree, client=client)
        assert exc_info.value.errors == ["dast.payload_encodings has unknown encodings: html"]
        assert client.requests == []

    async def test_no_endpoints(self, scan_config) -> None:
        orchestrator = SpecProbeOrchestrator(scan_config, client=FakeClient())
        with pytest.raises(NoEndpointsError):
            await orchestrator.run(ScanTarget(BASE_URL, [("notes.txt", "nothing"), ("api.json", "{}")]))


class TestDrift:
    """Ingestion followed by the drift comparison."""

    async def test_drift_against_live_api(self, scan_config) -> None:
        def responder(method, url, kwargs):
            if "/users" in url and method in ("GET", "POST"):
                return response(url, body='{"id": 1}')
            return response(url, body="not found", status=404)

        client = FakeClient(responder)
        orchestrator = SpecProbeOrchestrator(scan_config, client=client)
        report = await orchestrator.drift(ScanTarget(BASE_URL, [("openapi.yaml", SAMPLE_OPENAPI)]))

        assert report.documented == 3
        assert sorted(report.confirmed) == ["GET /users/{id}", "POST /users"]
        assert [e.label for e in report.missing_endpoints] == ["DELETE /users/{id}"]
        assert [e.label for e in report.new_endpoints] == ["GET /users"]

    async def test_drift_without_endpoints(self, scan_config) -> None:
        client = FakeClient()
        with pytest.raises(NoEndpointsError):
            await SpecProbeOrchestrator(scan_config, client=client).drift(ScanTarget(BASE_URL, [("a.txt", "x")]))
        assert client.requests == []

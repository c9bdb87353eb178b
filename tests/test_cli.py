"""Tests for the specprobe command line."""

import json

import pytest
import yaml

from cli import main
from conftest import SAMPLE_OPENAPI, FakeClient, response
from core.http_client import AsyncHTTPClient


@pytest.fixture(autouse=True)
def workdir(tmp_path, monkeypatch):
    """Run every command from an empty directory so no stray config is picked up."""
    monkeypatch.chdir(tmp_path)
    return tmp_path


class TestInit:
    """Starter configuration."""

    def test_writes_template(self, workdir) -> None:
        assert main(["init", "-o", "specprobe.yaml"]) == 0
        tree = yaml.safe_load((workdir / "specprobe.yaml").read_text(encoding="utf-8"))
        assert tree["dast"]["max_concurrent"] == 5

    def test_refuses_to_overwrite(self, workdir, capsys) -> None:
        (workdir / "specprobe.yaml").write_text("keep: me\n", encoding="utf-8")

        assert main(["init", "-o", "specprobe.yaml"]) == 1
        assert "already exists" in capsys.readouterr().out
        assert (workdir / "specprobe.yaml").read_text(encoding="utf-8") == "keep: me\n"

        assert main(["init", "-o", "specprobe.yaml", "--force"]) == 0


class TestValidate:
    """Configuration checks."""

    def test_template_is_valid(self, capsys) -> None:
        main(["init", "-o", "specprobe.yaml"])
        assert main(["validate", "-c", "specprobe.yaml"]) == 0
        assert "Configuration is valid" in capsys.readouterr().out

    def test_invalid_values_listed(self, workdir, capsys) -> None:
        (workdir / "bad.yaml").write_text("dast:\n  max_concurrent: many\n", encoding="utf-8")
        assert main(["validate", "-c", "bad.yaml"]) == 1
        assert "dast.max_concurrent must be an integer" in capsys.readouterr().out

    def test_missing_file(self) -> None:
        assert main(["validate", "-c", "missing.yaml"]) == 2


class TestIngest:
    """Normalizing sources to one document."""

    def test_exports_openapi(self, workdir, capsys) -> None:
        (workdir / "api.yaml").write_text(SAMPLE_OPENAPI, encoding="utf-8")

        assert main(["ingest", "-s", "api.yaml", "-s", "notes.txt", "-o", "endpoints.json"]) == 0

        document = json.loads((workdir / "endpoints.json").read_text(encoding="utf-8"))
        assert document["openapi"].startswith("3.")
        assert set(document["paths"]) == {"/users/{id}", "/users"}
        out = capsys.readouterr().out
        assert "Exported 3 endpoints" in out
        assert "skipped notes.txt" in out

    def test_nothing_ingested(self, workdir) -> None:
        (workdir / "empty.json").write_text("{}", encoding="utf-8")
        assert main(["ingest", "-s", "empty.json"]) == 1


class SessionClient(FakeClient):
    """FakeClient usable where the CLI opens an AsyncHTTPClient session."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


@pytest.fixture
def live_client(monkeypatch):
    def responder(method, url, kwargs):
        if "/users" in url and method in ("GET", "POST"):
            return response(url, body='{"id": 1}')
        return response(url, body="not found", status=404)

    client = SessionClient(responder)
    monkeypatch.setattr(AsyncHTTPClient, "from_config", classmethod(lambda cls, dast, **kwargs: client))
    return client


class TestDiff:
    """Drift reports from the command line."""

    def test_text_report(self, workdir, live_client, capsys) -> None:
        (workdir / "api.yaml").write_text(SAMPLE_OPENAPI, encoding="utf-8")

        assert main(["diff", "-t", "https://api.example.com", "-s", "api.yaml", "-o", "drift.txt"]) == 0

        text = (workdir / "drift.txt").read_text(encoding="utf-8")
        assert "- DELETE /users/{id} (openapi)" in text
        assert "+ GET /users (crawling, HTTP 200)" in text
        out = capsys.readouterr().out
        assert "Missing endpoints: 1" in out
        assert "Coverage: 67%" in out
        assert live_client.requests

    def test_json_report_in_new_directory(self, workdir, live_client) -> None:
        (workdir / "api.yaml").write_text(SAMPLE_OPENAPI, encoding="utf-8")

        assert main(["diff", "-t", "https://api.example.com", "-s", "api.yaml", "-o", "reports/drift.json"]) == 0

        data = json.loads((workdir / "reports" / "drift.json").read_text(encoding="utf-8"))
        assert data["summary"]["documented"] == 3
        assert data["summary"]["new_endpoints"] == 1

    def test_format_overrides_suffix(self, workdir, live_client) -> None:
        (workdir / "api.yaml").write_text(SAMPLE_OPENAPI, encoding="utf-8")

        args = ["diff", "-t", "https://api.example.com", "-s", "api.yaml", "-o", "drift.out", "--format", "yaml"]
        assert main(args) == 0

        data = yaml.safe_load((workdir / "drift.out").read_text(encoding="utf-8"))
        assert data["target"] == "https://api.example.com"

    def test_nothing_ingested(self, workdir, live_client) -> None:
        (workdir / "empty.json").write_text("{}", encoding="utf-8")
        assert main(["diff", "-t", "https://api.example.com", "-s", "empty.json"]) == 1
        assert live_client.requests == []


def test_no_command_prints_help(capsys) -> None:
    assert main([]) == 0
    assert "usage: specprobe" in capsys.readouterr().out

"""Tests for payload generation and request building."""

import pytest

from core.models import Endpoint, Parameter, ParameterLocation
from core.payload_manager import PayloadManager
from phase1_ingestion.graphql import GraphQLIngestor
from phase4_probing.executor import build_request
from phase4_probing.payload_generator import PayloadGenerator, type_context


class TestPayloadGenerator:
    """Deterministic (endpoint, payload) generation."""

    def test_string_parameter_gets_every_string_class(self, config, search_endpoint) -> None:
        payloads = PayloadGenerator(config).generate(search_endpoint)
        classes = [p.vulnerability_class for p in payloads]

        assert classes == (
            ["injection"] * 4 + ["xss"] * 4 + ["path_traversal"] * 4 + ["command_injection"] * 4 + ["ssti"] * 4
        )
        assert [p.attack for p in payloads[:4]] == [
            "'",
            "' OR '1'='1' --",
            "'; DROP TABLE users; --",
            "' AND SLEEP(5)--",
        ]
        assert all(p.parameter == "q" and p.location == ParameterLocation.QUERY for p in payloads)

    def test_same_input_same_output(self, config, search_endpoint) -> None:
        first = PayloadGenerator(config).pairs([search_endpoint])
        second = PayloadGenerator(config).pairs([search_endpoint])
        assert first == second

    def test_numeric_context(self, config) -> None:
        param = Parameter("id", ParameterLocation.PATH, "integer", True)
        payloads = PayloadGenerator(config).for_parameter(param)
        assert type_context(param) == "numeric"
        assert [p.vulnerability_class for p in payloads] == ["injection"] * 4 + ["type_confusion"] * 4
        assert payloads[0].attack == "1 OR 1=1"

    def test_boolean_context(self, config) -> None:
        payloads = PayloadGenerator(config).for_parameter(Parameter("active", ParameterLocation.QUERY, "boolean"))
        assert [p.attack for p in payloads] == ["yes", "2", "null"]

    def test_binary_fields_skipped(self, config) -> None:
        param = Parameter("upload", ParameterLocation.BODY, "string", format="binary")
        assert PayloadGenerator(config).for_parameter(param) == []

    def test_classes_and_limit_from_config(self, make_config, search_endpoint) -> None:
        config = make_config(
            {"dast": {"vulnerability_classes": ["xss", "injection"], "max_payloads_per_class": 1}}
        )
        payloads = PayloadGenerator(config).generate(search_endpoint)
        assert [(p.vulnerability_class, p.attack) for p in payloads] == [
            ("xss", "<script>alert(1)</script>"),
            ("injection", "'"),
        ]

    def test_encodings_follow_each_template(self, make_config, search_endpoint) -> None:
        config = make_config(
            {
                "dast": {
                    "vulnerability_classes": ["injection"],
                    "max_payloads_per_class": 2,
                    "payload_encodings": ["none", "url"],
                }
            }
        )
        payloads = PayloadGenerator(config).generate(search_endpoint)
        assert [(p.attack, p.encoding) for p in payloads] == [
            ("'", "none"),
            ("%27", "url"),
            ("' OR '1'='1' --", "none"),
            ("%27%20OR%20%271%27%3D%271%27%20--", "url"),
        ]

    def test_baseline_pairs(self, config, search_endpoint) -> None:
        pairs = PayloadGenerator(config).baseline_pairs([search_endpoint])
        assert len(pairs) == 1
        assert pairs[0][1].is_baseline


class TestPayloadManager:
    """Template lookup and encodings."""

    def test_unknown_encoding(self) -> None:
        with pytest.raises(ValueError):
            PayloadManager().encode("x", "rot13")

    def test_encodings(self) -> None:
        manager = PayloadManager()
        assert manager.encode("<a>", "html_entity") == "&lt;a&gt;"
        assert manager.encode("a b", "url") == "a%20b"
        assert "unicode_escape" in PayloadManager.list_encodings()
        assert "html" not in PayloadManager.list_encodings()

    def test_benign_values(self) -> None:
        manager = PayloadManager()
        assert manager.benign_value("string") == "specprobe"
        assert manager.benign_value("integer") == "1"
        assert manager.benign_value("mystery") == "specprobe"


class TestBuildRequest:
    """Attack placement and filler values."""

    def test_attack_in_target_parameter_only(self, config) -> None:
        endpoint = Endpoint(
            "POST",
            "/users/{id}/notes",
            "openapi",
            (
                Parameter("id", ParameterLocation.PATH, "integer", True),
                Parameter("X-Tenant", ParameterLocation.HEADER),
                Parameter("session", ParameterLocation.COOKIE),
                Parameter("title", ParameterLocation.BODY),
                Parameter("count", ParameterLocation.BODY, "integer"),
            ),
        )
        payload = PayloadGenerator(config).for_parameter(endpoint.parameters[3])[0]

        request = build_request(endpoint, payload, "https://api.example.com/", {"X-Scan": "1", "X-Tenant": "default"})

        assert request.url == "https://api.example.com/users/1/notes"
        assert request.headers == {"X-Scan": "1", "X-Tenant": "specprobe", "Cookie": "session=specprobe"}
        assert request.json_body == {"title": "'", "count": 1}
        assert request.params == {}

    def test_path_attack_is_quoted(self, config) -> None:
        endpoint = Endpoint("GET", "/files/{name}", "har", (Parameter("name", ParameterLocation.PATH, required=True),))
        payload = PayloadGenerator(config).for_parameter(endpoint.parameters[0])[8]
        assert payload.attack == "../../../../etc/passwd"
        request = build_request(endpoint, payload, "http://localhost:8080")
        assert request.url == "http://localhost:8080/files/..%2F..%2F..%2F..%2Fetc%2Fpasswd"

    def test_graphql_document(self, config, sample_sdl) -> None:
        endpoint = {e.label: e for e in GraphQLIngestor(config).ingest(sample_sdl)}["POST /graphql#query.user"]
        payload = PayloadGenerator(config).for_parameter(endpoint.parameters[0])[0]
        request = build_request(endpoint, payload, "https://api.example.com")

        assert request.url == "https://api.example.com/graphql"
        assert request.json_body == {
            "query": "query Probe($id: ID!) { user(id: $id) { __typename } }",
            "variables": {"id": "'"},
        }

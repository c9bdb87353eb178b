"""Tests for the shared data model."""

import pytest

from core.exceptions import InvalidProbeTransition
from core.models import (
    AnnotationStore,
    Endpoint,
    Parameter,
    ParameterLocation,
    Payload,
    Probe,
    ProbeState,
    RequestDescriptor,
)


def _probe(state=ProbeState.PENDING):
    endpoint = Endpoint("GET", "/a", "openapi")
    payload = Payload("injection", ParameterLocation.QUERY, "q", "'")
    return Probe(1, endpoint, payload, RequestDescriptor("GET", "https://x/a"), state=state)


class TestAnnotationStore:
    """Append-only metadata."""

    def test_first_write_wins(self) -> None:
        store = AnnotationStore()
        assert store.annotate("semantic_analysis", {"risk_level": "low"}) is True
        assert store.annotate("semantic_analysis", {"risk_level": "high"}) is False
        assert store["semantic_analysis"] == {"risk_level": "low"}

    def test_to_dict_is_a_copy(self) -> None:
        store = AnnotationStore({"k": {"nested": [1]}})
        snapshot = store.to_dict()
        snapshot["k"]["nested"].append(2)
        assert store["k"] == {"nested": [1]}
        assert "k" in store
        assert len(store) == 1


class TestEndpoint:
    """Identity and equality."""

    def test_method_is_uppercased(self) -> None:
        assert Endpoint("get", "/a", "har").method == "GET"

    def test_equality_ignores_descriptive_fields_and_metadata(self) -> None:
        params = (Parameter("id", ParameterLocation.PATH, "integer", True),)
        a = Endpoint("GET", "/u/{id}", "openapi", params, summary="one")
        b = Endpoint("GET", "/u/{id}", "openapi", params, summary="two")
        b.metadata.annotate("x", 1)
        assert a == b
        assert hash(a) == hash(b)

    def test_parameter_order_matters(self) -> None:
        p1 = Parameter("a", ParameterLocation.QUERY)
        p2 = Parameter("b", ParameterLocation.QUERY)
        assert Endpoint("GET", "/a", "har", (p1, p2)) != Endpoint("GET", "/a", "har", (p2, p1))

    def test_dict_round_trip(self) -> None:
        endpoint = Endpoint(
            "POST",
            "/users",
            "postman",
            (Parameter("email", ParameterLocation.BODY, "string", True, "email"),),
            tags=("user",),
        )
        endpoint.metadata.annotate("semantic_analysis", {"risk_level": "low"})
        restored = Endpoint.from_dict(endpoint.to_dict())
        assert restored == endpoint
        assert restored.metadata["semantic_analysis"] == {"risk_level": "low"}

    def test_documented_reads_matcher_annotation(self) -> None:
        endpoint = Endpoint("GET", "/a", "openapi")
        assert endpoint.documented is False
        endpoint.metadata.annotate("documentation", {"documented": True})
        assert endpoint.documented is True


class TestProbeStateMachine:
    """Pending -> InFlight -> one terminal state, never backwards."""

    @pytest.mark.parametrize("terminal", [ProbeState.COMPLETED, ProbeState.FAILED, ProbeState.TIMED_OUT])
    def test_forward_path(self, terminal) -> None:
        probe = _probe()
        probe.transition(ProbeState.IN_FLIGHT)
        probe.transition(terminal)
        assert probe.is_terminal

    def test_cannot_skip_in_flight(self) -> None:
        with pytest.raises(InvalidProbeTransition):
            _probe().transition(ProbeState.COMPLETED)

    def test_terminal_is_final(self) -> None:
        probe = _probe()
        probe.transition(ProbeState.IN_FLIGHT)
        probe.transition(ProbeState.FAILED)
        with pytest.raises(InvalidProbeTransition):
            probe.transition(ProbeState.COMPLETED)
        with pytest.raises(InvalidProbeTransition):
            probe.transition(ProbeState.IN_FLIGHT)

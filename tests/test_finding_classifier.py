"""Tests for turning terminal probes into findings.

Tests cover:
- Reflection, error fingerprint, latency and server error signals
- Signal combination into one confidence
- Possible findings for timeouts and dropped connections
- Probes that must not produce findings
- Sensitive data in baselines and unthrottled request bursts
"""

import pytest

from conftest import response
from core.http_client import HTTPResponse
from core.models import Probe, ProbeState, RequestDescriptor
from phase4_probing.finding_classifier import FindingClassifier, Signal, combined_confidence
from phase4_probing.payload_generator import PayloadGenerator

URL = "https://api.example.com/search"
BASELINE_BODY = '{"results": []}'


@pytest.fixture
def generator(config):
    return PayloadGenerator(config)


@pytest.fixture
def payloads(generator, search_endpoint):
    """Payloads for `q`, keyed by attack string."""
    return {p.attack: p for p in generator.generate(search_endpoint)}


@pytest.fixture
def classifier(config):
    return FindingClassifier(config)


_ids = iter(range(1, 10_000))


def _probe(endpoint, payload, state=ProbeState.COMPLETED, body="", status=200, elapsed=0.1, error=None):
    probe = Probe(next(_ids), endpoint, payload, RequestDescriptor(endpoint.method, URL))
    probe.transition(ProbeState.IN_FLIGHT)
    if state == ProbeState.COMPLETED:
        probe.response = response(URL, body=body, status=status, elapsed=elapsed)
        probe.elapsed = elapsed
    probe.error = error
    probe.transition(state)
    return probe


@pytest.fixture
def with_baseline(classifier, generator, search_endpoint):
    """Record a completed baseline for the search endpoint."""

    def _record(state=ProbeState.COMPLETED, body=BASELINE_BODY, status=200, elapsed=0.1):
        baseline = _probe(search_endpoint, generator.baseline(search_endpoint), state, body, status, elapsed)
        classifier.set_baseline(search_endpoint, baseline)
        return baseline

    return _record


class TestCompletedProbes:
    """Signals found in responses."""

    def test_reflected_sql_payload(self, classifier, with_baseline, search_endpoint, payloads) -> None:
        with_baseline()
        attack = "'; DROP TABLE users; --"
        probe = _probe(search_endpoint, payloads[attack], body=f'{{"error": "no results for {attack}"}}')

        finding = classifier.classify(probe)

        assert finding is not None
        assert finding.vulnerability_class == "injection"
        assert finding.signatures == ("reflection",)
        assert finding.confidence == pytest.approx(0.6)
        assert finding.evidence.splitlines()[0] == "Payload \"'; DROP TABLE users; --\" in query parameter 'q'"
        assert "DROP TABLE" in finding.evidence
        assert finding.severity.value == "high"
        assert finding.title == "SQL Injection in 'q'"
        assert finding.cwe_id == "CWE-89"
        assert finding.confirmed

    def test_signals_combine(self, classifier, with_baseline, search_endpoint, payloads) -> None:
        with_baseline()
        attack = "' OR '1'='1' --"
        body = f"You have an error in your SQL syntax near '{attack}' at line 1"
        finding = classifier.classify(_probe(search_endpoint, payloads[attack], body=body, status=500))

        assert finding.signatures == ("error_fingerprint", "reflection", "server_error")
        assert "(generic)" in finding.evidence
        assert finding.confidence == pytest.approx(1.0)

    def test_short_attack_echoed_in_validation_error(
        self, classifier, with_baseline, search_endpoint, payloads
    ) -> None:
        with_baseline()
        body = '{"error": "parameter \'q\' is invalid"}'
        probe = _probe(search_endpoint, payloads["'"], body=body, status=400)
        assert classifier.classify(probe) is None

    def test_short_attack_still_reports_error_fingerprint(
        self, classifier, with_baseline, search_endpoint, payloads
    ) -> None:
        with_baseline()
        body = "unclosed quotation mark after the character string '''"
        finding = classifier.classify(_probe(search_endpoint, payloads["'"], body=body, status=500))
        assert finding.signatures == ("error_fingerprint", "server_error")
        assert finding.confidence == pytest.approx(0.9)

    def test_error_already_in_baseline_ignored(self, classifier, with_baseline, search_endpoint, payloads) -> None:
        body = "SQL syntax error logged"
        with_baseline(body=body)
        assert classifier.classify(_probe(search_endpoint, payloads["' OR '1'='1' --"], body=body)) is None

    def test_latency(self, classifier, with_baseline, search_endpoint, payloads) -> None:
        with_baseline(elapsed=0.1)
        probe = _probe(search_endpoint, payloads["' AND SLEEP(5)--"], body=BASELINE_BODY, elapsed=5.2)

        finding = classifier.classify(probe)

        assert finding.signatures == ("latency",)
        assert finding.confidence == pytest.approx(0.7)

    def test_fast_time_payload_is_not_a_finding(self, classifier, with_baseline, search_endpoint, payloads) -> None:
        with_baseline(elapsed=0.1)
        probe = _probe(search_endpoint, payloads["' AND SLEEP(5)--"], body=BASELINE_BODY, elapsed=0.3)
        assert classifier.classify(probe) is None

    def test_xss_needs_raw_reflection(self, classifier, with_baseline, search_endpoint, payloads) -> None:
        with_baseline()
        attack = "<script>alert(1)</script>"

        raw = classifier.classify(_probe(search_endpoint, payloads[attack], body=f"<p>{attack}</p>"))
        escaped = classifier.classify(
            _probe(search_endpoint, payloads[attack], body="<p>&lt;script&gt;alert(1)&lt;/script&gt;</p>")
        )

        assert raw.signatures == ("payload_signature", "reflection")
        assert raw.severity.value == "medium"
        assert escaped is None

    def test_path_traversal_signature(self, classifier, with_baseline, search_endpoint, payloads) -> None:
        with_baseline()
        body = "root:x:0:0:root:/root:/bin/bash\ndaemon:x:1:1::/usr/sbin:/usr/sbin/nologin"
        finding = classifier.classify(_probe(search_endpoint, payloads["../../../../etc/passwd"], body=body))
        assert finding.vulnerability_class == "path_traversal"
        assert finding.signatures[0] == "payload_signature"
        assert finding.cwe_id == "CWE-22"

    def test_server_error_alone(self, classifier, with_baseline, search_endpoint, payloads) -> None:
        with_baseline()
        finding = classifier.classify(_probe(search_endpoint, payloads["{{7*7}}"], body="Internal error", status=500))
        assert finding.signatures == ("server_error",)
        assert finding.confidence == pytest.approx(0.4)

    def test_nothing_to_report(self, classifier, with_baseline, search_endpoint, payloads) -> None:
        with_baseline()
        assert classifier.classify(_probe(search_endpoint, payloads["{{7*7}}"], body=BASELINE_BODY)) is None


class TestUnansweredProbes:
    """Timeouts and dropped connections."""

    def test_timeout_on_blocking_class(self, classifier, with_baseline, search_endpoint, payloads) -> None:
        with_baseline()
        probe = _probe(search_endpoint, payloads["'"], ProbeState.TIMED_OUT, error="Request exceeded timeout of 30.000s")

        finding = classifier.classify(probe)

        assert finding.title.startswith("Possible")
        assert finding.confidence == pytest.approx(0.3)
        assert finding.probe_state == "timed_out"
        assert not finding.confirmed
        assert "answered HTTP 200" in finding.evidence

    def test_timeout_when_baseline_also_timed_out(self, classifier, with_baseline, search_endpoint, payloads) -> None:
        with_baseline(state=ProbeState.TIMED_OUT)
        assert classifier.classify(_probe(search_endpoint, payloads["'"], ProbeState.TIMED_OUT)) is None

    def test_timeout_on_non_blocking_class(self, classifier, with_baseline, search_endpoint, payloads) -> None:
        with_baseline()
        probe = _probe(search_endpoint, payloads["<script>alert(1)</script>"], ProbeState.TIMED_OUT)
        assert classifier.classify(probe) is None

    def test_dropped_connection(self, classifier, with_baseline, search_endpoint, payloads) -> None:
        with_baseline()
        probe = _probe(search_endpoint, payloads["; id"], ProbeState.FAILED, error="connection reset")

        finding = classifier.classify(probe)

        assert finding.signatures == ("connection_drop",)
        assert finding.severity.value == "critical"
        assert "connection reset" in finding.evidence

    def test_dropped_connection_without_baseline(self, classifier, search_endpoint, payloads) -> None:
        probe = _probe(search_endpoint, payloads["; id"], ProbeState.FAILED, error="connection reset")
        assert classifier.classify(probe) is None


class TestClassifyGuards:
    """Inputs that never produce findings."""

    def test_baseline_probe(self, classifier, generator, search_endpoint) -> None:
        probe = _probe(search_endpoint, generator.baseline(search_endpoint), body="anything")
        assert classifier.classify(probe) is None

    def test_non_terminal_probe(self, classifier, search_endpoint, payloads) -> None:
        probe = Probe(1, search_endpoint, payloads["'"], RequestDescriptor("GET", URL))
        with pytest.raises(ValueError):
            classifier.classify(probe)

    def test_combined_confidence(self) -> None:
        assert combined_confidence([]) == 0.0
        assert combined_confidence([Signal("reflection", "")]) == pytest.approx(0.6)
        assert combined_confidence([Signal("payload_signature", ""), Signal("error_fingerprint", "")]) == pytest.approx(1.0)


class TestEndpointChecks:
    """Sensitive values in baselines and unthrottled bursts."""

    def test_exposed_credential_and_email(self, classifier, with_baseline) -> None:
        baseline = with_baseline(body='{"owner": "ops@example.com", "api_key": "sk_live_abcdef123456"}')

        finding = classifier.classify_exposure(baseline)

        assert finding.vulnerability_class == "sensitive_data_exposure"
        assert finding.signatures == ("credential", "email")
        assert finding.confidence == pytest.approx(0.8)
        assert finding.cwe_id == "CWE-200"
        assert finding.severity.value == "medium"
        assert finding.title == "Sensitive Data Exposure in GET /search response"
        assert "api_key=sk****************56" in finding.evidence
        assert "sk_live_abcdef123456" not in finding.evidence

    def test_card_number_needs_checksum(self, classifier, with_baseline) -> None:
        assert classifier.classify_exposure(with_baseline(body='{"ref": "1234 5678 9012 3456"}')) is None
        finding = classifier.classify_exposure(with_baseline(body='{"card": "4111 1111 1111 1111"}'))
        assert finding.signatures == ("card_number",)

    def test_clean_or_unanswered_baseline(self, classifier, with_baseline) -> None:
        assert classifier.classify_exposure(with_baseline()) is None
        assert classifier.classify_exposure(with_baseline(state=ProbeState.TIMED_OUT)) is None

    def test_unthrottled_burst(self, classifier, with_baseline) -> None:
        baseline = with_baseline()
        burst = [response(URL, body=BASELINE_BODY) for _ in range(10)]

        finding = classifier.classify_rate_limit(baseline, burst)

        assert finding.vulnerability_class == "missing_rate_limit"
        assert finding.severity.value == "low"
        assert finding.cwe_id == "CWE-770"
        assert finding.confidence == pytest.approx(0.5)
        assert "HTTP 200 x10" in finding.evidence

    def test_throttled_burst(self, classifier, with_baseline) -> None:
        baseline = with_baseline()
        burst = [response(URL, body=BASELINE_BODY) for _ in range(9)] + [response(URL, status=429)]
        assert classifier.classify_rate_limit(baseline, burst) is None

    def test_rate_limit_headers(self, classifier, with_baseline) -> None:
        baseline = with_baseline()
        limited = HTTPResponse(url=URL, status=200, headers={"X-RateLimit-Limit": "100"}, body="", elapsed=0.01)
        assert classifier.classify_rate_limit(baseline, [limited]) is None

    def test_no_burst_responses(self, classifier, with_baseline) -> None:
        assert classifier.classify_rate_limit(with_baseline(), []) is None

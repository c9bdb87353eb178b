"""Tests for the probe executor.

Tests cover:
- The concurrency bound
- Baseline round before attack round
- Timeout and transport failure mapped to probe states
- Stop requests dropping pending work
- Baseline exposure checks and the rate limit burst
"""

import pytest

from conftest import FakeClient, response
from core.exceptions import ProbeNetworkError, ProbeTimeoutError
from core.models import ProbeState
from phase4_probing.executor import ProbeExecutor
from phase4_probing.finding_classifier import FindingClassifier
from phase4_probing.payload_generator import PayloadGenerator

BASE_URL = "https://api.example.com"


@pytest.fixture
def probe_config(make_config):
    return make_config(
        {"dast": {"max_concurrent": 2, "vulnerability_classes": ["injection"], "max_payloads_per_class": 5}}
    )


@pytest.fixture
def pairs(probe_config, search_endpoint):
    return PayloadGenerator(probe_config).pairs([search_endpoint])


def _executor(config, client):
    return ProbeExecutor(config, client, FindingClassifier(config))


class TestConcurrency:
    """At most max_concurrent probes in flight."""

    async def test_bound_is_respected(self, probe_config, pairs) -> None:
        client = FakeClient(delay=0.05)
        run = await _executor(probe_config, client).run(pairs, BASE_URL, include_baseline=False)

        assert len(pairs) == 5
        assert client.peak == 2
        assert run.stats["peak_in_flight"] <= 2
        assert run.stats["submitted"] == 5
        assert run.stats["completed"] == 5
        assert all(p.state == ProbeState.COMPLETED for p in run.probes)
        assert run.findings == []

    async def test_single_worker_is_sequential(self, make_config, search_endpoint) -> None:
        config = make_config({"dast": {"max_concurrent": 1, "vulnerability_classes": ["injection"]}})
        client = FakeClient(delay=0.01)
        await _executor(config, client).run(PayloadGenerator(config).pairs([search_endpoint]), BASE_URL)
        assert client.peak == 1


class TestRounds:
    """Baselines go first and use benign values."""

    async def test_baseline_round_first(self, probe_config, pairs) -> None:
        client = FakeClient()
        run = await _executor(probe_config, client).run(pairs, BASE_URL)

        assert client.requests[0]["params"] == {"q": "specprobe"}
        assert client.requests[0]["url"] == "https://api.example.com/search"
        assert run.stats["baseline"] == 1
        assert run.stats["submitted"] == 6
        assert len(run.attack_probes) == 5
        assert run.probes[0].payload.is_baseline


class TestTerminalStates:
    """Transport outcomes map to probe states."""

    async def test_timeout_and_failure(self, probe_config, pairs) -> None:
        def responder(method, url, kwargs):
            q = (kwargs.get("params") or {}).get("q")
            if q == "'":
                return ProbeTimeoutError(30.0)
            if q == "' OR '1'='1' --":
                return ProbeNetworkError("connection reset", attempts=4)
            return response(url, body='{"results": []}')

        run = await _executor(probe_config, FakeClient(responder=responder)).run(pairs, BASE_URL)
        by_attack = {p.payload.attack: p for p in run.attack_probes}

        assert by_attack["'"].state == ProbeState.TIMED_OUT
        assert by_attack["' OR '1'='1' --"].state == ProbeState.FAILED
        assert by_attack["' OR '1'='1' --"].attempts == 4
        assert by_attack["'; DROP TABLE users; --"].state == ProbeState.COMPLETED
        assert run.stats["timed_out"] == 1
        assert run.stats["failed"] == 1
        assert all(p.is_terminal for p in run.probes)

        assert sorted(f.probe_state for f in run.findings) == ["failed", "timed_out"]
        assert all(f.title.startswith("Possible") for f in run.findings)
        assert run.stats["findings"] == 2

    async def test_unexpected_client_error_fails_probe(self, probe_config, pairs) -> None:
        client = FakeClient(responder=lambda method, url, kwargs: RuntimeError("boom"))
        run = await _executor(probe_config, client).run(pairs, BASE_URL, include_baseline=False)
        assert run.stats["failed"] == 5
        assert all(p.state == ProbeState.FAILED for p in run.probes)
        assert "RuntimeError" in run.probes[0].error


class TestStop:
    """Stopping drops pending pairs and lets in-flight probes finish."""

    async def test_stop_mid_run(self, make_config, pairs) -> None:
        config = make_config({"dast": {"max_concurrent": 1}})
        executor = None

        def responder(method, url, kwargs):
            executor.stop()
            return None

        executor = _executor(config, FakeClient(responder=responder))
        run = await executor.run(pairs, BASE_URL, include_baseline=False)

        assert run.stats["completed"] == 1
        assert run.stats["dropped"] == 4
        assert len(run.probes) == 1
        assert run.probes[0].state == ProbeState.COMPLETED
        assert executor.stopped

    async def test_stop_before_run(self, probe_config, pairs) -> None:
        client = FakeClient()
        executor = _executor(probe_config, client)
        executor.stop()
        run = await executor.run(pairs, BASE_URL)

        assert client.requests == []
        assert run.probes == []
        assert run.stats["dropped"] == 6


class TestEndpointChecks:
    """Checks that run on baselines rather than attack payloads."""

    async def test_exposure_reported_once_per_endpoint(self, probe_config, pairs) -> None:
        client = FakeClient(responder=lambda method, url, kwargs: response(url, body='{"owner": "ops@example.com"}'))
        run = await _executor(probe_config, client).run(pairs, BASE_URL)

        assert [f.vulnerability_class for f in run.findings] == ["sensitive_data_exposure"]
        assert run.findings[0].payload.is_baseline

    async def test_exposure_check_disabled(self, make_config, search_endpoint) -> None:
        config = make_config({"dast": {"vulnerability_classes": ["injection"], "response_checks": []}})
        client = FakeClient(responder=lambda method, url, kwargs: response(url, body='{"owner": "ops@example.com"}'))
        run = await _executor(config, client).run(PayloadGenerator(config).pairs([search_endpoint]), BASE_URL)
        assert run.findings == []

    async def test_rate_limit_burst(self, make_config, search_endpoint) -> None:
        config = make_config(
            {
                "dast": {
                    "max_concurrent": 2,
                    "vulnerability_classes": ["injection"],
                    "max_payloads_per_class": 5,
                    "response_checks": ["rate_limit"],
                    "rate_limit_burst": 4,
                }
            }
        )
        client = FakeClient(delay=0.01)
        run = await _executor(config, client).run(PayloadGenerator(config).pairs([search_endpoint]), BASE_URL)

        assert run.stats["rate_limit_requests"] == 4
        assert len(client.requests) == 1 + 5 + 4
        assert client.requests[-1]["params"] == {"q": "specprobe"}
        assert client.peak <= 2
        assert [f.vulnerability_class for f in run.findings] == ["missing_rate_limit"]

    async def test_rate_limit_respected(self, make_config, search_endpoint) -> None:
        config = make_config(
            {"dast": {"vulnerability_classes": ["injection"], "response_checks": ["rate_limit"], "rate_limit_burst": 3}}
        )
        calls = []

        def responder(method, url, kwargs):
            calls.append(url)
            return response(url, status=429 if len(calls) > 6 else 200)

        run = await _executor(config, FakeClient(responder=responder)).run(
            PayloadGenerator(config).pairs([search_endpoint]), BASE_URL
        )
        assert run.findings == []

    async def test_rate_limit_skipped_after_stop(self, make_config, search_endpoint) -> None:
        config = make_config(
            {"dast": {"max_concurrent": 1, "vulnerability_classes": ["injection"], "response_checks": ["rate_limit"]}}
        )
        executor = None

        def responder(method, url, kwargs):
            executor.stop()
            return None

        executor = _executor(config, FakeClient(responder=responder))
        run = await executor.run(PayloadGenerator(config).pairs([search_endpoint]), BASE_URL)
        assert run.stats["rate_limit_requests"] == 0
        assert run.findings == []

"""
Finding classifier: turns terminal probes into findings.

A completed probe is checked for signals, each with a fixed weight:

    payload_signature   0.9   pattern expected for this exact template
    error_fingerprint   0.8   class-wide error text absent from the baseline
    latency             0.7   time-based payload slower than the baseline
    reflection          0.6   attack of six or more characters echoed back (injection, xss)
    server_error        0.4   5xx where the baseline was not

Confidence is the strongest weight plus 0.1 per extra signal, capped at 1.
A finding needs at least one signal. Timed-out and failed probes of
blocking-style classes become low-confidence "possible" findings.

Two checks work per endpoint instead of per payload: sensitive values in
the baseline response (CWE-200), and a burst of identical requests that is
never throttled (CWE-770).
"""

from collections import Counter
from typing import Dict, List, NamedTuple, Optional, Tuple

from core.config import ScanConfig
from core.http_client import HTTPResponse
from core.models import Endpoint, Probe, ProbeState
from core.response_analyzer import ResponseAnalyzer, SignatureMatch
from core.result_manager import Finding, severity_for
from core.utils import excerpt, setup_logging

logger = setup_logging("finding_classifier")

SIGNAL_WEIGHTS = {
    "payload_signature": 0.9,
    "error_fingerprint": 0.8,
    "latency": 0.7,
    "reflection": 0.6,
    "server_error": 0.4,
}
EXTRA_SIGNAL_BONUS = 0.1
TIMEOUT_CONFIDENCE = 0.3
CONNECTION_DROP_CONFIDENCE = 0.25
RATE_LIMIT_CONFIDENCE = 0.5

# Exposure confidence by the kind of value found
SENSITIVE_DATA_WEIGHTS = {"credential": 0.7, "card_number": 0.6, "ssn": 0.5, "email": 0.3}

EXPOSURE_CLASS = "sensitive_data_exposure"
RATE_LIMIT_CLASS = "missing_rate_limit"

# Classes where an echoed attack string is itself a signal
REFLECTIVE_CLASSES = ("injection", "xss")
# Shorter attacks (a lone quote, `1'`) echo back in ordinary validation messages
MIN_REFLECTION_LENGTH = 6
# Classes whose template signatures are the attack itself
SELF_CONFIRMING_CLASSES = ("xss",)

CWE_IDS = {
    "injection": "CWE-89",
    "xss": "CWE-79",
    "path_traversal": "CWE-22",
    "command_injection": "CWE-78",
    "ssti": "CWE-1336",
    "type_confusion": "CWE-843",
    EXPOSURE_CLASS: "CWE-200",
    RATE_LIMIT_CLASS: "CWE-770",
}

CLASS_TITLES = {
    "injection": "SQL Injection",
    "xss": "Cross-Site Scripting",
    "path_traversal": "Path Traversal",
    "command_injection": "OS Command Injection",
    "ssti": "Server-Side Template Injection",
    "type_confusion": "Type Confusion",
    EXPOSURE_CLASS: "Sensitive Data Exposure",
    RATE_LIMIT_CLASS: "Missing Rate Limiting",
}


class Signal(NamedTuple):
    kind: str
    description: str
    match: Optional[SignatureMatch] = None

    @property
    def weight(self) -> float:
        return SIGNAL_WEIGHTS[self.kind]


def combined_confidence(signals: List[Signal]) -> float:
    if not signals:
        return 0.0
    strongest = max(s.weight for s in signals)
    return min(1.0, strongest + EXTRA_SIGNAL_BONUS * (len(signals) - 1))


class FindingClassifier:
    """
    Classifies probes against the baseline recorded for their endpoint.

    Usage:
        classifier = FindingClassifier(config)
        classifier.set_baseline(endpoint, baseline_probe)
        finding = classifier.classify(probe)
    """

    def __init__(self, config: Optional[ScanConfig] = None, analyzer: Optional[ResponseAnalyzer] = None):
        self.config = config or ScanConfig()
        self.analyzer = analyzer or ResponseAnalyzer()
        self.severity_table = dict(self.config.dast.severity_table)
        self.blocking_classes = tuple(self.config.dast.blocking_classes)
        self.latency_threshold = self.config.dast.latency_threshold / 1000.0
        self._baselines: Dict[Tuple[str, str, str], Probe] = {}

    def set_baseline(self, endpoint: Endpoint, probe: Probe):
        self._baselines[endpoint.key] = probe

    def baseline_for(self, endpoint: Endpoint) -> Optional[Probe]:
        return self._baselines.get(endpoint.key)

    def classify(self, probe: Probe) -> Optional[Finding]:
        """At most one finding per probe; None when nothing matched."""
        if probe.payload.is_baseline:
            return None
        if not probe.is_terminal:
            raise ValueError(f"Probe {probe.probe_id} is still {probe.state.value}")

        if probe.state == ProbeState.COMPLETED:
            return self._classify_response(probe)
        if probe.state == ProbeState.TIMED_OUT:
            return self._classify_timeout(probe)
        return self._classify_failure(probe)

    def _baseline_response(self, probe: Probe):
        baseline = self.baseline_for(probe.endpoint)
        if baseline is not None and baseline.state == ProbeState.COMPLETED:
            return baseline.response
        return None

    def _classify_response(self, probe: Probe) -> Optional[Finding]:
        payload = probe.payload
        vuln_class = payload.vulnerability_class
        response = probe.response
        body = response.body or ""
        baseline = self._baseline_response(probe)
        baseline_body = baseline.body if baseline is not None else ""

        signals: List[Signal] = []

        ignore = "" if vuln_class in SELF_CONFIRMING_CLASSES else payload.attack
        match = self.analyzer.find_patterns(body, payload.signatures, "payload_signature", baseline_body, ignore)
        if match:
            signals.append(Signal("payload_signature", f"response matches expected pattern {match.detail!r}", match))

        match = self.analyzer.detect_error_fingerprint(body, vuln_class, baseline_body, payload.attack)
        if match:
            databases = self.analyzer.detect_sql_errors(body) if vuln_class == "injection" else []
            engine = f" ({', '.join(databases)})" if databases else ""
            signals.append(
                Signal("error_fingerprint", f"error fingerprint {match.detail!r}{engine} not present in baseline", match)
            )

        if payload.technique == "time" and baseline is not None:
            delta = response.elapsed - baseline.elapsed
            if delta >= self.latency_threshold:
                signals.append(
                    Signal(
                        "latency",
                        f"response took {response.elapsed:.2f}s against a {baseline.elapsed:.2f}s baseline",
                    )
                )

        if self._reflection_applies(payload.attack, vuln_class, baseline_body):
            match = self.analyzer.reflection_match(body, payload.attack, raw_only=vuln_class == "xss")
            if match:
                signals.append(Signal("reflection", f"attack string reflected ({match.detail})", match))

        if response.status >= 500 and baseline is not None and baseline.status < 500:
            signals.append(
                Signal("server_error", f"HTTP {response.status} against a baseline of HTTP {baseline.status}")
            )

        if not signals:
            return None

        primary = max(signals, key=lambda s: s.weight)
        evidence = "\n".join(
            [self._payload_line(probe)]
            + [f"- {s.description}" for s in signals]
            + [f"Response: {self.analyzer.snippet(body, primary.match)}"]
        )
        return self._finding(probe, evidence, combined_confidence(signals), [s.kind for s in signals])

    def _reflection_applies(self, attack: str, vuln_class: str, baseline_body: str) -> bool:
        if vuln_class not in REFLECTIVE_CLASSES or attack in baseline_body:
            return False
        return len(attack.strip()) >= MIN_REFLECTION_LENGTH

    def _classify_timeout(self, probe: Probe) -> Optional[Finding]:
        vuln_class = probe.payload.vulnerability_class
        if vuln_class not in self.blocking_classes:
            return None
        baseline = self.baseline_for(probe.endpoint)
        if baseline is not None and baseline.state == ProbeState.TIMED_OUT:
            logger.debug(f"{probe.endpoint.label}: baseline also timed out, not reporting")
            return None

        evidence = "\n".join(
            [
                self._payload_line(probe),
                f"- no response: {probe.error or 'timed out'}",
                f"- baseline {self._baseline_summary(baseline)}",
            ]
        )
        return self._finding(probe, evidence, TIMEOUT_CONFIDENCE, ["timeout"], possible=True)

    def _classify_failure(self, probe: Probe) -> Optional[Finding]:
        vuln_class = probe.payload.vulnerability_class
        if vuln_class not in self.blocking_classes or self._baseline_response(probe) is None:
            return None

        evidence = "\n".join(
            [
                self._payload_line(probe),
                f"- connection dropped: {probe.error or 'unknown error'}",
                f"- baseline {self._baseline_summary(self.baseline_for(probe.endpoint))}",
            ]
        )
        return self._finding(probe, evidence, CONNECTION_DROP_CONFIDENCE, ["connection_drop"], possible=True)

    def classify_exposure(self, probe: Probe) -> Optional[Finding]:
        """Sensitive values in a completed baseline response."""
        if probe.state != ProbeState.COMPLETED:
            return None
        body = probe.response.body or ""
        matches = self.analyzer.detect_sensitive_data(body)
        if not matches:
            return None

        weights = [SENSITIVE_DATA_WEIGHTS[m.kind] for m in matches]
        confidence = min(1.0, max(weights) + EXTRA_SIGNAL_BONUS * (len(matches) - 1))
        evidence = "\n".join(
            [f"Unmodified request to {probe.endpoint.label}"]
            + [f"- {m.kind.replace('_', ' ')} in response: {m.detail}" for m in matches]
        )
        return self._finding(
            probe,
            evidence,
            confidence,
            [m.kind for m in matches],
            vuln_class=EXPOSURE_CLASS,
            title=f"Sensitive Data Exposure in {probe.endpoint.label} response",
        )

    def classify_rate_limit(self, baseline: Probe, responses: List[HTTPResponse]) -> Optional[Finding]:
        """
        A burst of identical requests that was never throttled.

        Needs a completed baseline and at least one burst response. Any HTTP
        429 or rate limit header on the baseline or the burst clears the
        endpoint.
        """
        if baseline.state != ProbeState.COMPLETED or not responses:
            return None
        if any(r.status == 429 for r in responses):
            return None
        if any(self.analyzer.has_rate_limit_headers(r.headers) for r in [baseline.response] + list(responses)):
            return None

        statuses = Counter(r.status for r in responses)
        evidence = "\n".join(
            [
                f"{len(responses)} identical requests to {baseline.endpoint.label} in one burst",
                "- statuses: " + ", ".join(f"HTTP {s} x{n}" for s, n in sorted(statuses.items())),
                "- no HTTP 429 and no rate limit headers",
            ]
        )
        return self._finding(
            baseline,
            evidence,
            RATE_LIMIT_CONFIDENCE,
            ["no_throttling"],
            vuln_class=RATE_LIMIT_CLASS,
            title=f"Missing Rate Limiting on {baseline.endpoint.label}",
        )

    def _payload_line(self, probe: Probe) -> str:
        payload = probe.payload
        return f"Payload {payload.attack!r} in {payload.location.value} parameter '{payload.parameter}'"

    def _baseline_summary(self, baseline: Optional[Probe]) -> str:
        if baseline is None:
            return "not available"
        if baseline.state == ProbeState.COMPLETED:
            return f"answered HTTP {baseline.response.status} in {baseline.response.elapsed:.2f}s"
        return baseline.state.value

    def _finding(
        self,
        probe: Probe,
        evidence: str,
        confidence: float,
        signatures: List[str],
        possible: bool = False,
        vuln_class: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Finding:
        vuln_class = vuln_class or probe.payload.vulnerability_class
        if title is None:
            title = f"{CLASS_TITLES.get(vuln_class, vuln_class)} in '{probe.payload.parameter}'"
        if possible:
            title = f"Possible {title}"

        finding = Finding(
            endpoint=probe.endpoint,
            payload=probe.payload,
            vulnerability_class=vuln_class,
            severity=severity_for(vuln_class, self.severity_table),
            evidence=evidence,
            confidence=round(confidence, 3),
            title=title,
            url=probe.request.url,
            probe_state=probe.state.value,
            signatures=tuple(signatures),
            cwe_id=CWE_IDS.get(vuln_class),
        )
        attack = f": {excerpt(probe.payload.attack, 60)}" if probe.payload.attack else ""
        logger.info(
            f"[{finding.severity.value.upper()}] {title} at {probe.endpoint.label} "
            f"(confidence {finding.confidence:.2f}){attack}"
        )
        return finding

"""
Probe executor: bounded-concurrency request execution.

Work runs in two rounds, baselines first and then attacks. Each round is an
asyncio.Queue drained by exactly `dast.max_concurrent` workers. A worker
takes one (endpoint, payload) pair, builds and sends the request, moves the
probe to a terminal state and classifies it before taking the next pair.
When `rate_limit` is among `dast.response_checks`, a third round replays
each completed baseline request in a burst through the same worker bound.
"""

import asyncio
import itertools
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import quote

from core.config import ScanConfig
from core.exceptions import ProbeNetworkError, ProbeTimeoutError
from core.http_client import HTTPResponse
from core.models import Endpoint, ParameterLocation, Payload, Probe, ProbeState, RequestDescriptor
from core.payload_manager import PayloadManager
from core.result_manager import Finding
from core.utils import join_url, setup_logging
from phase1_ingestion.graphql import build_graphql_document, graphql_operation

from .finding_classifier import FindingClassifier
from .payload_generator import PayloadGenerator

logger = setup_logging("probe_executor")

Pair = Tuple[Endpoint, Payload]


def _typed_value(param_type: str, value: str) -> Any:
    """Benign values go into JSON bodies with their declared type."""
    if param_type == "integer":
        return int(value)
    if param_type == "number":
        return float(value)
    if param_type == "boolean":
        return value == "true"
    return value


def build_request(
    endpoint: Endpoint,
    payload: Payload,
    base_url: str,
    custom_headers: Optional[Dict[str, str]] = None,
    manager: Optional[PayloadManager] = None,
) -> RequestDescriptor:
    """
    Request for one probe.

    The targeted parameter carries the attack string; every other parameter
    gets a harmless value for its type. Header precedence, lowest first:
    client defaults, custom headers, header parameters.
    """
    manager = manager or PayloadManager()
    path = endpoint.path.split("#", 1)[0] or "/"
    headers = dict(custom_headers or {})
    params: Dict[str, str] = {}
    cookies: List[str] = []
    body: Dict[str, Any] = {}

    for param in endpoint.parameters:
        targeted = param.name == payload.parameter and param.location == payload.location
        value = payload.attack if targeted else manager.benign_value(param.param_type)

        if param.location == ParameterLocation.PATH:
            path = path.replace("{" + param.name + "}", quote(value, safe=""))
        elif param.location == ParameterLocation.QUERY:
            params[param.name] = value
        elif param.location == ParameterLocation.HEADER:
            headers[param.name] = value
        elif param.location == ParameterLocation.COOKIE:
            cookies.append(f"{param.name}={quote(value, safe='')}")
        else:
            body[param.name] = value if targeted else _typed_value(param.param_type, value)

    if cookies:
        headers["Cookie"] = "; ".join(cookies)

    json_body: Optional[Any] = body or None
    if graphql_operation(endpoint) is not None:
        json_body = {"query": build_graphql_document(endpoint), "variables": body}

    return RequestDescriptor(
        method=endpoint.method,
        url=join_url(base_url, path),
        headers=headers,
        params=params,
        json_body=json_body,
    )


class ResultSink:
    """Findings from every worker, appended under one lock."""

    def __init__(self):
        self._findings: List[Finding] = []
        self._lock = asyncio.Lock()

    async def append(self, finding: Finding):
        async with self._lock:
            self._findings.append(finding)

    @property
    def findings(self) -> List[Finding]:
        return list(self._findings)

    def __len__(self) -> int:
        return len(self._findings)


@dataclass
class ProbeRun:
    """Everything the executor did in one run."""

    probes: List[Probe] = field(default_factory=list)
    findings: List[Finding] = field(default_factory=list)
    stats: Dict[str, int] = field(default_factory=dict)

    @property
    def attack_probes(self) -> List[Probe]:
        return [p for p in self.probes if not p.payload.is_baseline]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stats": dict(self.stats),
            "probes": [p.to_dict() for p in self.probes],
        }


class ProbeExecutor:
    """
    Sends probes with at most `max_concurrent` in flight at once.

    Usage:
        async with AsyncHTTPClient.from_config(config.dast) as client:
            executor = ProbeExecutor(config, client, FindingClassifier(config))
            run = await executor.run(pairs, "https://api.example.com")

    `stop()` drops every pair not yet taken by a worker; probes already in
    flight finish and are classified normally.
    """

    def __init__(
        self,
        config: Optional[ScanConfig] = None,
        client: Any = None,
        classifier: Optional[FindingClassifier] = None,
        manager: Optional[PayloadManager] = None,
    ):
        self.config = config or ScanConfig()
        self.client = client
        self.classifier = classifier or FindingClassifier(self.config)
        self.manager = manager or PayloadManager()
        self.generator = PayloadGenerator(self.config, self.manager)

        self.max_concurrent = self.config.dast.max_concurrent
        self.timeout = self.config.dast.timeout_seconds
        self.follow_redirects = self.config.dast.follow_redirects
        self.custom_headers = dict(self.config.dast.custom_headers)
        self.check_exposure = "sensitive_data" in self.config.dast.response_checks
        self.check_rate_limit = "rate_limit" in self.config.dast.response_checks
        self.rate_limit_burst = self.config.dast.rate_limit_burst

        self._stop = asyncio.Event()
        self._ids = itertools.count(1)
        self._in_flight = 0
        self.stats: Dict[str, int] = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {
            "submitted": 0,
            "baseline": 0,
            "completed": 0,
            "failed": 0,
            "timed_out": 0,
            "dropped": 0,
            "findings": 0,
            "rate_limit_requests": 0,
            "peak_in_flight": 0,
        }

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self):
        if not self._stop.is_set():
            logger.warning("Stop requested: dropping pending probes, waiting for in-flight probes")
        self._stop.set()

    async def run(
        self,
        pairs: Iterable[Pair],
        base_url: str,
        include_baseline: bool = True,
    ) -> ProbeRun:
        pairs = list(pairs)
        self.stats = self._empty_stats()
        sink = ResultSink()
        probes: List[Probe] = []

        if include_baseline:
            endpoints = list({endpoint.key: endpoint for endpoint, _ in pairs}.values())
            baselines = self.generator.baseline_pairs(endpoints)
            logger.info(f"Baseline round: {len(baselines)} probes")
            await self._drain(baselines, base_url, sink, probes, baseline=True)

        logger.info(f"Attack round: {len(pairs)} probes, {self.max_concurrent} workers")
        await self._drain(pairs, base_url, sink, probes, baseline=False)

        if self.check_rate_limit and include_baseline and not self.stopped:
            completed = [p for p in probes if p.payload.is_baseline and p.state == ProbeState.COMPLETED]
            await self._rate_limit_round(completed, sink)

        self.stats["findings"] = len(sink)
        logger.info(
            f"Probing done: {self.stats['completed']} completed, {self.stats['failed']} failed, "
            f"{self.stats['timed_out']} timed out, {self.stats['dropped']} dropped, "
            f"{self.stats['findings']} findings"
        )
        return ProbeRun(probes=probes, findings=sink.findings, stats=dict(self.stats))

    async def _drain(
        self,
        items: Sequence[Pair],
        base_url: str,
        sink: ResultSink,
        probes: List[Probe],
        baseline: bool,
    ):
        queue: "asyncio.Queue[Pair]" = asyncio.Queue()
        for item in items:
            queue.put_nowait(item)

        workers = [
            asyncio.create_task(self._worker(queue, base_url, sink, probes, baseline))
            for _ in range(self.max_concurrent)
        ]
        await asyncio.gather(*workers)

    async def _worker(
        self,
        queue: "asyncio.Queue[Pair]",
        base_url: str,
        sink: ResultSink,
        probes: List[Probe],
        baseline: bool,
    ):
        while True:
            if self._stop.is_set():
                while not queue.empty():
                    queue.get_nowait()
                    self.stats["dropped"] += 1
                return

            try:
                endpoint, payload = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            probe = Probe(
                probe_id=next(self._ids),
                endpoint=endpoint,
                payload=payload,
                request=build_request(endpoint, payload, base_url, self.custom_headers, self.manager),
            )
            probes.append(probe)
            self.stats["submitted"] += 1
            if baseline:
                self.stats["baseline"] += 1

            await self._execute(probe)

            if baseline:
                self.classifier.set_baseline(endpoint, probe)
                if self.check_exposure:
                    await self._classify(self.classifier.classify_exposure, probe, sink)
                continue

            await self._classify(self.classifier.classify, probe, sink)

    async def _classify(self, check, probe: Probe, sink: ResultSink):
        try:
            finding = check(probe)
        except Exception as e:
            logger.error(f"Classification failed for probe {probe.probe_id}: {e}")
            return
        if finding is not None:
            await sink.append(finding)

    async def _rate_limit_round(self, baselines: List[Probe], sink: ResultSink):
        """Replay each baseline request `rate_limit_burst` times through the same worker bound."""
        queue: "asyncio.Queue[Probe]" = asyncio.Queue()
        for probe in baselines:
            for _ in range(self.rate_limit_burst):
                queue.put_nowait(probe)
        logger.info(f"Rate limit round: {queue.qsize()} requests across {len(baselines)} endpoints")

        responses: Dict[Tuple[str, str, str], List[HTTPResponse]] = defaultdict(list)
        workers = [
            asyncio.create_task(self._rate_limit_worker(queue, responses)) for _ in range(self.max_concurrent)
        ]
        await asyncio.gather(*workers)
        if self.stopped:
            return

        for probe in baselines:
            finding = self.classifier.classify_rate_limit(probe, responses.get(probe.endpoint.key, []))
            if finding is not None:
                await sink.append(finding)

    async def _rate_limit_worker(self, queue: "asyncio.Queue[Probe]", responses: Dict):
        while not self._stop.is_set():
            try:
                probe = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self.stats["rate_limit_requests"] += 1
            try:
                response = await self._send(probe.request)
            except (ProbeNetworkError, ProbeTimeoutError) as e:
                logger.debug(f"Rate limit request to {probe.request.url} failed: {e}")
                continue
            responses[probe.endpoint.key].append(response)

    async def _send(self, request: RequestDescriptor) -> HTTPResponse:
        self._in_flight += 1
        self.stats["peak_in_flight"] = max(self.stats["peak_in_flight"], self._in_flight)
        try:
            return await self.client.request(
                request.method,
                request.url,
                headers=request.headers,
                params=request.params or None,
                json=request.json_body,
                allow_redirects=self.follow_redirects,
                timeout=self.timeout,
            )
        finally:
            self._in_flight -= 1

    async def _execute(self, probe: Probe):
        request = probe.request
        probe.transition(ProbeState.IN_FLIGHT)

        try:
            response = await self._send(request)
        except ProbeTimeoutError as e:
            probe.error = str(e)
            probe.elapsed = e.timeout
            probe.attempts = 1
            probe.transition(ProbeState.TIMED_OUT)
            self.stats["timed_out"] += 1
        except ProbeNetworkError as e:
            probe.error = str(e)
            probe.attempts = e.attempts
            probe.transition(ProbeState.FAILED)
            self.stats["failed"] += 1
        except Exception as e:
            probe.error = f"{type(e).__name__}: {e}"
            probe.attempts = 1
            probe.transition(ProbeState.FAILED)
            self.stats["failed"] += 1
            logger.error(f"Probe {probe.probe_id} failed unexpectedly: {probe.error}")
        else:
            probe.response = response
            probe.elapsed = response.elapsed
            probe.attempts = getattr(response, "attempts", 1)
            probe.transition(ProbeState.COMPLETED)
            self.stats["completed"] += 1

        logger.debug(
            f"Probe {probe.probe_id} {probe.state.value}: {request.method} {request.url} "
            f"[{probe.payload.vulnerability_class}]"
        )

"""
Drift detection: ingested endpoints against what the live API answers.

Evidence comes from three places:
- the Allow header of an OPTIONS request to the base URL
- common API paths that answer with anything but a not-found
- every ingested endpoint replayed once with benign values

Ingested endpoints answering 404, 405 or 501 are missing from the runtime.
Live paths that match no ingested endpoint are new.
"""

import asyncio
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from core.config import ScanConfig
from core.exceptions import ProbeNetworkError, ProbeTimeoutError
from core.http_client import HTTPResponse
from core.models import Endpoint
from core.utils import join_url, setup_logging, timestamp_now

from .executor import build_request
from .payload_generator import PayloadGenerator

logger = setup_logging("drift")

COMMON_PATHS = [
    "/api", "/api/v1", "/api/v2",
    "/users", "/user", "/auth", "/login", "/register",
    "/products", "/orders", "/payments",
    "/admin", "/dashboard", "/health", "/status",
    "/docs", "/swagger", "/openapi.json",
]
CRAWL_METHODS = ("GET", "POST")
OPTIONS_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")
MISSING_STATUSES = (404, 405, 501)

SEVERITY = {"missing-endpoint": "high", "new-endpoint": "medium", "unreachable-endpoint": "low"}


def normalize_path(path: str) -> str:
    """`/users/:id/` and `/users/{userId}` compare equal."""
    path = path.split("#", 1)[0].split("?", 1)[0].rstrip("/") or "/"
    path = re.sub(r":[^/]+", "{}", path)
    return re.sub(r"\{[^}]*\}", "{}", path)


@dataclass
class RuntimeEndpoint:
    """A method and path the live API answered for."""

    method: str
    path: str
    discovery: str
    status: int
    elapsed: float = 0.0

    @property
    def label(self) -> str:
        return f"{self.method} {self.path}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "path": self.path,
            "discovery": self.discovery,
            "status": self.status,
            "elapsed": round(self.elapsed, 3),
        }


@dataclass
class Difference:
    kind: str
    method: str
    path: str
    description: str
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def severity(self) -> str:
        return SEVERITY.get(self.kind, "low")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "severity": self.severity,
            "method": self.method,
            "path": self.path,
            "description": self.description,
            "details": self.details,
        }


@dataclass
class DriftReport:
    """Result of one drift comparison."""

    target: str
    documented: int = 0
    confirmed: List[str] = field(default_factory=list)
    new_endpoints: List[RuntimeEndpoint] = field(default_factory=list)
    missing_endpoints: List[Endpoint] = field(default_factory=list)
    differences: List[Difference] = field(default_factory=list)
    timestamp: str = field(default_factory=timestamp_now)

    @property
    def coverage(self) -> int:
        """Share of the live endpoints seen that the ingested sources describe."""
        live = len(self.confirmed) + len(self.new_endpoints)
        if live == 0:
            return 100
        return round(100 * len(self.confirmed) / live)

    def summary(self) -> Dict[str, Any]:
        return {
            "documented": self.documented,
            "confirmed": len(self.confirmed),
            "total_differences": len(self.differences),
            "new_endpoints": len(self.new_endpoints),
            "missing_endpoints": len(self.missing_endpoints),
            "high_severity": sum(1 for d in self.differences if d.severity == "high"),
            "coverage": self.coverage,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool": "specprobe",
            "target": self.target,
            "timestamp": self.timestamp,
            "summary": self.summary(),
            "confirmed": list(self.confirmed),
            "new_endpoints": [e.to_dict() for e in self.new_endpoints],
            "missing_endpoints": [e.to_dict(include_metadata=False) for e in self.missing_endpoints],
            "differences": [d.to_dict() for d in self.differences],
        }

    def to_text(self) -> str:
        summary = self.summary()
        lines = [
            "SPECPROBE Drift Report",
            "======================",
            "",
            f"Target: {self.target}",
            f"Generated: {self.timestamp}",
            "",
            "Summary:",
            f"- Documented endpoints: {summary['documented']}",
            f"- Confirmed at runtime: {summary['confirmed']}",
            f"- New endpoints: {summary['new_endpoints']}",
            f"- Missing endpoints: {summary['missing_endpoints']}",
            f"- Coverage: {summary['coverage']}%",
            "",
        ]
        if self.new_endpoints:
            lines.append("New Endpoints:")
            lines.extend(f"  + {e.label} ({e.discovery}, HTTP {e.status})" for e in self.new_endpoints)
            lines.append("")
        if self.missing_endpoints:
            lines.append("Missing Endpoints:")
            lines.extend(f"  - {e.label} ({e.source_format})" for e in self.missing_endpoints)
            lines.append("")
        unreachable = [d for d in self.differences if d.kind == "unreachable-endpoint"]
        if unreachable:
            lines.append("Unreachable:")
            lines.extend(f"  ? {d.method} {d.path}: {d.details.get('error', '')}" for d in unreachable)
            lines.append("")
        return "\n".join(lines)


class DriftDetector:
    """
    Compares ingested endpoints with the live API.

    Usage:
        async with AsyncHTTPClient.from_config(config.dast) as client:
            report = await DriftDetector(config, client).compare(endpoints, "https://api.example.com")

    `paths` adds to the common API paths that are crawled.

    At most `dast.max_concurrent` requests are in flight. Redirects are not
    followed, so a redirect counts as an answer for the path that sent it.
    """

    def __init__(self, config: Optional[ScanConfig] = None, client: Any = None, paths: Optional[Sequence[str]] = None):
        self.config = config or ScanConfig()
        self.client = client
        self.paths = COMMON_PATHS + [p for p in (paths or []) if p not in COMMON_PATHS]
        self.generator = PayloadGenerator(self.config)
        self.custom_headers = dict(self.config.dast.custom_headers)
        self.timeout = self.config.dast.timeout_seconds
        self.max_concurrent = self.config.dast.max_concurrent

    async def compare(self, endpoints: Sequence[Endpoint], base_url: str) -> DriftReport:
        logger.info(f"Comparing {len(endpoints)} endpoints against {base_url}")
        semaphore = asyncio.Semaphore(self.max_concurrent)
        report = DriftReport(target=base_url, documented=len(endpoints))

        soft_404 = await self._calibrate(base_url, semaphore)
        runtime = await self._discover_options(base_url, semaphore)
        runtime += await self._crawl(base_url, semaphore, soft_404)

        checks = await asyncio.gather(*(self._check(e, base_url, semaphore) for e in endpoints))
        for endpoint, (response, error) in zip(endpoints, checks):
            path = endpoint.path.split("#", 1)[0]
            if response is None:
                report.differences.append(
                    Difference(
                        "unreachable-endpoint",
                        endpoint.method,
                        path,
                        f"Endpoint did not answer: {endpoint.label}",
                        {"error": error, "source_format": endpoint.source_format},
                    )
                )
            elif response.status in MISSING_STATUSES:
                report.missing_endpoints.append(endpoint)
                report.differences.append(
                    Difference(
                        "missing-endpoint",
                        endpoint.method,
                        path,
                        f"Endpoint missing from runtime: {endpoint.label}",
                        {"status": response.status, "source_format": endpoint.source_format},
                    )
                )
            elif endpoint.label not in report.confirmed:
                report.confirmed.append(endpoint.label)

        documented: Set[Tuple[str, str]] = {(e.method, normalize_path(e.path)) for e in endpoints}
        seen: Set[Tuple[str, str]] = set()
        for live in runtime:
            key = (live.method, normalize_path(live.path))
            if key in documented or key in seen:
                continue
            seen.add(key)
            report.new_endpoints.append(live)
            report.differences.append(
                Difference(
                    "new-endpoint",
                    live.method,
                    live.path,
                    f"New endpoint discovered: {live.label}",
                    {"discovery": live.discovery, "status": live.status},
                )
            )

        logger.info(
            f"Drift: {len(report.confirmed)} confirmed, {len(report.new_endpoints)} new, "
            f"{len(report.missing_endpoints)} missing"
        )
        return report

    async def _fetch(
        self, semaphore: asyncio.Semaphore, method: str, url: str, **kwargs
    ) -> Tuple[Optional[HTTPResponse], Optional[str]]:
        headers = {**self.custom_headers, **(kwargs.pop("headers", None) or {})}
        async with semaphore:
            try:
                response = await self.client.request(
                    method, url, headers=headers, allow_redirects=False, timeout=self.timeout, **kwargs
                )
            except (ProbeNetworkError, ProbeTimeoutError) as e:
                logger.debug(f"{method} {url} failed: {e}")
                return None, str(e)
        return response, None

    async def _calibrate(self, base_url: str, semaphore: asyncio.Semaphore) -> Optional[Tuple[int, int]]:
        """Status and size of a path that cannot exist, when the server does not answer it with a 404."""
        url = join_url(base_url, f"/specprobe-{uuid.uuid4().hex[:12]}")
        response, _ = await self._fetch(semaphore, "GET", url)
        if response is None or response.status == 404:
            return None
        logger.debug(f"Soft 404 detected: HTTP {response.status}, {response.length} bytes")
        return response.status, response.length

    async def _discover_options(self, base_url: str, semaphore: asyncio.Semaphore) -> List[RuntimeEndpoint]:
        response, _ = await self._fetch(semaphore, "OPTIONS", base_url)
        if response is None:
            return []
        allow = next((v for k, v in response.headers.items() if k.lower() == "allow"), "")
        methods = [m.strip().upper() for m in allow.split(",") if m.strip()]
        return [
            RuntimeEndpoint(m, "/", "options", response.status, response.elapsed)
            for m in methods
            if m in OPTIONS_METHODS
        ]

    async def _crawl(
        self, base_url: str, semaphore: asyncio.Semaphore, soft_404: Optional[Tuple[int, int]]
    ) -> List[RuntimeEndpoint]:
        async def check_path(path: str, method: str) -> Optional[RuntimeEndpoint]:
            response, _ = await self._fetch(semaphore, method, join_url(base_url, path))
            if response is None or response.status in MISSING_STATUSES:
                return None
            if soft_404 and response.status == soft_404[0] and abs(response.length - soft_404[1]) <= 10:
                return None
            return RuntimeEndpoint(method, path, "crawling", response.status, response.elapsed)

        results = await asyncio.gather(*(check_path(p, m) for p in self.paths for m in CRAWL_METHODS))
        return [r for r in results if r is not None]

    async def _check(
        self, endpoint: Endpoint, base_url: str, semaphore: asyncio.Semaphore
    ) -> Tuple[Optional[HTTPResponse], Optional[str]]:
        request = build_request(endpoint, self.generator.baseline(endpoint), base_url, self.custom_headers)
        return await self._fetch(
            semaphore,
            request.method,
            request.url,
            headers=request.headers,
            params=request.params or None,
            json=request.json_body,
        )

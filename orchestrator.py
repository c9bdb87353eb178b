#!/usr/bin/env python3
"""
SPECPROBE API Security Testing Pipeline - Orchestrator.

Coordinates the pipeline stages:
1. Ingestion (API descriptions into endpoints)
2. Enrichment (source maps, TypeScript, semantics, code discovery)
3. Documentation matching
4. Payload generation and probing
5. Reporting

Usage:
    orchestrator = SpecProbeOrchestrator(load_config("specprobe.yaml"))
    report = await orchestrator.run(ScanTarget("https://api.example.com", ["openapi.yaml"]))
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from core.config import RAGConfig, ScanConfig, build_config
from core.exceptions import ProbeNetworkError, ProbeTimeoutError
from core.http_client import AsyncHTTPClient
from core.models import Endpoint
from core.result_manager import ResultManager, RunReport
from core.utils import join_url, setup_logging
from phase1_ingestion.graphql import INTROSPECTION_QUERY
from phase1_ingestion.registry import IngestionOutcome, IngestorRegistry, SourceSpec
from phase2_enrichment.pipeline import EnrichmentPipeline, EnrichmentWorkspace
from phase3_matching.documentation import DocumentationLoader
from phase3_matching.embeddings import EmbeddingProvider, HTTPEmbeddingProvider
from phase3_matching.matcher import DocumentationMatcher, MatchReport
from phase4_probing.drift import DriftDetector, DriftReport
from phase4_probing.executor import ProbeExecutor, ProbeRun
from phase4_probing.finding_classifier import FindingClassifier
from phase4_probing.payload_generator import PayloadGenerator

logger = setup_logging("orchestrator")


@dataclass
class ScanTarget:
    """What to scan and where its inputs live."""

    base_url: str
    sources: List[SourceSpec] = field(default_factory=list)
    documentation_sources: Optional[List[str]] = None
    source_map_dir: Optional[str] = None
    typescript_dir: Optional[str] = None
    source_root: Optional[str] = None
    probe: bool = True


class SpecProbeOrchestrator:
    """
    Main pipeline orchestrator.

    The configuration is validated before anything else; an invalid tree
    raises ConfigurationInvalidError from the constructor. Per-source,
    per-pass and per-probe failures are recorded in the report. Only an
    invalid configuration or a run without endpoints aborts.
    """

    def __init__(
        self,
        config: Union[ScanConfig, Dict[str, Any], None] = None,
        output_dir: Optional[str] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
        client: Any = None,
    ):
        self.config = config if isinstance(config, ScanConfig) else build_config(config)
        self.output_dir = output_dir
        self.embedding_provider = embedding_provider
        self.client = client

        self.registry = IngestorRegistry(self.config)
        self.enrichment = EnrichmentPipeline(self.config)
        self.generator = PayloadGenerator(self.config)
        self.executor: Optional[ProbeExecutor] = None
        self._stop_requested = False

    def stop(self):
        """Drop pending probes; in-flight probes finish and are classified."""
        self._stop_requested = True
        if self.executor is not None:
            self.executor.stop()

    async def run(self, target: ScanTarget) -> RunReport:
        """Execute the full pipeline and return the run report."""
        logger.info(f"Starting SPECPROBE pipeline for: {target.base_url}")
        report = RunReport(target=target.base_url, class_order=list(self.config.dast.vulnerability_classes))

        if self.client is not None:
            report = await self._run_stages(target, report, self.client)
        else:
            async with AsyncHTTPClient.from_config(self.config.dast) as client:
                report = await self._run_stages(target, report, client)

        report.finalize()
        if self.output_dir:
            self._save(report)
        return report

    async def drift(self, target: ScanTarget, paths: Optional[List[str]] = None) -> DriftReport:
        """Ingest the target's sources and compare them with what the live API answers."""
        logger.info(f"Starting drift check for: {target.base_url}")
        if self.client is not None:
            return await self._run_drift(target, self.client, paths)
        async with AsyncHTTPClient.from_config(self.config.dast) as client:
            return await self._run_drift(target, client, paths)

    async def _run_drift(self, target: ScanTarget, client: Any, paths: Optional[List[str]]) -> DriftReport:
        outcome = await self._run_ingestion_phase(target, client)
        for failure in outcome.failures:
            logger.warning(f"Skipped {failure['source']}: {failure['reason']}")
        detector = DriftDetector(self.config, client, paths)
        return await detector.compare(outcome.endpoints, target.base_url)

    async def _run_stages(self, target: ScanTarget, report: RunReport, client: Any) -> RunReport:
        outcome = await self._run_ingestion_phase(target, client)
        report.endpoints = outcome.endpoints
        report.sources = outcome.sources
        report.ingestion_failures = outcome.failures
        for failure in outcome.failures:
            report.add_error(f"{failure['source']}: {failure['reason']}")

        workspace = await self._run_enrichment_phase(target, outcome.endpoints)
        report.enrichment_warnings = [w.to_dict() for w in workspace.warnings]
        report.stats["discovered_routes"] = list(workspace.discovered_routes)

        match_report = await self._run_matching_phase(target, outcome.endpoints, client)
        report.documentation = match_report.to_dict()

        if target.probe:
            run = await self._run_probing_phase(target, outcome.endpoints, client)
            report.probe_stats = run.stats
            report.findings = run.findings
        else:
            logger.info("Probing disabled for this run")

        return report

    async def _run_ingestion_phase(self, target: ScanTarget, client: Any) -> IngestionOutcome:
        """Phase 1: ingest every source. Raises NoEndpointsError when all fail."""
        logger.info("=" * 60)
        logger.info("PHASE 1: INGESTION")
        logger.info("=" * 60)

        sources = list(target.sources)
        if self.config.ingestors.graphql_enabled and self.config.ingestors.graphql_introspection:
            introspected = await self._introspect(target.base_url, client)
            if introspected is not None:
                sources.append(introspected)

        return self.registry.ingest_all(sources, require_endpoints=True)

    async def _introspect(self, base_url: str, client: Any) -> Optional[SourceSpec]:
        """Fetch the live GraphQL schema as an extra source."""
        url = join_url(base_url, self.config.ingestors.graphql_endpoint_path)
        try:
            response = await client.request("POST", url, json={"query": INTROSPECTION_QUERY})
        except (ProbeNetworkError, ProbeTimeoutError) as e:
            logger.warning(f"GraphQL introspection failed at {url}: {e}")
            return None
        if response.status != 200 or "__schema" not in (response.body or ""):
            logger.warning(f"GraphQL introspection not available at {url} (HTTP {response.status})")
            return None
        logger.info(f"Fetched GraphQL schema from {url}")
        return ("graphql.introspection.json", response.body)

    async def _run_enrichment_phase(self, target: ScanTarget, endpoints: List[Endpoint]) -> EnrichmentWorkspace:
        """Phase 2: enrichment passes. Warnings never abort the run."""
        logger.info("=" * 60)
        logger.info("PHASE 2: ENRICHMENT")
        logger.info("=" * 60)

        workspace = EnrichmentWorkspace(
            source_map_dir=target.source_map_dir,
            typescript_dir=target.typescript_dir,
            source_root=target.source_root,
        )
        await self.enrichment.run(endpoints, workspace)
        return workspace

    async def _run_matching_phase(self, target: ScanTarget, endpoints: List[Endpoint], client: Any) -> MatchReport:
        """Phase 3: documentation matching. Runs once, before any probe is sent."""
        logger.info("=" * 60)
        logger.info("PHASE 3: DOCUMENTATION MATCHING")
        logger.info("=" * 60)

        loader = DocumentationLoader(self.config.rag, client)
        fragments = await loader.load(target.documentation_sources)

        provider = self.embedding_provider
        owned: Optional[HTTPEmbeddingProvider] = None
        if provider is None and self._embedding_configured():
            owned = provider = HTTPEmbeddingProvider(self.config.rag)

        try:
            match_report = await DocumentationMatcher(self.config, provider).match(endpoints, fragments)
        finally:
            if owned is not None:
                await owned.close()

        match_report.warnings[:0] = loader.errors
        return match_report

    def _embedding_configured(self) -> bool:
        rag = self.config.rag
        return bool(rag.api_key) or rag.embedding_endpoint != RAGConfig.embedding_endpoint

    async def _run_probing_phase(self, target: ScanTarget, endpoints: List[Endpoint], client: Any) -> ProbeRun:
        """Phase 4: baseline and attack probes, classified as they complete."""
        logger.info("=" * 60)
        logger.info("PHASE 4: PROBING")
        logger.info("=" * 60)

        pairs = self.generator.pairs(endpoints)
        self.executor = ProbeExecutor(self.config, client, FindingClassifier(self.config))
        if self._stop_requested:
            self.executor.stop()
        return await self.executor.run(pairs, target.base_url)

    def _save(self, report: RunReport) -> Dict[str, str]:
        """Phase 5: write the report."""
        logger.info("=" * 60)
        logger.info("PHASE 5: REPORTING")
        logger.info("=" * 60)

        output = self.config.output
        manager = ResultManager(self.output_dir, fmt=output.format, pretty=output.pretty)
        paths = manager.save(report, include_metadata=output.include_metadata)
        logger.info(f"Report saved to: {', '.join(paths.values())}")
        return paths

"""
Result manager for standardized JSON/YAML/Markdown run reports.
"""

import json
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

from .models import Endpoint, Payload
from .utils import ensure_dir, safe_filename, timestamp_now, setup_logging

logger = setup_logging("result_manager")

# (method, path, source_format)
EndpointKey = Tuple[str, str, str]


class Severity(Enum):
    """Vulnerability severity levels."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @property
    def score(self) -> int:
        scores = {"critical": 5, "high": 4, "medium": 3, "low": 2, "info": 1}
        return scores[self.value]


@dataclass(frozen=True)
class Finding:
    """Evidence-backed suspected vulnerability. Never mutated once built."""

    endpoint: Endpoint
    payload: Payload
    vulnerability_class: str
    severity: Severity
    evidence: str
    confidence: float
    title: str
    url: str
    probe_state: str
    signatures: Tuple[str, ...] = ()
    cwe_id: Optional[str] = None
    timestamp: str = field(default_factory=timestamp_now, compare=False)

    @property
    def confirmed(self) -> bool:
        return self.probe_state == "completed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "endpoint": self.endpoint.label,
            "source_format": self.endpoint.source_format,
            "vulnerability_class": self.vulnerability_class,
            "severity": self.severity.value,
            "confidence": round(self.confidence, 3),
            "url": self.url,
            "parameter": self.payload.parameter,
            "location": self.payload.location.value,
            "payload": self.payload.attack,
            "technique": self.payload.technique,
            "evidence": self.evidence,
            "signatures": list(self.signatures),
            "probe_state": self.probe_state,
            "cwe_id": self.cwe_id,
            "timestamp": self.timestamp,
        }


@dataclass
class RunReport:
    """Complete run result container."""

    target: str
    endpoints: List[Endpoint] = field(default_factory=list)
    sources: List[Dict[str, Any]] = field(default_factory=list)
    ingestion_failures: List[Dict[str, Any]] = field(default_factory=list)
    enrichment_warnings: List[Dict[str, Any]] = field(default_factory=list)
    documentation: Dict[str, Any] = field(default_factory=dict)
    probe_stats: Dict[str, Any] = field(default_factory=dict)
    findings: List[Finding] = field(default_factory=list)
    class_order: List[str] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    start_time: str = field(default_factory=timestamp_now)
    end_time: Optional[str] = None
    duration: Optional[float] = None

    def add_finding(self, finding: Finding):
        """Add a finding to the results."""
        self.findings.append(finding)

    def add_error(self, error: str):
        """Add an error message."""
        self.errors.append(error)

    def finalize(self):
        """Mark run as complete and calculate stats."""
        self.end_time = timestamp_now()
        if self.start_time and self.end_time:
            start = datetime.fromisoformat(self.start_time.replace("Z", "+00:00"))
            end = datetime.fromisoformat(self.end_time.replace("Z", "+00:00"))
            self.duration = (end - start).total_seconds()

        # Calculate severity breakdown
        severity_counts = {s.value: 0 for s in Severity}
        for finding in self.findings:
            severity_counts[finding.severity.value] += 1

        self.stats.update(
            {
                "total_endpoints": len(self.endpoints),
                "total_findings": len(self.findings),
                "severity_breakdown": severity_counts,
                "has_critical": severity_counts["critical"] > 0,
                "has_high": severity_counts["high"] > 0,
            }
        )

    def grouped_findings(self) -> "OrderedDict[EndpointKey, OrderedDict[str, List[Finding]]]":
        """
        Findings grouped by endpoint identity, then by vulnerability class.

        Endpoints keep ingestion order and classes keep configuration order,
        so the grouping does not depend on probe completion order. The same
        method and path from two source formats are two groups.
        """
        endpoint_rank = {e.key: i for i, e in enumerate(self.endpoints)}
        class_rank = {c: i for i, c in enumerate(self.class_order)}

        def sort_key(f: Finding):
            return (
                endpoint_rank.get(f.endpoint.key, len(endpoint_rank)),
                f.endpoint.key,
                class_rank.get(f.vulnerability_class, len(class_rank)),
                f.vulnerability_class,
                f.payload.parameter,
                f.payload.attack,
            )

        grouped: "OrderedDict[EndpointKey, OrderedDict[str, List[Finding]]]" = OrderedDict()
        for finding in sorted(self.findings, key=sort_key):
            by_class = grouped.setdefault(finding.endpoint.key, OrderedDict())
            by_class.setdefault(finding.vulnerability_class, []).append(finding)
        return grouped

    def ordered_findings(self) -> List[Finding]:
        return [f for by_class in self.grouped_findings().values() for fs in by_class.values() for f in fs]

    def to_dict(self, include_metadata: bool = True) -> Dict[str, Any]:
        return {
            "tool": "specprobe",
            "target": self.target,
            "timestamp": self.start_time,
            "end_time": self.end_time,
            "duration": self.duration,
            "sources": self.sources,
            "ingestion_failures": self.ingestion_failures,
            "enrichment_warnings": self.enrichment_warnings,
            "documentation": self.documentation,
            "endpoints": [e.to_dict(include_metadata=include_metadata) for e in self.endpoints],
            "probe_stats": self.probe_stats,
            "findings": [
                {
                    "endpoint": f"{method} {path}",
                    "source_format": source_format,
                    "classes": [
                        {"vulnerability_class": vuln_class, "findings": [f.to_dict() for f in fs]}
                        for vuln_class, fs in by_class.items()
                    ],
                }
                for (method, path, source_format), by_class in self.grouped_findings().items()
            ],
            "stats": self.stats,
            "errors": self.errors,
        }


class ResultManager:
    """
    Writes run reports as JSON or YAML plus a Markdown summary.

    Usage:
        manager = ResultManager(output_dir="results/")
        report = RunReport(target="https://api.example.com")
        ...
        report.finalize()
        manager.save(report)
    """

    def __init__(self, output_dir: str = "results", fmt: str = "json", pretty: bool = True):
        self.output_dir = Path(output_dir)
        self.fmt = fmt
        self.pretty = pretty
        ensure_dir(self.output_dir)

    def write_document(self, data: Any, path: Path, fmt: Optional[str] = None) -> Path:
        """Serialize a plain data tree to JSON or YAML."""
        fmt = fmt or self.fmt
        with open(path, "w", encoding="utf-8") as f:
            if fmt == "yaml":
                yaml.safe_dump(data, f, sort_keys=False, allow_unicode=True)
            else:
                json.dump(data, f, indent=2 if self.pretty else None)
        return path

    def save(
        self,
        report: RunReport,
        filename: Optional[str] = None,
        include_markdown: bool = True,
        include_metadata: bool = True,
    ) -> Dict[str, str]:
        """
        Save a run report and its Markdown summary.

        Returns dict with paths to saved files.
        """
        if not filename:
            filename = safe_filename(f"specprobe_{report.target}")

        ext = "yaml" if self.fmt == "yaml" else "json"
        data_path = self.output_dir / f"{filename}.{ext}"
        md_path = self.output_dir / f"{filename}.md"

        self.write_document(report.to_dict(include_metadata=include_metadata), data_path)
        logger.info(f"Saved {ext.upper()}: {data_path}")

        paths = {ext: str(data_path)}

        # Save Markdown summary
        if include_markdown:
            markdown = self._generate_markdown(report)
            with open(md_path, "w", encoding="utf-8") as f:
                f.write(markdown)
            logger.info(f"Saved Markdown: {md_path}")
            paths["markdown"] = str(md_path)

        return paths

    def _generate_markdown(self, report: RunReport) -> str:
        """Generate Markdown summary from a run report."""
        lines = []

        # Header
        lines.append("# SPECPROBE Results")
        lines.append("")
        lines.append(f"**Target:** {report.target}")
        lines.append(f"**Scan Time:** {report.start_time}")
        if report.duration:
            lines.append(f"**Duration:** {report.duration:.2f}s")
        lines.append(f"**Endpoints:** {len(report.endpoints)}")
        if report.documentation:
            lines.append(
                f"**Documented:** {report.documentation.get('documented', 0)}"
                f"/{len(report.endpoints)}"
            )
        lines.append("")

        # Sources
        if report.sources or report.ingestion_failures:
            lines.append("## Sources")
            lines.append("")
            lines.append("| Source | Ingestor | Endpoints |")
            lines.append("|--------|----------|-----------|")
            for source in report.sources:
                lines.append(f"| {source['source']} | {source['ingestor']} | {source['endpoints']} |")
            for failure in report.ingestion_failures:
                lines.append(f"| {failure['source']} | FAILED | {failure['error']}: {failure['reason']} |")
            lines.append("")

        # Status summary
        total = len(report.findings)
        if total == 0:
            lines.append("## Status: NO FINDINGS")
            lines.append("")
            lines.append("No vulnerabilities detected.")
            lines.append("")
        else:
            counts = {s: sum(1 for f in report.findings if f.severity == s) for s in Severity}
            status = "VULNERABLE" if counts[Severity.CRITICAL] or counts[Severity.HIGH] else "ISSUES FOUND"
            lines.append(f"## Status: {status} ({total} findings)")
            lines.append("")
            lines.append("### Severity Breakdown")
            lines.append("")
            lines.append("| Severity | Count |")
            lines.append("|----------|-------|")
            for severity, count in counts.items():
                if count:
                    lines.append(f"| {severity.value.upper()} | {count} |")
            lines.append("")

        # Findings grouped by endpoint, then class
        for (method, path, source_format), by_class in report.grouped_findings().items():
            lines.append(f"## {method} {path} ({source_format})")
            lines.append("")
            for vuln_class, findings in by_class.items():
                lines.append(f"### {vuln_class}")
                lines.append("")
                for finding in findings:
                    marker = "" if finding.confirmed else " (possible)"
                    if finding.payload.is_baseline:
                        subject = f"{finding.title} confidence {finding.confidence:.2f}"
                    else:
                        subject = (
                            f"`{finding.payload.parameter}` confidence {finding.confidence:.2f}: "
                            f"`{finding.payload.attack}`"
                        )
                    lines.append(f"- **{finding.severity.value.upper()}**{marker} {subject}")
                    if finding.evidence:
                        lines.append("")
                        lines.append("  ```")
                        lines.append(f"  {finding.evidence[:500]}")
                        lines.append("  ```")
                lines.append("")

        # Warnings
        if report.enrichment_warnings:
            lines.append("## Enrichment Warnings")
            lines.append("")
            for warning in report.enrichment_warnings:
                where = f" [{warning['endpoint']}]" if warning.get("endpoint") else ""
                lines.append(f"- {warning['pass']}{where}: {warning['message']}")
            lines.append("")

        # Statistics
        if report.probe_stats:
            lines.append("## Probe Statistics")
            lines.append("")
            lines.append("```json")
            lines.append(json.dumps(report.probe_stats, indent=2))
            lines.append("```")
            lines.append("")

        # Errors
        if report.errors:
            lines.append("## Errors")
            lines.append("")
            for error in report.errors:
                lines.append(f"- {error}")
            lines.append("")

        return "\n".join(lines)

    def get_summary(self, report: RunReport) -> Dict[str, Any]:
        """Get concise summary of run results."""
        return {
            "target": report.target,
            "endpoints": len(report.endpoints),
            "documented": report.documentation.get("documented", 0),
            "total_findings": len(report.findings),
            "critical": sum(1 for f in report.findings if f.severity == Severity.CRITICAL),
            "high": sum(1 for f in report.findings if f.severity == Severity.HIGH),
            "medium": sum(1 for f in report.findings if f.severity == Severity.MEDIUM),
            "low": sum(1 for f in report.findings if f.severity == Severity.LOW),
            "ingestion_failures": len(report.ingestion_failures),
            "duration": report.duration,
            "errors": len(report.errors),
        }


def severity_for(vuln_class: str, table: Dict[str, str], default: str = "medium") -> Severity:
    """Look a class up in the configured severity table."""
    return Severity(str(table.get(vuln_class, default)).lower())


def sort_by_severity(findings: Sequence[Finding]) -> List[Finding]:
    return sorted(findings, key=lambda f: (f.severity.score, f.confidence), reverse=True)

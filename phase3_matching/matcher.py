"""
Documentation matcher.

Embeds a canonical descriptor per endpoint, compares it with every
documentation chunk by cosine similarity and keeps the top-K matches at or
above `rag.confidence_threshold`. The result is written to each endpoint's
`documentation` annotation; no endpoint is ever dropped.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from core.config import ScanConfig
from core.exceptions import EmbeddingUnavailableError
from core.models import DocumentationChunk, DocumentationFragment, Endpoint, MatchResult
from core.utils import setup_logging

from .embeddings import CachingEmbedder, EmbeddingProvider

logger = setup_logging("doc_matcher")

ANNOTATION_KEY = "documentation"
SIMILARITY_MAPPINGS = ("clamp", "rescale")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of two vectors. Zero vectors score 0; mismatched dimensions raise ValueError."""
    if len(a) != len(b):
        raise ValueError(f"Embedding dimensions differ: {len(a)} != {len(b)}")
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return sum(x * y for x, y in zip(a, b)) / (norm_a * norm_b)


def map_similarity(cosine: float, mapping: str = "clamp") -> float:
    """Map a cosine in [-1, 1] to a confidence in [0, 1]."""
    if mapping == "rescale":
        value = (cosine + 1.0) / 2.0
    elif mapping == "clamp":
        value = cosine
    else:
        raise ValueError(f"Unknown similarity mapping: {mapping}")
    return max(0.0, min(1.0, value))


def endpoint_descriptor(endpoint: Endpoint) -> str:
    """Text that stands for an endpoint in embedding space."""
    lines = [f"{endpoint.method} {endpoint.path}"]
    if endpoint.parameters:
        lines.append("parameters: " + ", ".join(p.name for p in endpoint.parameters))
    if endpoint.operation_id:
        lines.append(f"operation: {endpoint.operation_id}")
    if endpoint.summary:
        lines.append(endpoint.summary)
    if endpoint.description:
        lines.append(endpoint.description)
    if endpoint.tags:
        lines.append("tags: " + ", ".join(endpoint.tags))
    return "\n".join(lines)


@dataclass
class MatchReport:
    """Per-endpoint matches plus whether matching actually happened."""

    matches: Dict[Tuple[str, str, str], List[MatchResult]] = field(default_factory=dict)
    available: bool = True
    chunks: int = 0
    warnings: List[str] = field(default_factory=list)

    def for_endpoint(self, endpoint: Endpoint) -> List[MatchResult]:
        return self.matches.get(endpoint.key, [])

    @property
    def documented(self) -> int:
        return sum(1 for m in self.matches.values() if m)

    @property
    def coverage(self) -> float:
        return self.documented / len(self.matches) if self.matches else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "available": self.available,
            "chunks": self.chunks,
            "endpoints": len(self.matches),
            "documented": self.documented,
            "coverage": round(self.coverage, 4),
            "warnings": list(self.warnings),
        }


class DocumentationMatcher:
    """
    Matches endpoints to documentation chunks.

    Usage:
        matcher = DocumentationMatcher(config, provider)
        report = await matcher.match(endpoints, fragments)
    """

    def __init__(self, config: Optional[ScanConfig] = None, provider: Optional[EmbeddingProvider] = None):
        self.config = config or ScanConfig()
        self.threshold = self.config.rag.confidence_threshold
        self.top_k = self.config.rag.top_k
        self.mapping = self.config.rag.similarity_mapping
        if provider is not None and not isinstance(provider, CachingEmbedder):
            provider = CachingEmbedder(provider)
        self.embedder = provider

    async def embed_chunks(self, fragments: Sequence[DocumentationFragment], report: MatchReport) -> List[DocumentationChunk]:
        """Embed each fragment once. Rejected fragments are skipped."""
        chunks = []
        for fragment in fragments:
            try:
                vector = await self.embedder.embed(fragment.text)
            except ValueError as e:
                self._warn(report, f"Documentation chunk {fragment.index} rejected by embedding provider: {e}")
                continue
            chunks.append(DocumentationChunk.from_fragment(fragment, vector))
        return chunks

    def rank(self, endpoint: Endpoint, vector: Sequence[float], chunks: Sequence[DocumentationChunk]) -> List[MatchResult]:
        """Top-K chunks at or above the threshold, best first, earliest chunk on ties."""
        scored = []
        for chunk in chunks:
            similarity = map_similarity(cosine_similarity(vector, chunk.embedding), self.mapping)
            if similarity >= self.threshold:
                scored.append((similarity, chunk))
        scored.sort(key=lambda item: (-item[0], item[1].index))
        return [MatchResult(endpoint, chunk, similarity) for similarity, chunk in scored[: self.top_k]]

    async def match(self, endpoints: Sequence[Endpoint], fragments: Sequence[DocumentationFragment]) -> MatchReport:
        report = MatchReport(chunks=len(fragments))

        if self.embedder is None:
            self._warn(report, "No embedding provider configured, skipping documentation matching")
            report.available = False
            return self._finish(endpoints, report, {})

        if not fragments:
            logger.info("No documentation to match against")
            return self._finish(endpoints, report, {})

        try:
            chunks = await self.embed_chunks(fragments, report)
            vectors: Dict[Tuple[str, str, str], List[float]] = {}
            for endpoint in endpoints:
                try:
                    vectors[endpoint.key] = await self.embedder.embed(endpoint_descriptor(endpoint))
                except ValueError as e:
                    self._warn(report, f"Descriptor for {endpoint.label} rejected by embedding provider: {e}")
        except EmbeddingUnavailableError as e:
            self._warn(report, f"Embedding provider unavailable, all endpoints marked undocumented: {e}")
            report.available = False
            return self._finish(endpoints, report, {})

        report.chunks = len(chunks)
        ranked = {}
        for endpoint in endpoints:
            vector = vectors.get(endpoint.key)
            if vector is None:
                continue
            try:
                ranked[endpoint.key] = self.rank(endpoint, vector, chunks)
            except ValueError as e:
                self._warn(report, f"Cannot compare {endpoint.label} with documentation: {e}")

        return self._finish(endpoints, report, ranked)

    def _finish(self, endpoints: Sequence[Endpoint], report: MatchReport, ranked: Dict) -> MatchReport:
        for endpoint in endpoints:
            matches = ranked.get(endpoint.key, [])
            report.matches[endpoint.key] = matches
            endpoint.metadata.annotate(
                ANNOTATION_KEY,
                {
                    "documented": bool(matches),
                    "confidence": round(matches[0].similarity, 4) if matches else 0.0,
                    "sources": sorted({m.chunk.source_url for m in matches}),
                    "matches": [m.to_dict() for m in matches],
                },
            )

        logger.info(
            f"Documentation coverage: {report.documented}/{len(endpoints)} endpoints "
            f"(threshold {self.threshold}, top {self.top_k})"
        )
        return report

    def _warn(self, report: MatchReport, message: str):
        report.warnings.append(message)
        logger.warning(message)

"""
Ingestor registry: picks an ingestor per source and isolates failures.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from core.config import ScanConfig
from core.exceptions import IngestionError, NoEndpointsError, NoIngestorFoundError
from core.models import Endpoint
from core.utils import setup_logging

from .base import Ingestor, Source
from .gateway import GatewayIngestor
from .graphql import GraphQLIngestor
from .har import HARIngestor
from .openapi import OpenAPIIngestor
from .postman import PostmanIngestor

logger = setup_logging("ingestor_registry")

INGESTOR_FACTORIES = {
    "openapi": OpenAPIIngestor,
    "graphql": GraphQLIngestor,
    "postman": PostmanIngestor,
    "har": HARIngestor,
    "gateway": GatewayIngestor,
}

SourceSpec = Union[str, Tuple[str, Source]]


@dataclass
class IngestionOutcome:
    """Endpoints from every source that worked, and why the others did not."""

    endpoints: List[Endpoint] = field(default_factory=list)
    sources: List[Dict[str, Any]] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "endpoints": len(self.endpoints),
            "sources": self.sources,
            "failures": self.failures,
        }


class IngestorRegistry:
    """
    Flat registry of ingestors ordered by `ingestors.priority`.

    Usage:
        registry = IngestorRegistry(config)
        outcome = registry.ingest_all(["api.yaml", "traffic.har"])
    """

    def __init__(self, config: Optional[ScanConfig] = None, ingestors: Optional[Sequence[Ingestor]] = None):
        self.config = config or ScanConfig()
        self._ingestors: List[Ingestor] = []

        if ingestors is None:
            for name, factory in INGESTOR_FACTORIES.items():
                if self.config.ingestors.is_enabled(name):
                    self.register(factory(self.config))
                else:
                    logger.debug(f"Ingestor disabled: {name}")
        else:
            for ingestor in ingestors:
                self.register(ingestor)

    def register(self, ingestor: Ingestor):
        if not isinstance(ingestor, Ingestor):
            raise TypeError(f"{ingestor!r} does not implement the ingestor contract")
        self._ingestors.append(ingestor)

    @property
    def ingestors(self) -> List[Ingestor]:
        """Registered ingestors in priority order."""
        priority = list(self.config.ingestors.priority)
        ranked = [
            (priority.index(i.get_name()) if i.get_name() in priority else len(priority), n, i)
            for n, i in enumerate(self._ingestors)
        ]
        return [i for _, _, i in sorted(ranked, key=lambda r: (r[0], r[1]))]

    def names(self) -> List[str]:
        return [i.get_name() for i in self.ingestors]

    def select(self, identifier: str) -> Ingestor:
        """First ingestor, by priority, whose is_supported accepts the identifier."""
        for ingestor in self.ingestors:
            if ingestor.is_supported(identifier):
                return ingestor
        raise NoIngestorFoundError(identifier)

    def ingest(self, identifier: str, source: Source) -> List[Endpoint]:
        ingestor = self.select(identifier)
        logger.debug(f"{identifier} -> {ingestor.get_name()}")
        endpoints = ingestor.ingest(source)
        if not endpoints:
            raise IngestionError(f"{ingestor.get_name()} produced no endpoints")
        return list(endpoints)

    def ingest_path(self, path: Union[str, Path]) -> List[Endpoint]:
        path = Path(path)
        ingestor = self.select(path.name)
        try:
            content = path.read_bytes()
        except OSError as e:
            raise IngestionError(f"Cannot read {path}: {e}") from e
        endpoints = ingestor.ingest(content)
        if not endpoints:
            raise IngestionError(f"{ingestor.get_name()} produced no endpoints")
        return list(endpoints)

    def ingest_all(self, sources: Iterable[SourceSpec], require_endpoints: bool = False) -> IngestionOutcome:
        """
        Ingest every source, recording per-source failures.

        Each source is a file path or an (identifier, content) pair. With
        `require_endpoints`, raises NoEndpointsError when nothing was ingested.
        """
        outcome = IngestionOutcome()
        seen = set()

        for spec in sources:
            if isinstance(spec, tuple):
                identifier, content = spec
            else:
                identifier, content = str(spec), None

            try:
                if content is None:
                    ingestor_name = self.select(Path(identifier).name).get_name()
                    endpoints = self.ingest_path(identifier)
                else:
                    ingestor_name = self.select(identifier).get_name()
                    endpoints = self.ingest(identifier, content)
            except (IngestionError, NoIngestorFoundError) as e:
                logger.error(f"Ingestion failed for {identifier}: {e}")
                outcome.failures.append(
                    {
                        "source": identifier,
                        "error": type(e).__name__,
                        "reason": getattr(e, "reason", str(e)),
                        "excerpt": getattr(e, "source_excerpt", ""),
                    }
                )
                continue

            added = 0
            for endpoint in endpoints:
                if endpoint.key in seen:
                    continue
                seen.add(endpoint.key)
                outcome.endpoints.append(endpoint)
                added += 1

            outcome.sources.append({"source": identifier, "ingestor": ingestor_name, "endpoints": added})
            logger.info(f"Ingested {added} endpoints from {identifier} ({ingestor_name})")

        if require_endpoints and not outcome.endpoints:
            raise NoEndpointsError(f"No endpoints ingested from {len(outcome.failures)} source(s)")

        return outcome

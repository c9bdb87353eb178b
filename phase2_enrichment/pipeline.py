"""
Enrichment pipeline: ordered, independently toggleable passes over the
ingested endpoint set.

Each pass reads its inputs once (`prepare`), then annotates endpoints one at
a time under its own metadata key. Annotations are append-only, so running
the pipeline twice leaves the endpoints unchanged.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from core.config import ScanConfig
from core.exceptions import EnrichmentWarning
from core.models import Endpoint
from core.utils import setup_logging

logger = setup_logging("enrichment")


@dataclass
class EnrichmentWorkspace:
    """Inputs the passes read from, and what they leave behind."""

    source_map_dir: Optional[str] = None
    typescript_dir: Optional[str] = None
    source_root: Optional[str] = None
    indexes: Dict[str, Any] = field(default_factory=dict)
    warnings: List[EnrichmentWarning] = field(default_factory=list)
    discovered_routes: List[Dict[str, Any]] = field(default_factory=list)

    def warn(self, pass_name: str, message: str, endpoint: Optional[Endpoint] = None) -> EnrichmentWarning:
        warning = EnrichmentWarning(pass_name, message, endpoint.label if endpoint else None)
        self.warnings.append(warning)
        logger.warning(str(warning))
        return warning

    def to_dict(self) -> Dict[str, Any]:
        return {
            "warnings": [w.to_dict() for w in self.warnings],
            "discovered_routes": list(self.discovered_routes),
        }


@runtime_checkable
class EnrichmentPass(Protocol):
    """One enrichment step. `name` doubles as its metadata key."""

    name: str

    async def prepare(self, endpoints: List[Endpoint], workspace: EnrichmentWorkspace) -> None:
        ...

    def annotate(self, endpoint: Endpoint, workspace: EnrichmentWorkspace) -> Optional[Any]:
        ...


def default_passes(config: ScanConfig) -> List[EnrichmentPass]:
    from .code_discovery import CodeDiscoveryPass
    from .semantic import SemanticPass
    from .source_maps import SourceMapPass
    from .typescript import TypeScriptPass

    return [
        SourceMapPass(config),
        TypeScriptPass(config),
        SemanticPass(config),
        CodeDiscoveryPass(config),
    ]


class EnrichmentPipeline:
    """
    Applies the configured passes in order.

    A disabled pass leaves every endpoint untouched. A pass that fails while
    preparing is skipped; a pass that fails on one endpoint only loses that
    endpoint. Both cases are recorded as EnrichmentWarnings.
    """

    def __init__(self, config: Optional[ScanConfig] = None, passes: Optional[Sequence[EnrichmentPass]] = None):
        self.config = config or ScanConfig()
        self.passes = list(passes) if passes is not None else default_passes(self.config)

    async def run(self, endpoints: List[Endpoint], workspace: Optional[EnrichmentWorkspace] = None) -> List[Endpoint]:
        workspace = workspace or EnrichmentWorkspace()

        for enrichment_pass in self.passes:
            name = enrichment_pass.name
            if not self.config.enrichment.is_enabled(name):
                logger.debug(f"Enrichment pass disabled: {name}")
                continue

            try:
                await enrichment_pass.prepare(endpoints, workspace)
            except Exception as e:
                workspace.warn(name, f"pass skipped: {e}")
                continue

            annotated = 0
            for endpoint in endpoints:
                try:
                    value = enrichment_pass.annotate(endpoint, workspace)
                except Exception as e:
                    workspace.warn(name, str(e), endpoint)
                    continue
                if value is not None and endpoint.metadata.annotate(name, value):
                    annotated += 1

            logger.info(f"Enrichment pass {name}: annotated {annotated}/{len(endpoints)} endpoints")

        return endpoints

"""
SPECPROBE API Security Testing Pipeline - Phase 2: Enrichment
"""

from .pipeline import EnrichmentPass, EnrichmentPipeline, EnrichmentWorkspace, default_passes
from .source_maps import SourceMapPass
from .typescript import TypeScriptPass
from .semantic import SemanticPass
from .code_discovery import CodeDiscoveryPass

__all__ = [
    "EnrichmentPass",
    "EnrichmentPipeline",
    "EnrichmentWorkspace",
    "default_passes",
    "SourceMapPass",
    "TypeScriptPass",
    "SemanticPass",
    "CodeDiscoveryPass",
]

"""
SPECPROBE API Security Testing Pipeline - Phase 4: Probing
"""

from .payload_generator import PayloadGenerator, type_context
from .finding_classifier import FindingClassifier, combined_confidence
from .executor import ProbeExecutor, ProbeRun, ResultSink, build_request

__all__ = [
    "PayloadGenerator",
    "type_context",
    "FindingClassifier",
    "combined_confidence",
    "ProbeExecutor",
    "ProbeRun",
    "ResultSink",
    "build_request",
]

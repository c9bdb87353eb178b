"""
SPECPROBE API Security Testing Pipeline - Core Module
"""

from .config import ScanConfig, ValidationResult, build_config, load_config, validate_config
from .exceptions import (
    ConfigurationInvalidError,
    EmbeddingUnavailableError,
    EnrichmentWarning,
    IngestionError,
    InvalidProbeTransition,
    NoEndpointsError,
    NoIngestorFoundError,
    ProbeNetworkError,
    ProbeTimeoutError,
    SpecProbeError,
)
from .http_client import AsyncHTTPClient, HTTPResponse
from .models import (
    AnnotationStore,
    DocumentationChunk,
    DocumentationFragment,
    Endpoint,
    MatchResult,
    Parameter,
    ParameterLocation,
    Payload,
    Probe,
    ProbeState,
    RequestDescriptor,
)
from .payload_manager import PayloadManager
from .response_analyzer import ResponseAnalyzer
from .result_manager import Finding, ResultManager, RunReport, Severity
from .utils import setup_logging, normalize_url, safe_filename

__version__ = "1.0.0"
__all__ = [
    "ScanConfig",
    "ValidationResult",
    "build_config",
    "load_config",
    "validate_config",
    "ConfigurationInvalidError",
    "EmbeddingUnavailableError",
    "EnrichmentWarning",
    "IngestionError",
    "InvalidProbeTransition",
    "NoEndpointsError",
    "NoIngestorFoundError",
    "ProbeNetworkError",
    "ProbeTimeoutError",
    "SpecProbeError",
    "AsyncHTTPClient",
    "HTTPResponse",
    "AnnotationStore",
    "DocumentationChunk",
    "DocumentationFragment",
    "Endpoint",
    "MatchResult",
    "Parameter",
    "ParameterLocation",
    "Payload",
    "Probe",
    "ProbeState",
    "RequestDescriptor",
    "PayloadManager",
    "ResponseAnalyzer",
    "Finding",
    "ResultManager",
    "RunReport",
    "Severity",
    "setup_logging",
    "normalize_url",
    "safe_filename",
]

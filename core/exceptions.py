"""
Exception taxonomy for SPECPROBE.

Per-source and per-probe errors are caught and recorded by the stage that
raised them; only ConfigurationInvalidError and NoEndpointsError end a run.
"""

from typing import List, Optional


class SpecProbeError(Exception):
    """Base class for all SPECPROBE errors."""


class IngestionError(SpecProbeError):
    """A source is syntactically invalid or structurally unrecognized."""

    def __init__(self, reason: str, source_excerpt: str = ""):
        self.reason = reason
        self.source_excerpt = source_excerpt
        message = reason
        if source_excerpt:
            message = f"{reason} (source: {source_excerpt!r})"
        super().__init__(message)


class NoIngestorFoundError(SpecProbeError):
    """No registered ingestor accepts the identifier."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"No ingestor accepts '{identifier}'")


class EnrichmentWarning(SpecProbeError):
    """Non-fatal enrichment failure, recorded against one pass."""

    def __init__(self, pass_name: str, message: str, endpoint_key: Optional[str] = None):
        self.pass_name = pass_name
        self.message = message
        self.endpoint_key = endpoint_key
        where = f" [{endpoint_key}]" if endpoint_key else ""
        super().__init__(f"{pass_name}{where}: {message}")

    def to_dict(self):
        return {
            "pass": self.pass_name,
            "message": self.message,
            "endpoint": self.endpoint_key,
        }


class EmbeddingUnavailableError(SpecProbeError):
    """The embedding provider could not be reached."""


class ProbeNetworkError(SpecProbeError):
    """Transport failure that survived every retry."""

    def __init__(self, message: str, attempts: int = 1):
        self.attempts = attempts
        super().__init__(f"{message} (after {attempts} attempt(s))")


class ProbeTimeoutError(SpecProbeError):
    """A probe exceeded the configured timeout."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Request exceeded timeout of {timeout:.3f}s")


class ConfigurationInvalidError(SpecProbeError):
    """The configuration tree failed validation."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Invalid configuration: " + "; ".join(self.errors))


class NoEndpointsError(SpecProbeError):
    """Every source failed to ingest."""


class InvalidProbeTransition(SpecProbeError):
    """A probe was moved backwards or out of a terminal state."""

"""
Normalized data model shared by every pipeline phase.

Endpoints are immutable once an ingestor builds them; enrichment and the
documentation matcher only ever add entries to the attached AnnotationStore.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .exceptions import InvalidProbeTransition


class ParameterLocation(Enum):
    """Where a parameter travels in the HTTP request."""

    PATH = "path"
    QUERY = "query"
    HEADER = "header"
    BODY = "body"
    COOKIE = "cookie"


NUMERIC_TYPES = ("integer", "number")


@dataclass(frozen=True)
class Parameter:
    """Single endpoint parameter."""

    name: str
    location: ParameterLocation
    param_type: str = "string"
    required: bool = False
    format: Optional[str] = None

    @property
    def is_numeric(self) -> bool:
        return self.param_type in NUMERIC_TYPES

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "name": self.name,
            "in": self.location.value,
            "type": self.param_type,
            "required": self.required,
        }
        if self.format:
            data["format"] = self.format
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Parameter":
        return cls(
            name=data["name"],
            location=ParameterLocation(data.get("in", "query")),
            param_type=data.get("type", "string"),
            required=bool(data.get("required", False)),
            format=data.get("format"),
        )


class AnnotationStore:
    """
    Append-only metadata keyed by the pass that produced it.

    A key, once written, is never overwritten or removed. Writing an existing
    key is a no-op that returns False, which makes every enrichment pass
    idempotent.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = {}
        for key, value in (initial or {}).items():
            self.annotate(key, value)

    def annotate(self, key: str, value: Any) -> bool:
        if key in self._data:
            return False
        self._data[key] = value
        return True

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def keys(self) -> List[str]:
        return list(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"AnnotationStore({sorted(self._data)})"

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)


@dataclass(frozen=True)
class Endpoint:
    """
    One API operation in normalized form.

    Equality covers the identity (method, path, source_format) and the
    ordered parameter list. Descriptive fields and metadata do not take part.
    """

    method: str
    path: str
    source_format: str
    parameters: Tuple[Parameter, ...] = ()
    responses: Dict[str, Any] = field(default_factory=dict, compare=False)
    ingestor: str = field(default="", compare=False)
    summary: str = field(default="", compare=False)
    description: str = field(default="", compare=False)
    operation_id: Optional[str] = field(default=None, compare=False)
    tags: Tuple[str, ...] = field(default=(), compare=False)
    security: Tuple[str, ...] = field(default=(), compare=False)
    metadata: AnnotationStore = field(default_factory=AnnotationStore, compare=False, repr=False)

    def __post_init__(self):
        object.__setattr__(self, "method", self.method.upper())
        object.__setattr__(self, "parameters", tuple(self.parameters))
        object.__setattr__(self, "tags", tuple(self.tags))
        object.__setattr__(self, "security", tuple(self.security))
        if not self.ingestor:
            object.__setattr__(self, "ingestor", self.source_format)

    def __hash__(self) -> int:
        return hash((self.key, self.parameters))

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.method, self.path, self.source_format)

    @property
    def label(self) -> str:
        return f"{self.method} {self.path}"

    @property
    def documented(self) -> bool:
        return bool((self.metadata.get("documentation") or {}).get("documented", False))

    def parameters_in(self, location: ParameterLocation) -> List[Parameter]:
        return [p for p in self.parameters if p.location == location]

    def to_dict(self, include_metadata: bool = True) -> Dict[str, Any]:
        data = {
            "method": self.method,
            "path": self.path,
            "source_format": self.source_format,
            "ingestor": self.ingestor,
            "parameters": [p.to_dict() for p in self.parameters],
            "responses": self.responses,
            "summary": self.summary,
            "description": self.description,
            "operation_id": self.operation_id,
            "tags": list(self.tags),
            "security": list(self.security),
        }
        if include_metadata:
            data["metadata"] = self.metadata.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Endpoint":
        return cls(
            method=data["method"],
            path=data["path"],
            source_format=data["source_format"],
            parameters=tuple(Parameter.from_dict(p) for p in data.get("parameters", [])),
            responses=data.get("responses", {}),
            ingestor=data.get("ingestor", ""),
            summary=data.get("summary", ""),
            description=data.get("description", ""),
            operation_id=data.get("operation_id"),
            tags=tuple(data.get("tags", [])),
            security=tuple(data.get("security", [])),
            metadata=AnnotationStore(data.get("metadata")),
        )


@dataclass(frozen=True)
class DocumentationFragment:
    """Text unit cut from a documentation source, before embedding."""

    source_url: str
    text: str
    section: Optional[str] = None
    heading: Optional[str] = None
    index: int = 0


@dataclass(frozen=True)
class DocumentationChunk:
    """Embedded documentation text. `index` is its insertion order."""

    source_url: str
    text: str
    embedding: Tuple[float, ...]
    section: Optional[str] = None
    heading: Optional[str] = None
    index: int = 0

    @classmethod
    def from_fragment(cls, fragment: DocumentationFragment, embedding) -> "DocumentationChunk":
        return cls(
            source_url=fragment.source_url,
            text=fragment.text,
            embedding=tuple(float(x) for x in embedding),
            section=fragment.section,
            heading=fragment.heading,
            index=fragment.index,
        )


@dataclass(frozen=True)
class MatchResult:
    endpoint: Endpoint
    chunk: DocumentationChunk
    similarity: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "endpoint": self.endpoint.label,
            "source_url": self.chunk.source_url,
            "heading": self.chunk.heading,
            "similarity": round(self.similarity, 4),
        }


BASELINE_CLASS = "baseline"


@dataclass(frozen=True)
class Payload:
    """Attack input aimed at one parameter, tagged with its class."""

    vulnerability_class: str
    location: ParameterLocation
    parameter: str
    attack: str
    signatures: Tuple[str, ...] = ()
    technique: str = "generic"
    encoding: str = "none"

    @property
    def is_baseline(self) -> bool:
        return self.vulnerability_class == BASELINE_CLASS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vulnerability_class": self.vulnerability_class,
            "location": self.location.value,
            "parameter": self.parameter,
            "attack": self.attack,
            "technique": self.technique,
            "encoding": self.encoding,
        }


@dataclass(frozen=True)
class RequestDescriptor:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, str] = field(default_factory=dict)
    json_body: Optional[Any] = None


class ProbeState(Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({ProbeState.COMPLETED, ProbeState.FAILED, ProbeState.TIMED_OUT})

_ALLOWED_TRANSITIONS = {
    ProbeState.PENDING: frozenset({ProbeState.IN_FLIGHT}),
    ProbeState.IN_FLIGHT: TERMINAL_STATES,
}


@dataclass
class Probe:
    """One scheduled request: endpoint, payload and built request."""

    probe_id: int
    endpoint: Endpoint
    payload: Payload
    request: RequestDescriptor
    state: ProbeState = ProbeState.PENDING
    response: Optional[Any] = None
    error: Optional[str] = None
    attempts: int = 0
    elapsed: float = 0.0

    def transition(self, new_state: ProbeState):
        allowed = _ALLOWED_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise InvalidProbeTransition(
                f"Probe {self.probe_id}: {self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.probe_id,
            "endpoint": self.endpoint.label,
            "payload": self.payload.to_dict(),
            "url": self.request.url,
            "state": self.state.value,
            "status": getattr(self.response, "status", None),
            "error": self.error,
            "attempts": self.attempts,
            "elapsed": round(self.elapsed, 4),
        }

"""
Ingestor contract and helpers shared by the format ingestors.

Ingestors do not inherit from a common base; anything that satisfies the
Ingestor protocol can be registered.
"""

import json
import re
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple, Union, runtime_checkable

from core.exceptions import IngestionError
from core.models import Parameter, ParameterLocation
from core.utils import excerpt, load_document

Source = Union[str, bytes]

HTTP_METHODS = ("get", "post", "put", "patch", "delete", "head", "options", "trace")

PATH_PARAM_RE = re.compile(r"\{([^}/]+)\}")


@runtime_checkable
class Ingestor(Protocol):
    """Capability set every format ingestor provides."""

    def get_name(self) -> str:
        ...

    def get_supported_extensions(self) -> Tuple[str, ...]:
        ...

    def is_supported(self, identifier: str) -> bool:
        ...

    def ingest(self, source: Source) -> list:
        ...


def decode_source(source: Source) -> str:
    if isinstance(source, bytes):
        return source.decode("utf-8", errors="replace")
    return source


def parse_structured(source: Source, what: str) -> Any:
    """Parse JSON/YAML text or raise IngestionError with an excerpt."""
    text = decode_source(source)
    if not text.strip():
        raise IngestionError(f"Empty {what} source")
    try:
        return load_document(text)
    except ValueError as e:
        raise IngestionError(f"Malformed {what} document: {e}", excerpt(text)) from e


def identifier_matches(
    identifier: str,
    extensions: Iterable[str],
    content_types: Iterable[str] = (),
) -> bool:
    """
    True when a file name ends with one of the extensions, or when a
    content type (parameters stripped) is one of the content types.
    """
    if not identifier:
        return False
    ident = identifier.strip().lower()
    media_type = ident.split(";", 1)[0].strip()
    if media_type in content_types:
        return True
    name = ident.replace("\\", "/").rsplit("/", 1)[-1]
    return any(name == ext or name.endswith(ext) for ext in extensions)


def path_parameter_names(path: str) -> List[str]:
    return PATH_PARAM_RE.findall(path)


def json_type_of(value: Any) -> str:
    """JSON type name of a Python value."""
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return "string"


def guess_type(raw: Optional[str]) -> str:
    """Declared type for a parameter observed only as a string value."""
    if raw is None:
        return "string"
    value = str(raw).strip()
    if re.fullmatch(r"-?\d+", value):
        return "integer"
    if re.fullmatch(r"-?\d+\.\d+", value):
        return "number"
    if value.lower() in ("true", "false"):
        return "boolean"
    return "string"


def infer_schema(value: Any, depth: int = 0) -> Dict[str, Any]:
    """JSON-schema-like shape of a sample value."""
    kind = json_type_of(value)
    if value is None:
        return {"type": "null"}
    if kind == "object" and depth < 5:
        return {
            "type": "object",
            "properties": {k: infer_schema(v, depth + 1) for k, v in value.items()},
        }
    if kind == "array" and depth < 5:
        return {"type": "array", "items": infer_schema(value[0], depth + 1) if value else {}}
    return {"type": kind}


def body_parameters_from_sample(sample: Any, required: bool = False) -> List[Parameter]:
    """One body parameter per top-level key of a JSON object sample."""
    if isinstance(sample, dict):
        return [
            Parameter(name=str(k), location=ParameterLocation.BODY, param_type=json_type_of(v), required=required)
            for k, v in sample.items()
        ]
    if sample is not None:
        return [Parameter(name="body", location=ParameterLocation.BODY, param_type=json_type_of(sample), required=required)]
    return []


def try_json(text: Optional[str]) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return None


def merge_parameters(existing: Iterable[Parameter], extra: Iterable[Parameter]) -> List[Parameter]:
    """Union keyed on (name, location); earlier entries win."""
    merged = list(existing)
    seen = {(p.name, p.location) for p in merged}
    for param in extra:
        if (param.name, param.location) not in seen:
            merged.append(param)
            seen.add((param.name, param.location))
    return merged


def ensure_path_parameters(path: str, params: List[Parameter], param_type: str = "string") -> List[Parameter]:
    """Add a required path parameter for every template variable not declared."""
    declared = {p.name for p in params if p.location == ParameterLocation.PATH}
    missing = [
        Parameter(name=name, location=ParameterLocation.PATH, param_type=param_type, required=True)
        for name in path_parameter_names(path)
        if name not in declared
    ]
    return missing + list(params) if missing else list(params)


def normalize_path(path: str) -> str:
    """Leading slash, no trailing slash (except root), no duplicate slashes."""
    path = re.sub(r"/{2,}", "/", "/" + path.strip().lstrip("/"))
    if len(path) > 1:
        path = path.rstrip("/")
    return path

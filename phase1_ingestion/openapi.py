"""
OpenAPI / Swagger ingestor, plus an OpenAPI 3 exporter for endpoint sets.
"""

from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.config import ScanConfig
from core.exceptions import IngestionError
from core.models import Endpoint, Parameter, ParameterLocation
from core.utils import excerpt, setup_logging

from .base import (
    HTTP_METHODS,
    Source,
    decode_source,
    ensure_path_parameters,
    identifier_matches,
    parse_structured,
)

logger = setup_logging("openapi_ingestor")

NAME = "openapi"

_LOCATIONS = {
    "path": ParameterLocation.PATH,
    "query": ParameterLocation.QUERY,
    "header": ParameterLocation.HEADER,
    "cookie": ParameterLocation.COOKIE,
    "body": ParameterLocation.BODY,
    "formData": ParameterLocation.BODY,
}


class OpenAPIIngestor:
    """
    Parses Swagger 2.0 and OpenAPI 3.0/3.1 documents (JSON or YAML).

    Local $refs are resolved. Parameters are ordered with path, query,
    header and cookie parameters in declaration order, then body fields.
    """

    EXTENSIONS = (".json", ".yaml", ".yml")
    CONTENT_TYPES = (
        "application/openapi+json",
        "application/openapi+yaml",
        "application/vnd.oai.openapi",
        "application/vnd.oai.openapi+json",
        "application/swagger+json",
    )

    def __init__(self, config: Optional[ScanConfig] = None):
        config = config or ScanConfig()
        self.versions = tuple(config.ingestors.openapi_versions)

    def get_name(self) -> str:
        return NAME

    def get_supported_extensions(self) -> Tuple[str, ...]:
        return self.EXTENSIONS

    def is_supported(self, identifier: str) -> bool:
        return identifier_matches(identifier, self.EXTENSIONS, self.CONTENT_TYPES)

    def ingest(self, source: Source) -> List[Endpoint]:
        data = parse_structured(source, "OpenAPI")
        snippet = excerpt(decode_source(source))

        if not isinstance(data, dict):
            raise IngestionError("OpenAPI document must be a mapping", snippet)

        # Check if it's a valid OpenAPI/Swagger spec
        if "swagger" not in data and "openapi" not in data:
            raise IngestionError("Missing 'openapi' or 'swagger' version key", snippet)

        version = self._version(data)
        if version not in self.versions:
            raise IngestionError(f"Unsupported OpenAPI version {version}", snippet)

        paths = data.get("paths")
        if not isinstance(paths, dict):
            raise IngestionError("Missing 'paths' object", snippet)

        resolver = _RefResolver(data)
        global_security = _security_names(data.get("security", []))
        servers = self._servers(data)

        endpoints = []
        for path, path_item in paths.items():
            path_item = resolver.resolve(path_item)
            if not isinstance(path_item, dict):
                continue

            shared_params = path_item.get("parameters", [])

            for method, operation in path_item.items():
                if method.lower() not in HTTP_METHODS:
                    continue
                operation = resolver.resolve(operation)
                if not isinstance(operation, dict):
                    continue

                params = self._parameters(shared_params, operation.get("parameters", []), resolver)
                body = self._request_body(operation.get("requestBody"), resolver)
                params = ensure_path_parameters(path, _merge_ordered(params, body))

                security = operation.get("security")
                endpoint = Endpoint(
                    method=method.upper(),
                    path=path,
                    source_format=NAME,
                    parameters=tuple(params),
                    responses=self._responses(operation.get("responses", {}), resolver),
                    ingestor=NAME,
                    summary=operation.get("summary", "") or "",
                    description=operation.get("description", "") or "",
                    operation_id=operation.get("operationId"),
                    tags=tuple(operation.get("tags", [])),
                    security=tuple(global_security if security is None else _security_names(security)),
                )
                endpoint.metadata.annotate(
                    "ingestion",
                    {"version": version, "servers": servers, "deprecated": bool(operation.get("deprecated"))},
                )
                endpoints.append(endpoint)

        if not endpoints:
            raise IngestionError("OpenAPI document defines no operations", snippet)

        logger.info(f"Parsed {len(endpoints)} operations from OpenAPI {version} document")
        return endpoints

    def _version(self, data: Dict[str, Any]) -> str:
        # Detect version
        if "swagger" in data:
            return str(data["swagger"])
        parts = str(data["openapi"]).split(".")
        return ".".join(parts[:2])

    def _servers(self, data: Dict[str, Any]) -> List[str]:
        # Servers/Base URL
        if "servers" in data:
            return [s.get("url", "") for s in data["servers"] if isinstance(s, dict)]
        if "host" in data:
            scheme = (data.get("schemes") or ["https"])[0]
            return [f"{scheme}://{data['host']}{data.get('basePath', '')}"]
        return []

    def _parameters(self, shared: List, own: List, resolver: "_RefResolver") -> List[Parameter]:
        """Path-level parameters overridden by operation-level ones."""
        by_key: Dict[Tuple[str, str], Dict] = {}
        for raw in list(shared or []) + list(own or []):
            raw = resolver.resolve(raw)
            if not isinstance(raw, dict) or "name" not in raw:
                continue
            by_key[(raw["name"], raw.get("in", "query"))] = raw

        params = []
        for raw in by_key.values():
            location = raw.get("in", "query")
            if location == "body":
                params.extend(_schema_properties(resolver.resolve(raw.get("schema", {})), resolver, raw["name"]))
                continue
            if location not in _LOCATIONS:
                continue
            schema = resolver.resolve(raw.get("schema", {})) or {}
            params.append(
                Parameter(
                    name=raw["name"],
                    location=_LOCATIONS[location],
                    param_type=raw.get("type") or schema.get("type") or "string",
                    required=bool(raw.get("required", location == "path")) or location == "path",
                    format=raw.get("format") or schema.get("format"),
                )
            )
        return params

    def _request_body(self, body: Any, resolver: "_RefResolver") -> List[Parameter]:
        body = resolver.resolve(body)
        if not isinstance(body, dict):
            return []
        content = body.get("content", {})
        if not content:
            return []
        media = content.get("application/json") or next(iter(content.values()))
        schema = resolver.resolve((media or {}).get("schema", {}))
        return _schema_properties(schema, resolver, "body")

    def _responses(self, responses: Dict, resolver: "_RefResolver") -> Dict[str, Any]:
        result = {}
        for status, response in (responses or {}).items():
            response = resolver.resolve(response)
            if not isinstance(response, dict):
                continue
            schema = response.get("schema")
            if schema is None:
                content = response.get("content", {})
                media = content.get("application/json") or (next(iter(content.values())) if content else {})
                schema = (media or {}).get("schema")
            entry = {"description": response.get("description", "")}
            if schema is not None:
                entry["schema"] = resolver.resolve(schema, deep=True)
            result[str(status)] = entry
        return result


class _RefResolver:
    """Resolves local JSON pointers ("#/components/schemas/User")."""

    def __init__(self, document: Dict[str, Any], max_depth: int = 8):
        self.document = document
        self.max_depth = max_depth

    def lookup(self, ref: str) -> Any:
        if not ref.startswith("#/"):
            return {}
        node: Any = self.document
        for part in ref[2:].split("/"):
            part = part.replace("~1", "/").replace("~0", "~")
            if not isinstance(node, dict) or part not in node:
                return {}
            node = node[part]
        return node

    def resolve(self, node: Any, deep: bool = False, depth: int = 0) -> Any:
        seen = 0
        while isinstance(node, dict) and "$ref" in node and seen < self.max_depth:
            node = self.lookup(node["$ref"])
            seen += 1
        if not deep or depth >= self.max_depth:
            return node
        if isinstance(node, dict):
            return {k: self.resolve(v, True, depth + 1) for k, v in node.items()}
        if isinstance(node, list):
            return [self.resolve(v, True, depth + 1) for v in node]
        return node


def _schema_properties(schema: Any, resolver: _RefResolver, fallback_name: str) -> List[Parameter]:
    """Expand an object schema into body parameters, one per property."""
    if not isinstance(schema, dict):
        return []
    if "allOf" in schema:
        merged = {"type": "object", "properties": {}, "required": []}
        for part in schema["allOf"]:
            part = resolver.resolve(part) or {}
            merged["properties"].update(part.get("properties", {}))
            merged["required"].extend(part.get("required", []))
        schema = merged

    properties = schema.get("properties")
    if isinstance(properties, dict) and properties:
        required = set(schema.get("required", []))
        params = []
        for name, prop in properties.items():
            prop = resolver.resolve(prop) or {}
            params.append(
                Parameter(
                    name=name,
                    location=ParameterLocation.BODY,
                    param_type=prop.get("type") or ("object" if "properties" in prop else "string"),
                    required=name in required,
                    format=prop.get("format"),
                )
            )
        return params

    return [
        Parameter(
            name=fallback_name,
            location=ParameterLocation.BODY,
            param_type=schema.get("type", "object"),
            required=True,
            format=schema.get("format"),
        )
    ]


def _merge_ordered(params: List[Parameter], body: List[Parameter]) -> List[Parameter]:
    non_body = [p for p in params if p.location != ParameterLocation.BODY]
    body_params = [p for p in params if p.location == ParameterLocation.BODY] + body
    return non_body + body_params


def _security_names(requirements: Iterable) -> List[str]:
    names = []
    for requirement in requirements or []:
        if isinstance(requirement, dict):
            for name in requirement:
                if name not in names:
                    names.append(name)
    return names


def export_openapi(endpoints: Iterable[Endpoint], title: str = "specprobe export", version: str = "1.0.0") -> Dict[str, Any]:
    """
    Serialize endpoints as an OpenAPI 3.0 document.

    Re-ingesting the result with OpenAPIIngestor yields endpoints with the
    same method, path and parameter list.
    """
    paths: Dict[str, Dict[str, Any]] = {}

    for endpoint in endpoints:
        operation: Dict[str, Any] = {}
        if endpoint.operation_id:
            operation["operationId"] = endpoint.operation_id
        if endpoint.summary:
            operation["summary"] = endpoint.summary
        if endpoint.description:
            operation["description"] = endpoint.description
        if endpoint.tags:
            operation["tags"] = list(endpoint.tags)

        parameters = []
        body_props: Dict[str, Any] = {}
        body_required = []
        for param in endpoint.parameters:
            schema = {"type": param.param_type}
            if param.format:
                schema["format"] = param.format
            if param.location == ParameterLocation.BODY:
                body_props[param.name] = schema
                if param.required:
                    body_required.append(param.name)
                continue
            parameters.append(
                {
                    "name": param.name,
                    "in": param.location.value,
                    "required": param.required,
                    "schema": schema,
                }
            )
        if parameters:
            operation["parameters"] = parameters
        if body_props:
            body_schema: Dict[str, Any] = {"type": "object", "properties": body_props}
            if body_required:
                body_schema["required"] = body_required
            operation["requestBody"] = {"content": {"application/json": {"schema": body_schema}}}

        responses = {}
        for status, response in endpoint.responses.items():
            entry = {"description": (response or {}).get("description", "") or "Response"}
            schema = (response or {}).get("schema")
            if schema is not None:
                entry["content"] = {"application/json": {"schema": schema}}
            responses[str(status)] = entry
        operation["responses"] = responses or {"default": {"description": "Response"}}

        if endpoint.security:
            operation["security"] = [{name: []} for name in endpoint.security]

        paths.setdefault(endpoint.path, {})[endpoint.method.lower()] = operation

    return {
        "openapi": "3.0.3",
        "info": {"title": title, "version": version},
        "paths": paths,
    }

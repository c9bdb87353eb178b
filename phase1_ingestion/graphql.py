"""
GraphQL ingestor: introspection results (JSON) and SDL schema files.

Every Query and Mutation root field becomes one POST endpoint addressed as
`<endpoint_path>#<operation>.<field>`. Subscriptions are not probed.
"""

import json
import re
from typing import Any, Dict, List, Optional, Tuple

from core.config import ScanConfig
from core.exceptions import IngestionError
from core.models import Endpoint, Parameter, ParameterLocation
from core.utils import excerpt, setup_logging

from .base import Source, decode_source, identifier_matches

logger = setup_logging("graphql_ingestor")

NAME = "graphql"

SCALAR_TYPES = {
    "Int": "integer",
    "Float": "number",
    "Boolean": "boolean",
    "String": "string",
    "ID": "string",
}

ROOT_OPERATIONS = ("query", "mutation")

INTROSPECTION_QUERY = """
query IntrospectionQuery {
  __schema {
    queryType { name }
    mutationType { name }
    subscriptionType { name }
    types {
      kind
      name
      description
      fields(includeDeprecated: true) {
        name
        description
        args { ...InputValue }
        type { ...TypeRef }
        isDeprecated
      }
      inputFields { ...InputValue }
      enumValues(includeDeprecated: true) { name }
    }
  }
}

fragment InputValue on __InputValue {
  name
  description
  type { ...TypeRef }
  defaultValue
}

fragment TypeRef on __Type {
  kind
  name
  ofType {
    kind
    name
    ofType {
      kind
      name
      ofType {
        kind
        name
        ofType { kind name }
      }
    }
  }
}
"""


class GraphQLIngestor:
    """Turns a GraphQL schema into one endpoint per root field."""

    EXTENSIONS = (".graphql", ".graphqls", ".gql", ".sdl", ".introspection.json")
    CONTENT_TYPES = ("application/graphql", "application/graphql+json")

    def __init__(self, config: Optional[ScanConfig] = None):
        config = config or ScanConfig()
        self.endpoint_path = config.ingestors.graphql_endpoint_path or "/graphql"

    def get_name(self) -> str:
        return NAME

    def get_supported_extensions(self) -> Tuple[str, ...]:
        return self.EXTENSIONS

    def is_supported(self, identifier: str) -> bool:
        return identifier_matches(identifier, self.EXTENSIONS, self.CONTENT_TYPES)

    def ingest(self, source: Source) -> List[Endpoint]:
        text = decode_source(source)
        if not text.strip():
            raise IngestionError("Empty GraphQL source")

        schema = self._introspection_schema(text)
        if schema is not None:
            roots = self._roots_from_introspection(schema)
            via = "introspection"
        else:
            roots = self._roots_from_sdl(text)
            via = "sdl"

        endpoints = []
        for operation, fields in roots:
            for gql_field in fields:
                endpoint = Endpoint(
                    method="POST",
                    path=f"{self.endpoint_path}#{operation}.{gql_field['name']}",
                    source_format=NAME,
                    parameters=tuple(
                        Parameter(
                            name=arg["name"],
                            location=ParameterLocation.BODY,
                            param_type=arg["json_type"],
                            required=arg["type"].endswith("!"),
                            format=arg["type"],
                        )
                        for arg in gql_field["args"]
                    ),
                    responses={"200": {"description": "", "schema": {"graphql_type": gql_field["type"]}}},
                    ingestor=NAME,
                    summary=gql_field.get("description") or "",
                    operation_id=f"{operation}.{gql_field['name']}",
                    tags=(operation,),
                )
                endpoint.metadata.annotate(
                    "ingestion",
                    {
                        "via": via,
                        "operation": operation,
                        "field": gql_field["name"],
                        "return_type": gql_field["type"],
                        "deprecated": gql_field.get("deprecated", False),
                    },
                )
                endpoints.append(endpoint)

        if not endpoints:
            raise IngestionError("GraphQL schema defines no query or mutation fields", excerpt(text))

        logger.info(f"Parsed {len(endpoints)} GraphQL operations ({via})")
        return endpoints

    def _introspection_schema(self, text: str) -> Optional[Dict[str, Any]]:
        stripped = text.lstrip()
        if not stripped.startswith("{"):
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise IngestionError(f"Malformed introspection JSON: {e}", excerpt(text)) from e
        if not isinstance(data, dict):
            raise IngestionError("Introspection result must be an object", excerpt(text))
        schema = data.get("__schema") or (data.get("data") or {}).get("__schema")
        if not isinstance(schema, dict):
            raise IngestionError("Missing '__schema' in introspection result", excerpt(text))
        return schema

    def _roots_from_introspection(self, schema: Dict[str, Any]) -> List[Tuple[str, List[Dict]]]:
        types = {t.get("name"): t for t in schema.get("types", []) or [] if isinstance(t, dict)}
        kinds = {name: t.get("kind", "") for name, t in types.items()}

        roots = []
        for operation in ROOT_OPERATIONS:
            root_ref = schema.get(f"{operation}Type") or {}
            root = types.get(root_ref.get("name"))
            if not root:
                continue
            fields = []
            for field_data in root.get("fields", []) or []:
                args = []
                for arg_data in field_data.get("args", []) or []:
                    type_name = _get_type_name(arg_data.get("type", {}))
                    args.append(
                        {
                            "name": arg_data.get("name", ""),
                            "type": type_name,
                            "json_type": _json_type(type_name, kinds),
                        }
                    )
                fields.append(
                    {
                        "name": field_data.get("name", ""),
                        "type": _get_type_name(field_data.get("type", {})),
                        "args": args,
                        "description": field_data.get("description") or "",
                        "deprecated": field_data.get("isDeprecated", False),
                    }
                )
            roots.append((operation, fields))
        return roots

    def _roots_from_sdl(self, text: str) -> List[Tuple[str, List[Dict]]]:
        cleaned = _strip_sdl_noise(text)
        if not re.search(r"\b(type|schema|extend\s+type)\b", cleaned):
            raise IngestionError("Not a GraphQL schema (no type definitions)", excerpt(text))

        root_names = {"query": "Query", "mutation": "Mutation"}
        schema_block = re.search(r"\bschema\s*\{([^}]*)\}", cleaned)
        if schema_block:
            for op, type_name in re.findall(r"(query|mutation|subscription)\s*:\s*(\w+)", schema_block.group(1)):
                root_names[op] = type_name

        kinds: Dict[str, str] = {}
        for kind, name in re.findall(r"\b(enum|input|scalar|type|interface|union)\s+(\w+)", cleaned):
            kinds.setdefault(name, {"enum": "ENUM", "input": "INPUT_OBJECT", "scalar": "SCALAR"}.get(kind, "OBJECT"))

        roots = []
        for operation in ROOT_OPERATIONS:
            type_name = root_names[operation]
            bodies = re.findall(
                rf"(?:extend\s+)?type\s+{type_name}\b[^{{]*\{{([^}}]*)\}}",
                cleaned,
            )
            fields = []
            for body in bodies:
                fields.extend(_parse_sdl_fields(body, kinds))
            if fields:
                roots.append((operation, fields))
        return roots


def _get_type_name(type_data: Dict) -> str:
    """Extract type name from nested type structure."""
    if not type_data:
        return ""

    kind = type_data.get("kind", "")
    name = type_data.get("name", "")

    if name:
        return name

    if kind == "NON_NULL":
        return f"{_get_type_name(type_data.get('ofType', {}))}!"
    elif kind == "LIST":
        return f"[{_get_type_name(type_data.get('ofType', {}))}]"

    of_type = type_data.get("ofType")
    if of_type:
        return _get_type_name(of_type)

    return ""


def _json_type(type_name: str, kinds: Dict[str, str]) -> str:
    """JSON type for a GraphQL type reference such as `[ID!]!`."""
    bare = type_name.rstrip("!")
    if bare.startswith("["):
        return "array"
    if bare in SCALAR_TYPES:
        return SCALAR_TYPES[bare]
    kind = kinds.get(bare, "")
    if kind == "INPUT_OBJECT":
        return "object"
    return "string"


def _strip_sdl_noise(text: str) -> str:
    """Remove descriptions, comments and directives from SDL."""
    text = re.sub(r'"""[\s\S]*?"""', " ", text)
    text = re.sub(r'"(?:[^"\\\n]|\\.)*"', '""', text)
    text = re.sub(r"#[^\n]*", " ", text)
    text = re.sub(r"@\w+(\s*\([^)]*\))?", " ", text)
    return text


_FIELD_RE = re.compile(r"(\w+)\s*(?:\(([^)]*)\))?\s*:\s*([\[\]\w!]+)")
_ARG_RE = re.compile(r"(\w+)\s*:\s*([\[\]\w!]+)")


def _parse_sdl_fields(body: str, kinds: Dict[str, str]) -> List[Dict]:
    fields = []
    for name, raw_args, type_name in _FIELD_RE.findall(body):
        args = [
            {"name": arg_name, "type": arg_type, "json_type": _json_type(arg_type, kinds)}
            for arg_name, arg_type in _ARG_RE.findall(raw_args or "")
        ]
        fields.append({"name": name, "type": type_name, "args": args, "description": "", "deprecated": False})
    return fields


def graphql_operation(endpoint: Endpoint) -> Optional[Tuple[str, str]]:
    """(operation, field) for an endpoint produced by this ingestor."""
    if endpoint.source_format != NAME or "#" not in endpoint.path:
        return None
    operation, _, field_name = endpoint.path.split("#", 1)[1].partition(".")
    return operation, field_name


def build_graphql_document(endpoint: Endpoint) -> str:
    """Query document exercising one root field with every argument bound."""
    operation, field_name = graphql_operation(endpoint) or ("query", endpoint.path)
    variables = endpoint.parameters_in(ParameterLocation.BODY)
    declared = ", ".join(f"${p.name}: {p.format or 'String'}" for p in variables)
    bound = ", ".join(f"{p.name}: ${p.name}" for p in variables)
    head = f"{operation} Probe({declared})" if declared else f"{operation} Probe"
    call = f"{field_name}({bound})" if bound else field_name
    return_type = (endpoint.metadata.get("ingestion") or {}).get("return_type", "")
    selection = "" if return_type.strip("[]!") in SCALAR_TYPES else " { __typename }"
    return f"{head} {{ {call}{selection} }}"

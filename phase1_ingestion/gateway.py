"""
API gateway configuration ingestor.

Supported providers:
- kong: declarative config (services/routes)
- aws: SAM / CloudFormation templates (Api events, AWS::ApiGateway::Method)
- istio: VirtualService manifests
- nginx: `location` blocks of a server configuration
"""

import re
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from core.config import ScanConfig
from core.exceptions import IngestionError
from core.models import Endpoint, Parameter, ParameterLocation
from core.utils import excerpt, setup_logging

from .base import Source, decode_source, ensure_path_parameters, identifier_matches, normalize_path

logger = setup_logging("gateway_ingestor")

NAME = "gateway"

DEFAULT_METHOD = "GET"
ANY_METHODS = {"ANY", "*", "X-AMAZON-APIGATEWAY-ANY-METHOD"}
PROXY_DIRECTIVES = ("proxy_pass", "grpc_pass", "fastcgi_pass", "uwsgi_pass", "return")


class _CloudFormationLoader(yaml.SafeLoader):
    """SafeLoader that understands CloudFormation short-form tags (!Ref, !GetAtt...)."""


def _construct_intrinsic(loader: yaml.SafeLoader, suffix: str, node: yaml.Node) -> Dict[str, Any]:
    if isinstance(node, yaml.ScalarNode):
        value: Any = loader.construct_scalar(node)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)
    key = "Ref" if suffix == "Ref" else f"Fn::{suffix}"
    return {key: value}


_CloudFormationLoader.add_multi_constructor("!", _construct_intrinsic)


class GatewayIngestor:
    """Reads routes out of gateway configuration for the enabled providers."""

    EXTENSIONS = (
        ".gateway.json",
        ".gateway.yaml",
        ".gateway.yml",
        ".conf",
        "kong.yml",
        "kong.yaml",
        "template.yaml",
        "template.yml",
        "template.json",
        ".istio.yaml",
        ".istio.yml",
    )
    CONTENT_TYPES = ("text/x-nginx-conf",)

    def __init__(self, config: Optional[ScanConfig] = None):
        config = config or ScanConfig()
        self.providers = tuple(config.ingestors.gateway_providers)

    def get_name(self) -> str:
        return NAME

    def get_supported_extensions(self) -> Tuple[str, ...]:
        return self.EXTENSIONS

    def is_supported(self, identifier: str) -> bool:
        return identifier_matches(identifier, self.EXTENSIONS, self.CONTENT_TYPES)

    def ingest(self, source: Source) -> List[Endpoint]:
        text = decode_source(source)
        snippet = excerpt(text)
        if not text.strip():
            raise IngestionError("Empty gateway configuration")

        provider, routes = self._detect(text, snippet)
        if provider not in self.providers:
            raise IngestionError(f"Gateway provider '{provider}' is disabled", snippet)

        endpoints = []
        seen = set()
        for route in routes:
            key = (route["method"], route["path"])
            if key in seen:
                continue
            seen.add(key)
            params = ensure_path_parameters(route["path"], route.get("params", []))
            endpoint = Endpoint(
                method=route["method"],
                path=route["path"],
                source_format=NAME,
                parameters=tuple(params),
                ingestor=NAME,
                summary=route.get("name", ""),
                tags=tuple(t for t in [route.get("service")] if t),
            )
            endpoint.metadata.annotate("ingestion", {"provider": provider, "upstream": route.get("upstream")})
            endpoints.append(endpoint)

        if not endpoints:
            raise IngestionError(f"No routes found in {provider} configuration", snippet)

        logger.info(f"Parsed {len(endpoints)} routes from {provider} configuration")
        return endpoints

    def _detect(self, text: str, snippet: str) -> Tuple[str, List[Dict[str, Any]]]:
        if re.search(r"\blocation\s+[^{;]*\{", text) and not text.lstrip().startswith(("{", "---")):
            return "nginx", _nginx_routes(text)

        try:
            documents = [d for d in yaml.load_all(text, Loader=_CloudFormationLoader) if d is not None]
        except yaml.YAMLError as e:
            raise IngestionError(f"Malformed gateway configuration: {e}", snippet) from e

        if not documents or not all(isinstance(d, dict) for d in documents):
            raise IngestionError("Gateway configuration must be a mapping", snippet)

        detectors: List[Tuple[str, Callable[[List[Dict]], bool], Callable[[List[Dict]], List[Dict]]]] = [
            ("istio", _is_istio, _istio_routes),
            ("aws", _is_aws, lambda docs: _aws_routes(docs[0])),
            ("kong", _is_kong, lambda docs: _kong_routes(docs[0])),
        ]
        for provider, matches, extract in detectors:
            if matches(documents):
                return provider, extract(documents)

        raise IngestionError("Unrecognized gateway configuration", snippet)


def _methods(raw: Any) -> List[str]:
    if isinstance(raw, str):
        raw = [raw]
    methods = [str(m).upper() for m in (raw or [])]
    methods = [DEFAULT_METHOD if m in ANY_METHODS else m for m in methods]
    return list(dict.fromkeys(methods)) or [DEFAULT_METHOD]


def _clean_path(path: str) -> str:
    """Turn provider-specific path syntax into `{name}` templates."""
    path = path.lstrip("~")
    path = re.sub(r"\(\?<(\w+)>[^)]*\)", r"{\1}", path)  # kong named captures
    path = re.sub(r"\{(\w+)\+\}", r"{\1}", path)  # aws greedy proxy
    path = path.replace("^", "").replace("$", "")
    return normalize_path(path)


def _is_kong(docs: List[Dict]) -> bool:
    doc = docs[0]
    return "_format_version" in doc or isinstance(doc.get("services"), list) or isinstance(doc.get("routes"), list)


def _kong_routes(doc: Dict) -> List[Dict[str, Any]]:
    routes = []

    def add(route: Dict, service: Optional[Dict]):
        for path in route.get("paths") or []:
            for method in _methods(route.get("methods")):
                routes.append(
                    {
                        "method": method,
                        "path": _clean_path(str(path)),
                        "name": route.get("name", ""),
                        "service": (service or {}).get("name"),
                        "upstream": (service or {}).get("url") or (service or {}).get("host"),
                    }
                )

    for service in doc.get("services") or []:
        if isinstance(service, dict):
            for route in service.get("routes") or []:
                if isinstance(route, dict):
                    add(route, service)
    for route in doc.get("routes") or []:
        if isinstance(route, dict):
            add(route, None)
    return routes


def _is_aws(docs: List[Dict]) -> bool:
    doc = docs[0]
    return isinstance(doc.get("Resources"), dict) and (
        "AWSTemplateFormatVersion" in doc or "Transform" in doc or any(
            str((r or {}).get("Type", "")).startswith("AWS::") for r in doc["Resources"].values() if isinstance(r, dict)
        )
    )


def _aws_routes(doc: Dict) -> List[Dict[str, Any]]:
    resources = doc.get("Resources") or {}
    routes = []

    # SAM function events
    for name, resource in resources.items():
        if not isinstance(resource, dict):
            continue
        if resource.get("Type") not in ("AWS::Serverless::Function", "AWS::Serverless::Api"):
            continue
        events = (resource.get("Properties") or {}).get("Events") or {}
        for event in events.values():
            if not isinstance(event, dict) or event.get("Type") not in ("Api", "HttpApi"):
                continue
            props = event.get("Properties") or {}
            if not isinstance(props.get("Path"), str):
                continue
            for method in _methods(props.get("Method")):
                routes.append({"method": method, "path": _clean_path(props["Path"]), "name": name, "upstream": name})

    # Raw API Gateway resources
    def resource_path(resource_id: Any, depth: int = 0) -> Optional[str]:
        if not isinstance(resource_id, dict) or "Ref" not in resource_id or depth > 20:
            return "" if isinstance(resource_id, dict) and "Fn::GetAtt" in resource_id else None
        resource = resources.get(resource_id["Ref"])
        if not isinstance(resource, dict) or resource.get("Type") != "AWS::ApiGateway::Resource":
            return None
        props = resource.get("Properties") or {}
        parent = resource_path(props.get("ParentId"), depth + 1)
        if parent is None:
            return None
        return f"{parent}/{props.get('PathPart', '')}"

    for name, resource in resources.items():
        if not isinstance(resource, dict) or resource.get("Type") != "AWS::ApiGateway::Method":
            continue
        props = resource.get("Properties") or {}
        path = resource_path(props.get("ResourceId"))
        if path is None:
            continue
        params = []
        for key in (props.get("RequestParameters") or {}):
            match = re.match(r"method\.request\.(path|querystring|header)\.(.+)", str(key))
            if not match:
                continue
            location = {
                "path": ParameterLocation.PATH,
                "querystring": ParameterLocation.QUERY,
                "header": ParameterLocation.HEADER,
            }[match.group(1)]
            params.append(
                Parameter(
                    match.group(2),
                    location,
                    required=bool(props["RequestParameters"][key]) or location == ParameterLocation.PATH,
                )
            )
        for method in _methods(props.get("HttpMethod")):
            routes.append({"method": method, "path": _clean_path(path or "/"), "name": name, "params": params})

    return routes


def _is_istio(docs: List[Dict]) -> bool:
    return any(d.get("kind") == "VirtualService" for d in docs)


def _istio_routes(docs: List[Dict]) -> List[Dict[str, Any]]:
    routes = []
    for doc in docs:
        if doc.get("kind") != "VirtualService":
            continue
        service = (doc.get("metadata") or {}).get("name")
        for http in (doc.get("spec") or {}).get("http") or []:
            if not isinstance(http, dict):
                continue
            destinations = [
                ((r or {}).get("destination") or {}).get("host") for r in http.get("route") or []
            ]
            for match in http.get("match") or []:
                uri = (match or {}).get("uri") or {}
                if "exact" in uri:
                    path = uri["exact"]
                elif "prefix" in uri:
                    path = uri["prefix"]
                else:
                    logger.debug(f"Skipping regex VirtualService match in {service}")
                    continue
                method_match = (match.get("method") or {}).get("exact")
                for method in _methods(method_match):
                    routes.append(
                        {
                            "method": method,
                            "path": _clean_path(str(path)),
                            "name": http.get("name", ""),
                            "service": service,
                            "upstream": next((d for d in destinations if d), None),
                        }
                    )
    return routes


_LOCATION_RE = re.compile(r"\blocation\s+(=|\^~|~\*?|@)?\s*([^\s{]+)\s*\{")


def _nginx_routes(text: str) -> List[Dict[str, Any]]:
    text = re.sub(r"#[^\n]*", "", text)
    routes = []
    for match in _LOCATION_RE.finditer(text):
        modifier, path = match.group(1), match.group(2)
        if modifier in ("~", "~*", "@"):
            continue
        block = _block_body(text, match.end())
        if not any(re.search(rf"\b{d}\b", block) for d in PROXY_DIRECTIVES):
            continue
        limit = re.search(r"\blimit_except\s+([A-Za-z\s]+)\{", block)
        methods = limit.group(1).split() if limit else [DEFAULT_METHOD]
        upstream = re.search(r"\bproxy_pass\s+([^;]+);", block)
        for method in _methods(methods):
            routes.append(
                {
                    "method": method,
                    "path": _clean_path(path),
                    "name": f"location {path}",
                    "upstream": upstream.group(1).strip() if upstream else None,
                }
            )
    return routes


def _block_body(text: str, start: int) -> str:
    """Text between an opening brace (just before `start`) and its match."""
    depth = 1
    for i in range(start, len(text)):
        if text[i] == "{":
            depth += 1
        elif text[i] == "}":
            depth -= 1
            if depth == 0:
                return text[start:i]
    return text[start:]

"""
Postman collection ingestor (v2.0 and v2.1).
"""

import re
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import parse_qsl, urlparse

from core.config import ScanConfig
from core.exceptions import IngestionError
from core.models import Endpoint, Parameter, ParameterLocation
from core.utils import excerpt, setup_logging

from .base import (
    Source,
    body_parameters_from_sample,
    decode_source,
    ensure_path_parameters,
    guess_type,
    identifier_matches,
    merge_parameters,
    normalize_path,
    parse_structured,
    try_json,
)

logger = setup_logging("postman_ingestor")

NAME = "postman"

VARIABLE_RE = re.compile(r"\{\{\s*([^}\s]+)\s*\}\}")

# Headers the client manages; not worth probing
SKIP_HEADERS = {"content-type", "accept", "content-length", "user-agent", "host", "authorization", "cookie"}


class PostmanIngestor:
    """
    Walks a Postman collection, nested folders included.

    Path variables (`:id`, or a `{{id}}` segment with no known value) become
    `{id}` templates. Other `{{var}}` references are substituted from the
    collection variables and, when environments are enabled, from the
    configured variables (which take precedence).
    """

    EXTENSIONS = (".postman_collection.json", ".postman.json", ".postman_collection")
    CONTENT_TYPES = ("application/vnd.postman.collection+json",)

    def __init__(self, config: Optional[ScanConfig] = None):
        config = config or ScanConfig()
        self.use_environment = config.ingestors.postman_environments
        self.configured_variables = dict(config.ingestors.postman_variables)

    def get_name(self) -> str:
        return NAME

    def get_supported_extensions(self) -> Tuple[str, ...]:
        return self.EXTENSIONS

    def is_supported(self, identifier: str) -> bool:
        return identifier_matches(identifier, self.EXTENSIONS, self.CONTENT_TYPES)

    def ingest(self, source: Source) -> List[Endpoint]:
        data = parse_structured(source, "Postman")
        snippet = excerpt(decode_source(source))

        if not isinstance(data, dict) or not isinstance(data.get("item"), list):
            raise IngestionError("Postman collection must have an 'item' list", snippet)
        if not isinstance(data.get("info"), dict):
            raise IngestionError("Postman collection is missing 'info'", snippet)

        variables = self._collection_variables(data.get("variable"))
        if self.use_environment:
            variables.update(self.configured_variables)

        collection_auth = _auth_type(data.get("auth"))

        endpoints: Dict[Tuple[str, str], Endpoint] = {}
        for item, folders in _walk(data["item"], ()):
            endpoint = self._endpoint(item, folders, variables, collection_auth)
            if endpoint is None:
                continue
            key = (endpoint.method, endpoint.path)
            if key in endpoints:
                previous = endpoints[key]
                endpoints[key] = Endpoint(
                    method=previous.method,
                    path=previous.path,
                    source_format=NAME,
                    parameters=tuple(merge_parameters(previous.parameters, endpoint.parameters)),
                    ingestor=NAME,
                    summary=previous.summary,
                    description=previous.description,
                    tags=previous.tags,
                    security=previous.security,
                    metadata=previous.metadata,
                )
            else:
                endpoints[key] = endpoint

        if not endpoints:
            raise IngestionError("Postman collection contains no requests", snippet)

        logger.info(f"Parsed {len(endpoints)} requests from Postman collection '{data['info'].get('name', '')}'")
        return list(endpoints.values())

    def _collection_variables(self, raw: Any) -> Dict[str, str]:
        variables = {}
        for var in raw or []:
            if isinstance(var, dict) and "key" in var and not var.get("disabled"):
                variables[str(var["key"])] = "" if var.get("value") is None else str(var.get("value"))
        return variables

    def _endpoint(
        self,
        item: Dict[str, Any],
        folders: Tuple[str, ...],
        variables: Dict[str, str],
        collection_auth: Optional[str],
    ) -> Optional[Endpoint]:
        request = item.get("request")
        if isinstance(request, str):
            request = {"method": "GET", "url": request}
        if not isinstance(request, dict):
            return None

        url = request.get("url")
        segments, query = self._url_parts(url)
        if segments is None:
            logger.warning(f"Skipping Postman request '{item.get('name', '')}' without a URL")
            return None

        path = normalize_path("/".join(_template_segment(s, variables) for s in segments))

        path_types = {}
        if isinstance(url, dict):
            for var in url.get("variable") or []:
                if isinstance(var, dict) and "key" in var:
                    path_types[var["key"]] = guess_type(var.get("value"))

        params: List[Parameter] = []
        for name in re.findall(r"\{([^}/]+)\}", path):
            params.append(
                Parameter(
                    name=name,
                    location=ParameterLocation.PATH,
                    param_type=path_types.get(name, "string"),
                    required=True,
                )
            )

        for key, value in query:
            params.append(
                Parameter(
                    name=key,
                    location=ParameterLocation.QUERY,
                    param_type=guess_type(_substitute(value, variables)),
                )
            )

        for header in request.get("header") or []:
            if not isinstance(header, dict) or header.get("disabled"):
                continue
            name = str(header.get("key", ""))
            if name and name.lower() not in SKIP_HEADERS:
                params.append(Parameter(name=name, location=ParameterLocation.HEADER))

        params.extend(self._body_parameters(request.get("body"), variables))
        params = ensure_path_parameters(path, merge_parameters([], params))

        description = request.get("description") or item.get("description") or ""
        if isinstance(description, dict):
            description = description.get("content", "")

        auth = _auth_type(request.get("auth")) or collection_auth
        return Endpoint(
            method=str(request.get("method") or "GET").upper(),
            path=path,
            source_format=NAME,
            parameters=tuple(params),
            ingestor=NAME,
            summary=str(item.get("name", "")),
            description=str(description),
            tags=folders,
            security=(auth,) if auth else (),
        )

    def _url_parts(self, url: Any) -> Tuple[Optional[List[str]], List[Tuple[str, str]]]:
        """Path segments and query pairs from a raw URL string or URL object."""
        if isinstance(url, str):
            raw = url
            path_segments = None
            query_pairs = None
        elif isinstance(url, dict):
            raw = url.get("raw", "")
            path = url.get("path")
            path_segments = path.split("/") if isinstance(path, str) else path
            query_pairs = [
                (str(q.get("key", "")), "" if q.get("value") is None else str(q.get("value")))
                for q in url.get("query") or []
                if isinstance(q, dict) and q.get("key") and not q.get("disabled")
            ]
        else:
            return None, []

        if path_segments is None:
            if not raw:
                return None, []
            path_segments = _raw_path(raw).split("/")
        if query_pairs is None:
            query_pairs = parse_qsl(raw.split("?", 1)[1], keep_blank_values=True) if "?" in raw else []

        return [str(s) for s in path_segments if str(s)], query_pairs

    def _body_parameters(self, body: Any, variables: Dict[str, str]) -> List[Parameter]:
        if not isinstance(body, dict):
            return []
        mode = body.get("mode")

        if mode == "raw":
            sample = try_json(_substitute(body.get("raw", ""), variables))
            if sample is None:
                sample = try_json(VARIABLE_RE.sub("null", body.get("raw", "")))
            return body_parameters_from_sample(sample)

        if mode in ("urlencoded", "formdata"):
            params = []
            for field in body.get(mode) or []:
                if not isinstance(field, dict) or field.get("disabled") or not field.get("key"):
                    continue
                is_file = field.get("type") == "file"
                params.append(
                    Parameter(
                        name=str(field["key"]),
                        location=ParameterLocation.BODY,
                        param_type="string" if is_file else guess_type(field.get("value")),
                        format="binary" if is_file else None,
                    )
                )
            return params

        if mode == "graphql":
            return [Parameter(name="query", location=ParameterLocation.BODY, required=True)]

        return []


def _walk(items: Iterable[Any], folders: Tuple[str, ...]):
    """Yield (request item, folder names) for every request in the tree."""
    for item in items:
        if not isinstance(item, dict):
            continue
        if isinstance(item.get("item"), list):
            yield from _walk(item["item"], folders + (str(item.get("name", "")),))
        elif "request" in item:
            yield item, folders


def _raw_path(raw: str) -> str:
    """Path portion of a raw Postman URL, host and base-URL variables removed."""
    raw = raw.split("?", 1)[0].split("#", 1)[0].strip()
    raw = re.sub(r"^\{\{[^}]+\}\}", "", raw)
    if re.match(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", raw):
        return urlparse(raw).path
    if raw and not raw.startswith("/") and "/" in raw:
        # host/path without a scheme
        return raw.split("/", 1)[1]
    return raw


def _template_segment(segment: str, variables: Dict[str, str]) -> str:
    if segment.startswith(":") and len(segment) > 1:
        return "{" + segment[1:] + "}"
    whole = VARIABLE_RE.fullmatch(segment)
    if whole and whole.group(1) not in variables:
        return "{" + whole.group(1) + "}"
    return _substitute(segment, variables)


def _substitute(text: Optional[str], variables: Dict[str, str]) -> str:
    if not text:
        return ""
    return VARIABLE_RE.sub(lambda m: variables.get(m.group(1), m.group(0)), str(text))


def _auth_type(auth: Any) -> Optional[str]:
    if isinstance(auth, dict) and auth.get("type") and auth.get("type") != "noauth":
        return str(auth["type"])
    return None

"""
HTTP Archive (HAR) ingestor.

Recorded traffic is folded into endpoints: identifier-like path segments are
templated, repeated requests are merged, and JSON response bodies give the
response shapes.
"""

import base64
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlparse

from core.config import ScanConfig
from core.exceptions import IngestionError
from core.models import Endpoint, Parameter, ParameterLocation
from core.utils import excerpt, setup_logging

from .base import (
    Source,
    body_parameters_from_sample,
    decode_source,
    guess_type,
    identifier_matches,
    infer_schema,
    merge_parameters,
    normalize_path,
    parse_structured,
    try_json,
)

logger = setup_logging("har_ingestor")

NAME = "har"

STATIC_EXTENSIONS = (
    ".js", ".mjs", ".css", ".map", ".png", ".jpg", ".jpeg", ".gif", ".svg", ".ico",
    ".webp", ".avif", ".woff", ".woff2", ".ttf", ".eot", ".otf", ".mp4", ".webm", ".mp3",
    ".pdf", ".html", ".htm",
)
STATIC_MIME_PREFIXES = ("image/", "font/", "video/", "audio/", "text/css", "text/html")
STATIC_MIME_TYPES = ("application/javascript", "text/javascript", "application/x-javascript")

# Browser-managed headers are not API parameters
BROWSER_HEADERS = {
    "accept", "accept-encoding", "accept-language", "cache-control", "connection",
    "content-length", "content-type", "cookie", "dnt", "host", "if-modified-since",
    "if-none-match", "origin", "pragma", "referer", "user-agent", "upgrade-insecure-requests",
    "authorization", "te", "priority",
}

UUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")
NUMERIC_RE = re.compile(r"^\d+$")
HEX_ID_RE = re.compile(r"^[0-9a-fA-F]{16,}$")


class HARIngestor:
    """Builds endpoints from `log.entries` of a HAR file."""

    EXTENSIONS = (".har", ".har.json")
    CONTENT_TYPES = ("application/har+json",)

    def __init__(self, config: Optional[ScanConfig] = None):
        config = config or ScanConfig()
        self.filter_static = config.ingestors.har_filter_static

    def get_name(self) -> str:
        return NAME

    def get_supported_extensions(self) -> Tuple[str, ...]:
        return self.EXTENSIONS

    def is_supported(self, identifier: str) -> bool:
        return identifier_matches(identifier, self.EXTENSIONS, self.CONTENT_TYPES)

    def ingest(self, source: Source) -> List[Endpoint]:
        data = parse_structured(source, "HAR")
        snippet = excerpt(decode_source(source))

        entries = (data.get("log") or {}).get("entries") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            raise IngestionError("HAR document must contain 'log.entries'", snippet)

        merged: Dict[Tuple[str, str], Dict[str, Any]] = {}
        skipped = 0

        for entry in entries:
            request = (entry or {}).get("request") if isinstance(entry, dict) else None
            if not isinstance(request, dict) or not request.get("url"):
                continue
            response = entry.get("response") or {}

            if self.filter_static and self._is_static(request, response):
                skipped += 1
                continue

            method = str(request.get("method") or "GET").upper()
            parsed = urlparse(request["url"])
            path, path_params = templatize_path(parsed.path)

            params = list(path_params)
            query = request.get("queryString")
            if query is None:
                query = [{"name": k, "value": v} for k, v in parse_qsl(parsed.query, keep_blank_values=True)]
            for q in query:
                if isinstance(q, dict) and q.get("name"):
                    params.append(Parameter(q["name"], ParameterLocation.QUERY, guess_type(q.get("value"))))

            for header in request.get("headers") or []:
                name = str((header or {}).get("name", ""))
                if name and not name.startswith(":") and name.lower() not in BROWSER_HEADERS and not name.lower().startswith("sec-"):
                    params.append(Parameter(name, ParameterLocation.HEADER))

            for cookie in request.get("cookies") or []:
                if isinstance(cookie, dict) and cookie.get("name"):
                    params.append(Parameter(cookie["name"], ParameterLocation.COOKIE))

            params.extend(self._body_parameters(request.get("postData")))

            status = response.get("status")
            responses = {}
            if status:
                schema = self._response_schema(response.get("content") or {})
                responses[str(status)] = {"description": response.get("statusText", "")}
                if schema is not None:
                    responses[str(status)]["schema"] = schema

            key = (method, path)
            if key not in merged:
                merged[key] = {"params": [], "responses": {}, "samples": 0, "hosts": []}
            slot = merged[key]
            slot["params"] = merge_parameters(slot["params"], params)
            for code, value in responses.items():
                slot["responses"].setdefault(code, value)
            slot["samples"] += 1
            if parsed.netloc and parsed.netloc not in slot["hosts"]:
                slot["hosts"].append(parsed.netloc)

        endpoints = []
        for (method, path), slot in merged.items():
            endpoint = Endpoint(
                method=method,
                path=path,
                source_format=NAME,
                parameters=tuple(slot["params"]),
                responses=slot["responses"],
                ingestor=NAME,
            )
            endpoint.metadata.annotate("ingestion", {"samples": slot["samples"], "hosts": slot["hosts"]})
            endpoints.append(endpoint)

        if not endpoints:
            raise IngestionError(f"HAR contains no API requests ({skipped} static entries skipped)", snippet)

        logger.info(f"Parsed {len(endpoints)} endpoints from {len(entries)} HAR entries ({skipped} static skipped)")
        return endpoints

    def _is_static(self, request: Dict[str, Any], response: Dict[str, Any]) -> bool:
        path = urlparse(request.get("url", "")).path.lower()
        if path.endswith(STATIC_EXTENSIONS):
            return True
        mime = str((response.get("content") or {}).get("mimeType", "")).lower().split(";")[0].strip()
        return mime.startswith(STATIC_MIME_PREFIXES) or mime in STATIC_MIME_TYPES

    def _body_parameters(self, post_data: Any) -> List[Parameter]:
        if not isinstance(post_data, dict):
            return []
        mime = str(post_data.get("mimeType", "")).lower()
        if post_data.get("params"):
            return [
                Parameter(p["name"], ParameterLocation.BODY, guess_type(p.get("value")))
                for p in post_data["params"]
                if isinstance(p, dict) and p.get("name")
            ]
        text = post_data.get("text") or ""
        if "json" in mime or text.lstrip().startswith(("{", "[")):
            return body_parameters_from_sample(try_json(text))
        if "x-www-form-urlencoded" in mime:
            return [
                Parameter(k, ParameterLocation.BODY, guess_type(v))
                for k, v in parse_qsl(text, keep_blank_values=True)
            ]
        return []

    def _response_schema(self, content: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if "json" not in str(content.get("mimeType", "")).lower():
            return None
        text = content.get("text")
        if text and content.get("encoding") == "base64":
            try:
                text = base64.b64decode(text).decode("utf-8", errors="replace")
            except ValueError:
                return None
        sample = try_json(text)
        return infer_schema(sample) if sample is not None else None


def templatize_path(raw_path: str) -> Tuple[str, List[Parameter]]:
    """
    Replace identifier-like segments with `{id}`, `{id2}`, ...

    Numeric segments, UUIDs and long hex strings count as identifiers.
    """
    segments = []
    params: List[Parameter] = []
    for segment in normalize_path(raw_path or "/").split("/"):
        if not segment:
            continue
        if NUMERIC_RE.match(segment) or UUID_RE.match(segment) or HEX_ID_RE.match(segment):
            name = "id" if not params else f"id{len(params) + 1}"
            param_type = "integer" if NUMERIC_RE.match(segment) else "string"
            fmt = "uuid" if UUID_RE.match(segment) else None
            params.append(Parameter(name, ParameterLocation.PATH, param_type, True, fmt))
            segments.append("{" + name + "}")
        else:
            segments.append(segment)
    return "/" + "/".join(segments), params

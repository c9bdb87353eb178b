"""
Route matching shared by the passes that find API paths in code.
"""

import re
from typing import List, Optional
from urllib.parse import urlparse

from core.models import Endpoint

# `{id}`, `:id`, `${id}`, `<id>`, `<int:id>`
_PLACEHOLDER_RE = re.compile(r"^(\{[^}]+\}|:\w+|\$\{[^}]+\}|<[^>]+>)$")
_TEMPLATE_EXPR_RE = re.compile(r"\$\{[^}]+\}")


def clean_route(raw: str) -> Optional[str]:
    """
    Path part of a URL or route literal, or None if it does not look like one.

    Template-literal expressions become `{param}` segments.
    """
    raw = raw.strip().strip("'\"`")
    if not raw:
        return None
    if re.match(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", raw):
        raw = urlparse(raw).path or "/"
    elif raw.startswith("${"):
        # `${API_BASE}/users` -> `/users`
        raw = _TEMPLATE_EXPR_RE.sub("", raw, count=1)
    raw = raw.split("?", 1)[0].split("#", 1)[0]
    if not raw.startswith("/"):
        return None
    raw = _TEMPLATE_EXPR_RE.sub("{param}", raw)
    raw = re.sub(r"/{2,}", "/", raw)
    if len(raw) > 1:
        raw = raw.rstrip("/")
    return raw


def _segments(path: str) -> List[str]:
    return [s for s in path.split("/") if s]


def route_matches(template: str, candidate: str) -> bool:
    """
    Whether two route templates can name the same resource.

    Segments must agree except where either side has a placeholder.
    """
    left, right = _segments(template), _segments(candidate)
    if len(left) != len(right):
        return False
    for a, b in zip(left, right):
        if a == b or _PLACEHOLDER_RE.match(a) or _PLACEHOLDER_RE.match(b):
            continue
        return False
    return True


def endpoint_route(endpoint: Endpoint) -> str:
    """HTTP path of an endpoint; GraphQL operations share their transport path."""
    return endpoint.path.split("#", 1)[0] or "/"


def endpoint_matches(endpoint: Endpoint, path: str, method: Optional[str] = None) -> bool:
    if method and method.upper() != endpoint.method:
        return False
    return route_matches(endpoint_route(endpoint), path)

"""
Source map enrichment.

Reads `*.map` files (and maps inlined into bundles as data URLs), scans the
original sources embedded in `sourcesContent` for API call sites, and
annotates each endpoint with the source files that call it.
"""

import base64
import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.config import ScanConfig
from core.models import Endpoint
from core.utils import setup_logging

from .pipeline import EnrichmentWorkspace
from .routes import clean_route, endpoint_matches

logger = setup_logging("source_map_enricher")

NAME = "source_maps"

_Q = r"[\"'`]"
_URL = r"(?P<url>[^\"'`\s]+)"

CALL_SITE_PATTERNS = [
    # fetch('/api/x', { method: 'POST' })
    re.compile(rf"fetch\s*\(\s*{_Q}{_URL}{_Q}"),
    # axios.get / http.post / $.get / router-style calls
    re.compile(rf"\.\s*(?P<method>get|post|put|patch|delete|head|options)\s*\(\s*{_Q}{_URL}{_Q}", re.IGNORECASE),
    # request configs: { url: '/api/x', method: 'PUT' }
    re.compile(rf"\b(?:url|endpoint|path|uri)\s*:\s*{_Q}{_URL}{_Q}"),
    # bare API path literals
    re.compile(rf"{_Q}(?P<url>/(?:api|v\d+)/[^\"'`\s]*){_Q}"),
]
METHOD_OPTION_RE = re.compile(r"method\s*:\s*[\"'`](\w+)[\"'`]", re.IGNORECASE)
INLINE_MAP_RE = re.compile(r"//[#@]\s*sourceMappingURL=data:application/json[^,]*;base64,([A-Za-z0-9+/=]+)")


@dataclass(frozen=True)
class CallSite:
    source: str
    line: int
    path: str
    method: Optional[str]
    bundle: str

    def to_dict(self) -> Dict[str, Any]:
        return {"file": self.source, "line": self.line, "method": self.method, "bundle": self.bundle}


def find_call_sites(content: str, source: str, bundle: str = "") -> List[CallSite]:
    """API call sites in one original source file."""
    sites = []
    seen = set()
    for pattern in CALL_SITE_PATTERNS:
        for match in pattern.finditer(content):
            path = clean_route(match.group("url"))
            if not path or path == "/":
                continue
            method = match.groupdict().get("method")
            if not method:
                option = METHOD_OPTION_RE.search(content, match.end(), match.end() + 200)
                method = option.group(1) if option else None
            line = content.count("\n", 0, match.start()) + 1
            key = (line, path)
            if key in seen:
                continue
            seen.add(key)
            sites.append(CallSite(source, line, path, method.upper() if method else None, bundle))
    return sites


class SourceMapPass:
    """Links endpoints to the frontend code that calls them."""

    name = NAME

    def __init__(self, config: Optional[ScanConfig] = None):
        self.config = config or ScanConfig()

    async def prepare(self, endpoints: List[Endpoint], workspace: EnrichmentWorkspace):
        if NAME in workspace.indexes:
            return
        sites: List[CallSite] = []
        if workspace.source_map_dir:
            root = Path(workspace.source_map_dir)
            if not root.exists():
                workspace.warn(NAME, f"source map location not found: {root}")
            else:
                for map_data, bundle in self._load_maps(root, workspace):
                    sites.extend(self._scan_map(map_data, bundle))
        workspace.indexes[NAME] = sites
        logger.info(f"Found {len(sites)} API call sites in source maps")

    def annotate(self, endpoint: Endpoint, workspace: EnrichmentWorkspace) -> Optional[Dict[str, Any]]:
        sites = [
            s for s in workspace.indexes.get(NAME, [])
            if endpoint_matches(endpoint, s.path, s.method)
        ]
        if not sites:
            return None
        return {
            "files": sorted({s.source for s in sites}),
            "call_sites": [s.to_dict() for s in sites],
        }

    def _load_maps(self, root: Path, workspace: EnrichmentWorkspace):
        files = [root] if root.is_file() else sorted(root.rglob("*"))
        for path in files:
            if not path.is_file():
                continue
            if path.suffix == ".map":
                try:
                    yield json.loads(path.read_text(encoding="utf-8", errors="replace")), path.name
                except ValueError as e:
                    workspace.warn(NAME, f"unreadable source map {path.name}: {e}")
            elif path.suffix in (".js", ".mjs"):
                inline = INLINE_MAP_RE.search(path.read_text(encoding="utf-8", errors="replace"))
                if not inline:
                    continue
                try:
                    yield json.loads(base64.b64decode(inline.group(1))), path.name
                except ValueError as e:
                    workspace.warn(NAME, f"unreadable inline source map in {path.name}: {e}")

    def _scan_map(self, data: Any, bundle: str) -> List[CallSite]:
        if not isinstance(data, dict):
            return []
        sources = data.get("sources") or []
        contents = data.get("sourcesContent") or []
        sites = []
        for source, content in zip(sources, contents):
            if not isinstance(content, str) or "node_modules/" in str(source):
                continue
            sites.extend(find_call_sites(content, str(source), bundle))
        return sites

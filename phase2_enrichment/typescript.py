"""
TypeScript definition enrichment.

Parses `interface` and object `type` declarations from `.ts`/`.d.ts` files
and annotates endpoint parameters whose names match declared fields.
"""

import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.config import ScanConfig
from core.models import Endpoint
from core.utils import setup_logging

from .pipeline import EnrichmentWorkspace

logger = setup_logging("typescript_enricher")

NAME = "typescript_definitions"

TS_SUFFIXES = (".ts", ".tsx", ".d.ts")

DECLARATION_RE = re.compile(
    r"\b(?:interface\s+(?P<iface>\w+)(?:<[^>{]*>)?(?:\s+extends\s+(?P<extends>[\w\s,.<>]+?))?"
    r"|type\s+(?P<alias>\w+)(?:<[^>=]*>)?\s*=)\s*\{"
)
FIELD_RE = re.compile(r"^\s*(?:readonly\s+)?['\"]?(?P<name>[A-Za-z_$][\w$]*)['\"]?(?P<optional>\?)?\s*:\s*(?P<type>[^;]+?)\s*;?\s*$")

TS_JSON_TYPES = {
    "string": "string",
    "number": "number",
    "bigint": "integer",
    "boolean": "boolean",
    "Date": "string",
}


def ts_json_type(ts_type: str) -> str:
    ts_type = ts_type.strip()
    if ts_type.endswith("[]") or ts_type.startswith(("Array<", "ReadonlyArray<")):
        return "array"
    members = [m.strip() for m in ts_type.split("|") if m.strip() not in ("null", "undefined")]
    if len(members) == 1 and members[0] in TS_JSON_TYPES:
        return TS_JSON_TYPES[members[0]]
    if members and all(re.match(r"^['\"].*['\"]$", m) for m in members):
        return "string"
    return "object"


def _strip_comments(text: str) -> str:
    text = re.sub(r"/\*.*?\*/", "", text, flags=re.DOTALL)
    return re.sub(r"(?m)//[^\n]*$", "", text)


def _block(text: str, start: int) -> str:
    depth = 1
    for i in range(start, len(text)):
        if text[i] == "{":
            depth += 1
        elif text[i] == "}":
            depth -= 1
            if depth == 0:
                return text[start:i]
    return text[start:]


def _top_level_fields(body: str) -> Dict[str, Dict[str, Any]]:
    """Fields declared directly in a declaration body; nested objects are not descended."""
    fields = {}
    depth = 0
    current = []
    previous = ""
    for char in body:
        if char in "{(<[":
            depth += 1
        elif char in "})]" or (char == ">" and previous != "="):
            depth -= 1
        previous = char
        if depth == 0 and char in ";\n,":
            statement = "".join(current).strip()
            current = []
            match = FIELD_RE.match(statement)
            if match:
                fields[match.group("name")] = {
                    "type": match.group("type").strip(),
                    "optional": bool(match.group("optional")),
                }
            continue
        current.append(char)
    match = FIELD_RE.match("".join(current).strip())
    if match:
        fields[match.group("name")] = {"type": match.group("type").strip(), "optional": bool(match.group("optional"))}
    return fields


def parse_declarations(text: str) -> Dict[str, Dict[str, Any]]:
    """
    Map declaration name -> {"fields": {...}, "extends": [...]}.

    Inherited fields are resolved afterwards by `resolve_fields`.
    """
    text = _strip_comments(text)
    declarations = {}
    for match in DECLARATION_RE.finditer(text):
        name = match.group("iface") or match.group("alias")
        extends = [
            e.strip().split("<")[0]
            for e in (match.group("extends") or "").split(",")
            if e.strip()
        ]
        declarations[name] = {"fields": _top_level_fields(_block(text, match.end())), "extends": extends}
    return declarations


def resolve_fields(declarations: Dict[str, Dict[str, Any]], name: str, depth: int = 0) -> Dict[str, Dict[str, Any]]:
    declaration = declarations.get(name)
    if not declaration or depth > 10:
        return {}
    fields: Dict[str, Dict[str, Any]] = {}
    for parent in declaration["extends"]:
        fields.update(resolve_fields(declarations, parent, depth + 1))
    fields.update(declaration["fields"])
    return fields


class TypeScriptPass:
    """Types endpoint parameters from the frontend's TypeScript declarations."""

    name = NAME

    def __init__(self, config: Optional[ScanConfig] = None):
        self.config = config or ScanConfig()

    async def prepare(self, endpoints: List[Endpoint], workspace: EnrichmentWorkspace):
        if NAME in workspace.indexes:
            return
        declarations: Dict[str, Dict[str, Any]] = {}
        if workspace.typescript_dir:
            root = Path(workspace.typescript_dir)
            if not root.exists():
                workspace.warn(NAME, f"TypeScript location not found: {root}")
            else:
                files = [root] if root.is_file() else sorted(root.rglob("*"))
                for path in files:
                    if path.is_file() and path.name.endswith(TS_SUFFIXES) and "node_modules" not in path.parts:
                        found = parse_declarations(path.read_text(encoding="utf-8", errors="replace"))
                        for name, declaration in found.items():
                            declaration["file"] = str(path)
                            declarations.setdefault(name, declaration)

        # field name -> [(declaration, field info)]
        index: Dict[str, List[Dict[str, Any]]] = {}
        for name in declarations:
            for field_name, info in resolve_fields(declarations, name).items():
                index.setdefault(field_name, []).append({"declaration": name, **info})

        workspace.indexes[NAME] = index
        logger.info(f"Parsed {len(declarations)} TypeScript declarations")

    def annotate(self, endpoint: Endpoint, workspace: EnrichmentWorkspace) -> Optional[Dict[str, Any]]:
        index = workspace.indexes.get(NAME, {})
        parameters = {}
        for param in endpoint.parameters:
            matches = index.get(param.name)
            if not matches:
                continue
            first = matches[0]
            parameters[param.name] = {
                "ts_type": first["type"],
                "json_type": ts_json_type(first["type"]),
                "optional": first["optional"],
                "declared_in": sorted({m["declaration"] for m in matches}),
            }
        if not parameters:
            return None
        return {"parameters": parameters}

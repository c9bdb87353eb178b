"""
Code discovery enrichment.

Runs the configured external discovery command against the source root and
reads back a JSON route list, either `[{"method", "path", "file", "line"}]`
or `{"routes": [...]}`. Routes that match an ingested endpoint are attached
to it; the rest are recorded in the workspace as undocumented routes.
"""

import asyncio
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.config import ScanConfig
from core.models import Endpoint
from core.utils import setup_logging

from .pipeline import EnrichmentWorkspace
from .routes import clean_route, endpoint_matches

logger = setup_logging("code_discovery")

NAME = "code_discovery"

# Only these variables reach the discovery process in safe mode
SAFE_ENV_KEYS = ("PATH", "HOME", "LANG", "LC_ALL", "TMPDIR", "SYSTEMROOT")


def parse_routes(output: str) -> List[Dict[str, Any]]:
    """Normalize the discovery command's JSON output. Raises ValueError when unreadable."""
    data = json.loads(output) if output.strip() else []
    if isinstance(data, dict):
        data = data.get("routes", [])
    if not isinstance(data, list):
        raise ValueError("expected a list of routes")

    routes = []
    for entry in data:
        if not isinstance(entry, dict):
            continue
        path = clean_route(str(entry.get("path", "")))
        if not path:
            continue
        method = entry.get("method")
        routes.append(
            {
                "method": str(method).upper() if method else None,
                "path": path,
                "file": entry.get("file"),
                "line": entry.get("line"),
            }
        )
    return routes


class CodeDiscoveryPass:
    """Hands the source tree to an external route finder."""

    name = NAME

    def __init__(self, config: Optional[ScanConfig] = None):
        self.config = config or ScanConfig()
        self.settings = self.config.enrichment.code_discovery

    def build_command(self, source_root: str) -> List[str]:
        cmd = list(self.settings.command) + [source_root, "--max-depth", str(self.settings.max_depth)]
        if self.settings.safe_mode:
            cmd.append("--safe-mode")
        return cmd

    def build_env(self) -> Optional[Dict[str, str]]:
        if not self.settings.safe_mode:
            return None
        return {k: os.environ[k] for k in SAFE_ENV_KEYS if k in os.environ}

    async def prepare(self, endpoints: List[Endpoint], workspace: EnrichmentWorkspace):
        if NAME in workspace.indexes:
            return
        workspace.indexes[NAME] = []

        if not workspace.source_root:
            logger.debug("No source root given, skipping code discovery")
            return
        if not self.settings.command:
            logger.warning("Code discovery enabled but no discovery command configured")
            return
        if not Path(workspace.source_root).exists():
            workspace.warn(NAME, f"source root not found: {workspace.source_root}")
            return

        routes = await self._run(workspace)
        if routes is None:
            return
        workspace.indexes[NAME] = routes

        for route in routes:
            if not any(endpoint_matches(e, route["path"], route["method"]) for e in endpoints):
                workspace.discovered_routes.append(route)

        logger.info(
            f"Code discovery found {len(routes)} routes, "
            f"{len(workspace.discovered_routes)} not in any ingested source"
        )

    async def _run(self, workspace: EnrichmentWorkspace) -> Optional[List[Dict[str, Any]]]:
        cmd = self.build_command(workspace.source_root)
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(),
            )
        except OSError as e:
            workspace.warn(NAME, f"cannot start discovery command: {e}")
            return None

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.settings.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            workspace.warn(NAME, f"discovery command timed out after {self.settings.timeout}s")
            return None

        if proc.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()[:200]
            workspace.warn(NAME, f"discovery command exited with {proc.returncode}: {message}")
            return None

        try:
            return parse_routes(stdout.decode("utf-8", errors="replace"))
        except ValueError as e:
            workspace.warn(NAME, f"unreadable discovery output: {e}")
            return None

    def annotate(self, endpoint: Endpoint, workspace: EnrichmentWorkspace) -> Optional[Dict[str, Any]]:
        routes = [r for r in workspace.indexes.get(NAME, []) if endpoint_matches(endpoint, r["path"], r["method"])]
        if not routes:
            return None
        return {"routes": routes}

"""
Semantic analysis: what each parameter means and how risky an endpoint is.
"""

import re
from typing import Any, Dict, List, Optional

from core.config import ScanConfig
from core.models import Endpoint, Parameter
from core.utils import setup_logging

from .pipeline import EnrichmentWorkspace

logger = setup_logging("semantic_enricher")

NAME = "semantic_analysis"

SENSITIVE_NAMES = (
    "password", "secret", "token", "key", "auth", "credential",
    "ssn", "social", "credit", "card", "cvv", "pin",
)

FINANCIAL_TAGS = ("payment", "billing", "finance")
PII_TAGS = ("user", "profile", "account")
HIGH_RISK_TAGS = ("admin", "delete", "critical")

PII_SEMANTICS = ("email", "phone", "ssn")


def _tokens(name: str) -> List[str]:
    """camelCase / snake_case / kebab-case name -> lowercase words."""
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", name)
    return [t for t in re.split(r"[^A-Za-z0-9]+", spaced.lower()) if t]


def detect_semantic_type(param: Parameter) -> Optional[str]:
    name = param.name.lower()
    tokens = _tokens(param.name)

    if "email" in name:
        return "email"
    if "password" in name or "pwd" in name:
        return "password"
    if "token" in name or "jwt" in name:
        return "jwt"
    if "csrf" in name or "xsrf" in name:
        return "csrf"
    if "ssn" in tokens:
        return "ssn"
    if ("id" in tokens or "uuid" in tokens) and param.param_type in ("string", "integer"):
        return "id"
    if "timestamp" in name or "time" in tokens or param.format in ("date-time", "date"):
        return "timestamp"
    if param.format in ("uri", "url") or "url" in tokens or "uri" in tokens:
        return "url"
    if "phone" in name or "mobile" in tokens:
        return "phone"
    if "amount" in name or "price" in name or "cost" in name:
        return "money"
    return None


def is_sensitive(param: Parameter) -> bool:
    name = param.name.lower()
    return any(s in name for s in SENSITIVE_NAMES)


def risk_level(endpoint: Endpoint) -> str:
    tags = {t.lower() for t in endpoint.tags}
    if tags & set(HIGH_RISK_TAGS):
        return "high"
    text = f"{endpoint.summary} {endpoint.operation_id or ''}".lower()
    if "delete" in text or endpoint.method == "DELETE":
        return "medium"
    return "low"


def data_categories(endpoint: Endpoint, semantics: Dict[str, Dict[str, Any]]) -> List[str]:
    tags = {t.lower() for t in endpoint.tags}
    categories = []
    if tags & set(FINANCIAL_TAGS) or any(s.get("semantic") == "money" for s in semantics.values()):
        categories.append("financial")
    if tags & set(PII_TAGS) or any(s.get("semantic") in PII_SEMANTICS for s in semantics.values()):
        categories.append("pii")
    return categories


class SemanticPass:
    """Tags parameters with semantic types and endpoints with a risk level."""

    name = NAME

    def __init__(self, config: Optional[ScanConfig] = None):
        self.config = config or ScanConfig()

    async def prepare(self, endpoints: List[Endpoint], workspace: EnrichmentWorkspace):
        return None

    def annotate(self, endpoint: Endpoint, workspace: EnrichmentWorkspace) -> Dict[str, Any]:
        parameters = {}
        for param in endpoint.parameters:
            semantic = detect_semantic_type(param)
            sensitive = is_sensitive(param)
            if semantic or sensitive:
                parameters[param.name] = {"semantic": semantic, "sensitive": sensitive}

        return {
            "parameters": parameters,
            "sensitive_parameters": sorted(n for n, s in parameters.items() if s["sensitive"]),
            "data_categories": data_categories(endpoint, parameters),
            "risk_level": risk_level(endpoint),
        }

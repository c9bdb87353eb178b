"""
Configuration loading, validation and the read-only config tree.

The validated ScanConfig is passed explicitly into every component; nothing
reads configuration from module state.
"""

import copy
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .exceptions import ConfigurationInvalidError
from .payload_manager import PayloadManager
from .utils import load_file, merge_dicts, setup_logging

logger = setup_logging("config")

VULNERABILITY_CLASSES = [
    "injection",
    "xss",
    "path_traversal",
    "command_injection",
    "ssti",
    "type_confusion",
]

SEVERITY_LEVELS = ("critical", "high", "medium", "low", "info")

# Endpoint-level checks that run outside the attack payloads
RESPONSE_CHECKS = ("sensitive_data", "rate_limit")

DEFAULT_CONFIG: Dict[str, Any] = {
    "ingestors": {
        "openapi": {"enabled": True, "versions": ["2.0", "3.0", "3.1"]},
        "graphql": {"enabled": True, "introspection": False, "endpoint_path": "/graphql"},
        "postman": {"enabled": True, "environments": True, "variables": {}},
        "har": {"enabled": True, "filter_static": True},
        "gateway": {"enabled": True, "providers": ["aws", "kong", "istio", "nginx"]},
        "priority": ["postman", "har", "graphql", "gateway", "openapi"],
    },
    "enrichment": {
        "source_maps": True,
        "typescript_definitions": True,
        "semantic_analysis": True,
        "code_discovery": {
            "enabled": True,
            "safe_mode": True,
            "max_depth": 5,
            "command": [],
            "timeout": 60,
        },
    },
    "rag": {
        "embedding_model": "text-embedding-3-small",
        "documentation_sources": ["./docs", "./README.md"],
        "confidence_threshold": 0.8,
        "max_tokens": 4000,
        "top_k": 3,
        "similarity_mapping": "clamp",
        "embedding_endpoint": "https://api.openai.com/v1/embeddings",
        "api_key": None,
    },
    "dast": {
        "max_concurrent": 10,
        "timeout": 30000,
        "follow_redirects": True,
        "custom_headers": {},
        "rate_limit": {"requests_per_second": 10, "burst_size": 20},
        "vulnerability_classes": list(VULNERABILITY_CLASSES),
        "max_payloads_per_class": 4,
        "payload_encodings": ["none"],
        "severity_table": {
            "command_injection": "critical",
            "injection": "high",
            "path_traversal": "high",
            "ssti": "high",
            "xss": "medium",
            "type_confusion": "low",
            "sensitive_data_exposure": "medium",
            "missing_rate_limit": "low",
        },
        "response_checks": ["sensitive_data"],
        "rate_limit_burst": 10,
        "blocking_classes": ["injection", "command_injection"],
        "latency_threshold": 4000,
        "max_retries": 3,
        "verify_ssl": False,
        "proxy": None,
    },
    "output": {"format": "json", "pretty": True, "include_metadata": True},
}

DEFAULT_CONFIG_PATHS = [
    "./specprobe.yaml",
    "./specprobe.yml",
    "./specprobe.json",
    "./.specprobe.yaml",
    "./config/specprobe.yaml",
]

REQUIRED_SECTIONS = ("ingestors", "enrichment", "rag", "dast")


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors)}


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_str_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) for v in value)


def _check(errors: List[str], section: Dict, key: str, prefix: str, predicate, expected: str):
    if key in section and not predicate(section[key]):
        errors.append(f"{prefix}.{key} must be {expected} (got {section[key]!r})")


def validate_config(tree: Any) -> ValidationResult:
    """
    Validate a configuration tree.

    Required sections must be present; fields are type-checked where given.
    Returns a ValidationResult rather than raising.
    """
    errors: List[str] = []

    if not isinstance(tree, dict):
        return ValidationResult(False, ["Configuration must be a mapping"])

    for section in REQUIRED_SECTIONS:
        if section not in tree:
            errors.append(f"Missing {section} configuration")
        elif not isinstance(tree[section], dict):
            errors.append(f"{section} must be a mapping")

    ingestors = tree.get("ingestors") if isinstance(tree.get("ingestors"), dict) else {}
    for name in ("openapi", "graphql", "postman", "har", "gateway"):
        sub = ingestors.get(name)
        if sub is None:
            continue
        if not isinstance(sub, dict):
            errors.append(f"ingestors.{name} must be a mapping")
            continue
        _check(errors, sub, "enabled", f"ingestors.{name}", lambda v: isinstance(v, bool), "a boolean")
    if isinstance(ingestors.get("openapi"), dict):
        _check(errors, ingestors["openapi"], "versions", "ingestors.openapi", _is_str_list, "a list of strings")
    if isinstance(ingestors.get("gateway"), dict):
        _check(errors, ingestors["gateway"], "providers", "ingestors.gateway", _is_str_list, "a list of strings")
    if isinstance(ingestors.get("postman"), dict):
        _check(errors, ingestors["postman"], "variables", "ingestors.postman", lambda v: isinstance(v, dict), "a mapping")
    _check(errors, ingestors, "priority", "ingestors", _is_str_list, "a list of strings")

    enrichment = tree.get("enrichment") if isinstance(tree.get("enrichment"), dict) else {}
    for toggle in ("source_maps", "typescript_definitions", "semantic_analysis"):
        _check(errors, enrichment, toggle, "enrichment", lambda v: isinstance(v, bool), "a boolean")
    discovery = enrichment.get("code_discovery")
    if discovery is not None:
        if not isinstance(discovery, dict):
            errors.append("enrichment.code_discovery must be a mapping")
        else:
            prefix = "enrichment.code_discovery"
            _check(errors, discovery, "enabled", prefix, lambda v: isinstance(v, bool), "a boolean")
            _check(errors, discovery, "safe_mode", prefix, lambda v: isinstance(v, bool), "a boolean")
            _check(errors, discovery, "max_depth", prefix, _is_int, "an integer")
            _check(errors, discovery, "command", prefix, _is_str_list, "a list of strings")
            _check(errors, discovery, "timeout", prefix, _is_number, "a number")

    rag = tree.get("rag") if isinstance(tree.get("rag"), dict) else {}
    if "rag" in tree and isinstance(tree["rag"], dict) and "confidence_threshold" not in rag:
        errors.append("rag.confidence_threshold must be a number")
    _check(errors, rag, "confidence_threshold", "rag", _is_number, "a number")
    _check(errors, rag, "embedding_model", "rag", lambda v: isinstance(v, str), "a string")
    _check(errors, rag, "documentation_sources", "rag", _is_str_list, "a list of strings")
    _check(errors, rag, "top_k", "rag", lambda v: _is_int(v) and v >= 1, "a positive integer")
    _check(errors, rag, "max_tokens", "rag", lambda v: _is_int(v) and v >= 1, "a positive integer")
    _check(errors, rag, "similarity_mapping", "rag", lambda v: v in ("clamp", "rescale"), "'clamp' or 'rescale'")

    dast = tree.get("dast") if isinstance(tree.get("dast"), dict) else {}
    if "dast" in tree and isinstance(tree["dast"], dict) and "max_concurrent" not in dast:
        errors.append("dast.max_concurrent must be an integer")
    _check(errors, dast, "max_concurrent", "dast", _is_int, "an integer")
    _check(errors, dast, "timeout", "dast", _is_number, "a number of milliseconds")
    _check(errors, dast, "follow_redirects", "dast", lambda v: isinstance(v, bool), "a boolean")
    _check(
        errors,
        dast,
        "custom_headers",
        "dast",
        lambda v: isinstance(v, dict) and all(isinstance(k, str) and isinstance(x, str) for k, x in v.items()),
        "a string-to-string mapping",
    )
    _check(errors, dast, "max_retries", "dast", lambda v: _is_int(v) and v >= 0, "a non-negative integer")
    _check(errors, dast, "latency_threshold", "dast", _is_number, "a number of milliseconds")
    _check(errors, dast, "max_payloads_per_class", "dast", lambda v: _is_int(v) and v >= 1, "a positive integer")
    _check(errors, dast, "blocking_classes", "dast", _is_str_list, "a list of strings")
    encodings = dast.get("payload_encodings")
    if encodings is not None:
        if not _is_str_list(encodings):
            errors.append("dast.payload_encodings must be a list of strings")
        else:
            unknown = [e for e in encodings if e not in PayloadManager.list_encodings()]
            if unknown:
                errors.append(f"dast.payload_encodings has unknown encodings: {', '.join(unknown)}")

    classes = dast.get("vulnerability_classes")
    if classes is not None:
        if not _is_str_list(classes):
            errors.append("dast.vulnerability_classes must be a list of strings")
        else:
            unknown = [c for c in classes if c not in VULNERABILITY_CLASSES]
            if unknown:
                errors.append(f"dast.vulnerability_classes has unknown classes: {', '.join(unknown)}")

    checks = dast.get("response_checks")
    if checks is not None:
        if not _is_str_list(checks):
            errors.append("dast.response_checks must be a list of strings")
        else:
            unknown = [c for c in checks if c not in RESPONSE_CHECKS]
            if unknown:
                errors.append(f"dast.response_checks has unknown checks: {', '.join(unknown)}")
    _check(
        errors, dast, "rate_limit_burst", "dast", lambda v: _is_int(v) and 2 <= v <= 100, "an integer from 2 to 100"
    )

    table = dast.get("severity_table")
    if table is not None:
        if not isinstance(table, dict):
            errors.append("dast.severity_table must be a mapping")
        else:
            for vuln_class, level in table.items():
                if level not in SEVERITY_LEVELS:
                    errors.append(f"dast.severity_table.{vuln_class} must be one of {', '.join(SEVERITY_LEVELS)}")

    rate_limit = dast.get("rate_limit")
    if rate_limit is not None:
        if not isinstance(rate_limit, dict):
            errors.append("dast.rate_limit must be a mapping")
        else:
            _check(errors, rate_limit, "requests_per_second", "dast.rate_limit", _is_number, "a number")
            _check(errors, rate_limit, "burst_size", "dast.rate_limit", _is_int, "an integer")

    output = tree.get("output")
    if output is not None:
        if not isinstance(output, dict):
            errors.append("output must be a mapping")
        else:
            _check(errors, output, "format", "output", lambda v: v in ("json", "yaml"), "'json' or 'yaml'")

    return ValidationResult(valid=not errors, errors=errors)


def apply_environment_overrides(tree: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Override selected settings from environment variables."""
    environ = os.environ if environ is None else environ
    result = copy.deepcopy(tree)

    if environ.get("OPENAI_API_KEY"):
        result.setdefault("rag", {})["api_key"] = environ["OPENAI_API_KEY"]

    for var, key in (("SPECPROBE_MAX_CONCURRENT", "max_concurrent"), ("SPECPROBE_TIMEOUT", "timeout")):
        if environ.get(var):
            try:
                result.setdefault("dast", {})[key] = int(environ[var])
            except ValueError:
                logger.warning(f"Ignoring non-integer {var}={environ[var]!r}")

    if environ.get("SPECPROBE_OUTPUT_FORMAT"):
        result.setdefault("output", {})["format"] = environ["SPECPROBE_OUTPUT_FORMAT"]

    return result


def clamp_config(tree: Dict[str, Any]) -> Dict[str, Any]:
    """Pull out-of-range numeric settings back into range, with a warning."""
    result = copy.deepcopy(tree)
    dast = result.get("dast", {})
    rag = result.get("rag", {})
    discovery = result.get("enrichment", {}).get("code_discovery", {})

    if _is_int(dast.get("max_concurrent")):
        if dast["max_concurrent"] < 1:
            logger.warning("max_concurrent must be at least 1, setting to 1")
            dast["max_concurrent"] = 1
        elif dast["max_concurrent"] > 100:
            logger.warning("max_concurrent capped at 100 for safety")
            dast["max_concurrent"] = 100

    if _is_number(dast.get("timeout")) and dast["timeout"] < 1000:
        logger.warning("timeout must be at least 1000ms, setting to 1000")
        dast["timeout"] = 1000

    threshold = rag.get("confidence_threshold")
    if _is_number(threshold) and not 0 <= threshold <= 1:
        logger.warning("confidence_threshold must be between 0 and 1, setting to 0.8")
        rag["confidence_threshold"] = 0.8

    if isinstance(discovery, dict) and _is_int(discovery.get("max_depth")) and discovery["max_depth"] > 10:
        logger.warning("code_discovery max_depth capped at 10 for performance")
        discovery["max_depth"] = 10

    return result


def load_config(config_path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Load a configuration tree from YAML or JSON, merged over the defaults.

    Without a path the default locations are searched in order. Environment
    overrides and range clamps are applied last. The result is a plain dict;
    pass it to build_config() to validate it and freeze it.
    """
    tree = copy.deepcopy(DEFAULT_CONFIG)
    paths = [config_path] if config_path else DEFAULT_CONFIG_PATHS

    for candidate in paths:
        if not Path(candidate).exists():
            if config_path:
                raise FileNotFoundError(f"Config file not found: {candidate}")
            continue
        user_config = load_file(candidate)
        if not isinstance(user_config, dict):
            raise ConfigurationInvalidError([f"{candidate} does not contain a mapping"])
        tree = merge_dicts(tree, user_config)
        logger.info(f"Loaded configuration from {candidate}")
        break

    tree = apply_environment_overrides(tree, environ)
    return clamp_config(tree)


def _freeze_map(value: Optional[Dict]) -> Mapping:
    return MappingProxyType(dict(value or {}))


@dataclass(frozen=True)
class IngestorsConfig:
    openapi_enabled: bool = True
    openapi_versions: Tuple[str, ...] = ("2.0", "3.0", "3.1")
    graphql_enabled: bool = True
    graphql_introspection: bool = False
    graphql_endpoint_path: str = "/graphql"
    postman_enabled: bool = True
    postman_environments: bool = True
    postman_variables: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    har_enabled: bool = True
    har_filter_static: bool = True
    gateway_enabled: bool = True
    gateway_providers: Tuple[str, ...] = ("aws", "kong", "istio", "nginx")
    priority: Tuple[str, ...] = ("postman", "har", "graphql", "gateway", "openapi")

    def is_enabled(self, name: str) -> bool:
        return bool(getattr(self, f"{name}_enabled", False))


@dataclass(frozen=True)
class CodeDiscoveryConfig:
    enabled: bool = True
    safe_mode: bool = True
    max_depth: int = 5
    command: Tuple[str, ...] = ()
    timeout: float = 60


@dataclass(frozen=True)
class EnrichmentConfig:
    source_maps: bool = True
    typescript_definitions: bool = True
    semantic_analysis: bool = True
    code_discovery: CodeDiscoveryConfig = field(default_factory=CodeDiscoveryConfig)

    def is_enabled(self, pass_name: str) -> bool:
        if pass_name == "code_discovery":
            return self.code_discovery.enabled
        return bool(getattr(self, pass_name, False))


@dataclass(frozen=True)
class RAGConfig:
    embedding_model: str = "text-embedding-3-small"
    documentation_sources: Tuple[str, ...] = ()
    confidence_threshold: float = 0.8
    max_tokens: int = 4000
    top_k: int = 3
    similarity_mapping: str = "clamp"
    embedding_endpoint: str = "https://api.openai.com/v1/embeddings"
    api_key: Optional[str] = None


@dataclass(frozen=True)
class DASTConfig:
    max_concurrent: int = 10
    timeout: int = 30000
    follow_redirects: bool = True
    custom_headers: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    requests_per_second: float = 10
    burst_size: int = 20
    vulnerability_classes: Tuple[str, ...] = tuple(VULNERABILITY_CLASSES)
    max_payloads_per_class: int = 4
    payload_encodings: Tuple[str, ...] = ("none",)
    severity_table: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType(dict(DEFAULT_CONFIG["dast"]["severity_table"]))
    )
    response_checks: Tuple[str, ...] = ("sensitive_data",)
    rate_limit_burst: int = 10
    blocking_classes: Tuple[str, ...] = ("injection", "command_injection")
    latency_threshold: int = 4000
    max_retries: int = 3
    verify_ssl: bool = False
    proxy: Optional[str] = None

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000.0


@dataclass(frozen=True)
class OutputConfig:
    format: str = "json"
    pretty: bool = True
    include_metadata: bool = True


@dataclass(frozen=True)
class ScanConfig:
    """Frozen configuration tree handed to every component."""

    ingestors: IngestorsConfig = field(default_factory=IngestorsConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    rag: RAGConfig = field(default_factory=RAGConfig)
    dast: DASTConfig = field(default_factory=DASTConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    @classmethod
    def from_dict(cls, tree: Dict[str, Any]) -> "ScanConfig":
        merged = merge_dicts(copy.deepcopy(DEFAULT_CONFIG), tree)
        ing = merged["ingestors"]
        enr = merged["enrichment"]
        disc = enr["code_discovery"]
        rag = merged["rag"]
        dast = merged["dast"]
        out = merged["output"]

        return cls(
            ingestors=IngestorsConfig(
                openapi_enabled=ing["openapi"].get("enabled", True),
                openapi_versions=tuple(ing["openapi"].get("versions", [])),
                graphql_enabled=ing["graphql"].get("enabled", True),
                graphql_introspection=ing["graphql"].get("introspection", False),
                graphql_endpoint_path=ing["graphql"].get("endpoint_path", "/graphql"),
                postman_enabled=ing["postman"].get("enabled", True),
                postman_environments=ing["postman"].get("environments", True),
                postman_variables=_freeze_map(ing["postman"].get("variables")),
                har_enabled=ing["har"].get("enabled", True),
                har_filter_static=ing["har"].get("filter_static", True),
                gateway_enabled=ing["gateway"].get("enabled", True),
                gateway_providers=tuple(ing["gateway"].get("providers", [])),
                priority=tuple(ing.get("priority", [])),
            ),
            enrichment=EnrichmentConfig(
                source_maps=enr.get("source_maps", True),
                typescript_definitions=enr.get("typescript_definitions", True),
                semantic_analysis=enr.get("semantic_analysis", True),
                code_discovery=CodeDiscoveryConfig(
                    enabled=disc.get("enabled", True),
                    safe_mode=disc.get("safe_mode", True),
                    max_depth=disc.get("max_depth", 5),
                    command=tuple(disc.get("command") or ()),
                    timeout=disc.get("timeout", 60),
                ),
            ),
            rag=RAGConfig(
                embedding_model=rag["embedding_model"],
                documentation_sources=tuple(rag.get("documentation_sources") or ()),
                confidence_threshold=float(rag["confidence_threshold"]),
                max_tokens=rag.get("max_tokens", 4000),
                top_k=rag.get("top_k", 3),
                similarity_mapping=rag.get("similarity_mapping", "clamp"),
                embedding_endpoint=rag.get("embedding_endpoint") or RAGConfig.embedding_endpoint,
                api_key=rag.get("api_key"),
            ),
            dast=DASTConfig(
                max_concurrent=dast["max_concurrent"],
                timeout=dast["timeout"],
                follow_redirects=dast.get("follow_redirects", True),
                custom_headers=_freeze_map(dast.get("custom_headers")),
                requests_per_second=dast.get("rate_limit", {}).get("requests_per_second", 10),
                burst_size=dast.get("rate_limit", {}).get("burst_size", 20),
                vulnerability_classes=tuple(dast.get("vulnerability_classes") or ()),
                max_payloads_per_class=dast.get("max_payloads_per_class", 4),
                payload_encodings=tuple(dast.get("payload_encodings") or ("none",)),
                severity_table=_freeze_map(dast.get("severity_table")),
                response_checks=tuple(dast.get("response_checks") or ()),
                rate_limit_burst=dast.get("rate_limit_burst", 10),
                blocking_classes=tuple(dast.get("blocking_classes") or ()),
                latency_threshold=dast.get("latency_threshold", 4000),
                max_retries=dast.get("max_retries", 3),
                verify_ssl=dast.get("verify_ssl", False),
                proxy=dast.get("proxy"),
            ),
            output=OutputConfig(
                format=out.get("format", "json"),
                pretty=out.get("pretty", True),
                include_metadata=out.get("include_metadata", True),
            ),
        )


def build_config(tree: Optional[Dict[str, Any]] = None) -> ScanConfig:
    """Validate a tree and freeze it. Raises ConfigurationInvalidError."""
    tree = copy.deepcopy(DEFAULT_CONFIG) if tree is None else tree
    result = validate_config(tree)
    if not result.valid:
        for error in result.errors:
            logger.error(f"Config: {error}")
        raise ConfigurationInvalidError(result.errors)
    return ScanConfig.from_dict(clamp_config(tree))


def render_template(fmt: str = "yaml") -> str:
    """Minimal starter configuration for `specprobe init`."""
    template = {
        "ingestors": {
            "openapi": {"enabled": True},
            "graphql": {"enabled": False},
            "postman": {"enabled": True},
            "har": {"enabled": False},
            "gateway": {"enabled": False},
        },
        "enrichment": {
            "source_maps": True,
            "typescript_definitions": True,
            "semantic_analysis": True,
            "code_discovery": {"enabled": False, "safe_mode": True},
        },
        "rag": {
            "embedding_model": "text-embedding-3-small",
            "documentation_sources": ["./docs"],
            "confidence_threshold": 0.8,
        },
        "dast": {
            "max_concurrent": 5,
            "timeout": 30000,
            "follow_redirects": True,
            "custom_headers": {},
        },
    }
    if fmt == "json":
        return json.dumps(template, indent=2)
    return yaml.safe_dump(template, sort_keys=False)

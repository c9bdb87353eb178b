"""
Payload generator: endpoints in, (endpoint, payload) pairs out.

Pure and deterministic. The same endpoint and configuration always give the
same payloads in the same order: parameters in endpoint order, classes in
`dast.vulnerability_classes` order, templates in PayloadManager order, then
encodings in `dast.payload_encodings` order.
"""

from typing import Iterable, List, Optional, Tuple

from core.config import ScanConfig
from core.models import BASELINE_CLASS, Endpoint, Parameter, ParameterLocation, Payload
from core.payload_manager import BOOLEAN, NUMERIC, STRING, PayloadManager
from core.utils import setup_logging

logger = setup_logging("payload_generator")

Pair = Tuple[Endpoint, Payload]


def type_context(param: Parameter) -> str:
    """Which template context is syntactically valid for a parameter's declared type."""
    if param.is_numeric:
        return NUMERIC
    if param.param_type == "boolean":
        return BOOLEAN
    return STRING


class PayloadGenerator:
    """Builds attack payloads per endpoint parameter and enabled class."""

    def __init__(self, config: Optional[ScanConfig] = None, manager: Optional[PayloadManager] = None):
        self.config = config or ScanConfig()
        self.manager = manager or PayloadManager()
        self.classes = [c for c in self.config.dast.vulnerability_classes if c in self.manager.list_classes()]
        self.max_per_class = self.config.dast.max_payloads_per_class
        self.encodings = list(self.config.dast.payload_encodings) or ["none"]

        unknown = set(self.config.dast.vulnerability_classes) - set(self.classes)
        if unknown:
            logger.warning(f"No templates for vulnerability classes: {', '.join(sorted(unknown))}")

    def for_parameter(self, param: Parameter) -> List[Payload]:
        if param.format == "binary":
            return []
        context = type_context(param)
        payloads = []
        for vuln_class in self.classes:
            for template in self.manager.get_templates(vuln_class, context)[: self.max_per_class]:
                for encoding in self.encodings:
                    payloads.append(
                        Payload(
                            vulnerability_class=vuln_class,
                            location=param.location,
                            parameter=param.name,
                            attack=self.manager.encode(template.attack, encoding),
                            signatures=template.signatures,
                            technique=template.technique,
                            encoding=encoding,
                        )
                    )
        return payloads

    def generate(self, endpoint: Endpoint) -> List[Payload]:
        payloads = []
        for param in endpoint.parameters:
            payloads.extend(self.for_parameter(param))
        return payloads

    def baseline(self, endpoint: Endpoint) -> Payload:
        """Benign payload: every parameter gets a type-appropriate harmless value."""
        return Payload(
            vulnerability_class=BASELINE_CLASS,
            location=ParameterLocation.QUERY,
            parameter="",
            attack="",
            technique="baseline",
        )

    def pairs(self, endpoints: Iterable[Endpoint]) -> List[Pair]:
        pairs = [(endpoint, payload) for endpoint in endpoints for payload in self.generate(endpoint)]
        logger.info(f"Generated {len(pairs)} payloads across {len(self.classes)} vulnerability classes")
        return pairs

    def baseline_pairs(self, endpoints: Iterable[Endpoint]) -> List[Pair]:
        return [(endpoint, self.baseline(endpoint)) for endpoint in endpoints]

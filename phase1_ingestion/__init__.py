"""
SPECPROBE API Security Testing Pipeline - Phase 1: Ingestion
"""

from .base import Ingestor
from .openapi import OpenAPIIngestor, export_openapi
from .graphql import GraphQLIngestor
from .postman import PostmanIngestor
from .har import HARIngestor
from .gateway import GatewayIngestor
from .registry import IngestorRegistry, IngestionOutcome

__all__ = [
    "Ingestor",
    "OpenAPIIngestor",
    "export_openapi",
    "GraphQLIngestor",
    "PostmanIngestor",
    "HARIngestor",
    "GatewayIngestor",
    "IngestorRegistry",
    "IngestionOutcome",
]

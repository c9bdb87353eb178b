"""
SPECPROBE API Security Testing Pipeline - Phase 3: Documentation Matching
"""

from .embeddings import CachingEmbedder, EmbeddingProvider, HTTPEmbeddingProvider
from .documentation import DocumentationLoader, split_markdown
from .matcher import (
    DocumentationMatcher,
    MatchReport,
    cosine_similarity,
    endpoint_descriptor,
    map_similarity,
)

__all__ = [
    "CachingEmbedder",
    "EmbeddingProvider",
    "HTTPEmbeddingProvider",
    "DocumentationLoader",
    "split_markdown",
    "DocumentationMatcher",
    "MatchReport",
    "cosine_similarity",
    "endpoint_descriptor",
    "map_similarity",
]

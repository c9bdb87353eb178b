"""
Embedding providers for the documentation matcher.

A provider turns text into a vector. It raises EmbeddingUnavailableError when
it cannot be reached at all, and ValueError when it rejects the input; the
matcher degrades on the first and propagates the second.
"""

import json
from typing import Dict, List, Optional, Protocol, runtime_checkable

from core.config import RAGConfig
from core.exceptions import EmbeddingUnavailableError, ProbeNetworkError, ProbeTimeoutError
from core.http_client import AsyncHTTPClient
from core.utils import setup_logging

logger = setup_logging("embeddings")

# Statuses that mean "try again later", not "bad input"
UNAVAILABLE_STATUSES = (401, 403, 408, 429)


@runtime_checkable
class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> List[float]:
        ...


class HTTPEmbeddingProvider:
    """
    OpenAI-compatible `/v1/embeddings` client.

    Usage:
        async with HTTPEmbeddingProvider(config.rag) as provider:
            vector = await provider.embed("GET /users/{id}")
    """

    def __init__(
        self,
        rag: Optional[RAGConfig] = None,
        client: Optional[AsyncHTTPClient] = None,
        timeout: float = 30,
        max_retries: int = 2,
    ):
        self.rag = rag or RAGConfig()
        self._owns_client = client is None
        self.client = client or AsyncHTTPClient(timeout=timeout, max_retries=max_retries, verify_ssl=True)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self._owns_client:
            await self.client.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.rag.api_key:
            headers["Authorization"] = f"Bearer {self.rag.api_key}"
        return headers

    async def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")

        try:
            response = await self.client.post(
                self.rag.embedding_endpoint,
                headers=self._headers(),
                json={"model": self.rag.embedding_model, "input": text},
            )
        except (ProbeNetworkError, ProbeTimeoutError) as e:
            raise EmbeddingUnavailableError(f"Embedding provider unreachable: {e}") from e

        if response.status in UNAVAILABLE_STATUSES or response.status >= 500:
            raise EmbeddingUnavailableError(f"Embedding provider returned HTTP {response.status}")
        if response.status >= 400:
            raise ValueError(f"Embedding request rejected (HTTP {response.status}): {response.body[:200]}")

        try:
            vector = json.loads(response.body)["data"][0]["embedding"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise EmbeddingUnavailableError(f"Malformed embedding response: {e}") from e

        if not isinstance(vector, list) or not all(isinstance(x, (int, float)) for x in vector):
            raise EmbeddingUnavailableError("Embedding response is not a numeric vector")
        return [float(x) for x in vector]


class CachingEmbedder:
    """Wraps a provider so each distinct text is embedded once per run."""

    def __init__(self, provider: EmbeddingProvider):
        self.provider = provider
        self._cache: Dict[str, List[float]] = {}
        self.calls = 0

    async def embed(self, text: str) -> List[float]:
        if text not in self._cache:
            self.calls += 1
            self._cache[text] = await self.provider.embed(text)
        return list(self._cache[text])

    def __len__(self) -> int:
        return len(self._cache)

    def clear(self):
        self._cache.clear()

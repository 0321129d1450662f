"""
Embedding providers.

The retriever only depends on `EmbeddingProvider.embed`. Two providers are
available: Gemini's embedding endpoint and a local feature-hashing provider
that needs no network and is used for offline operation and tests.
"""

import hashlib
import logging
import re
from abc import ABC, abstractmethod
from typing import List, Optional

import numpy as np

from config import settings
from core.services.gemini_service import GeminiService, gemini_service

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def cosine_similarity(a, b) -> float:
    """Cosine similarity of two vectors; 0.0 for mismatched or zero vectors"""
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    if a.shape != b.shape:
        return 0.0
    norm = np.linalg.norm(a) * np.linalg.norm(b)
    if norm == 0:
        return 0.0
    return float(np.dot(a, b) / norm)


class EmbeddingProvider(ABC):
    """Produces fixed-dimension vectors for text"""

    dimension: int

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        pass


class HashingEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic bag-of-words embedding.

    Each lowercased token is hashed into one of `dimension` buckets with a
    hash-derived sign, and the result is L2-normalised. Texts sharing
    vocabulary land close together, which is enough for the curated
    knowledge base.
    """

    def __init__(self, dimension: int = 1024):
        self.dimension = dimension

    async def embed(self, text: str) -> List[float]:
        return self.embed_sync(text)

    def embed_sync(self, text: str) -> List[float]:
        vector = np.zeros(self.dimension, dtype=float)
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "little") % self.dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector = vector / norm
        return vector.tolist()


class GeminiEmbeddingProvider(EmbeddingProvider):
    """Embeddings from the Gemini text-embedding model (768 dimensions)"""

    def __init__(self, service: Optional[GeminiService] = None, dimension: int = 768):
        self.service = service or gemini_service
        self.dimension = dimension

    async def embed(self, text: str) -> List[float]:
        vectors = await self.service.generate_embeddings([text])
        return vectors[0]


def create_embedding_provider() -> EmbeddingProvider:
    """Build the provider selected by EMBEDDING_PROVIDER"""
    provider = settings.EMBEDDING_PROVIDER.lower()
    if provider == "gemini":
        if not settings.GEMINI_API_KEY:
            logger.warning("EMBEDDING_PROVIDER=gemini but no API key, using hashing embeddings")
        else:
            return GeminiEmbeddingProvider()
    elif provider != "hashing":
        logger.warning(f"Unknown embedding provider '{provider}', using hashing embeddings")
    return HashingEmbeddingProvider(dimension=settings.EMBEDDING_DIMENSION)

"""
Vector similarity index.

`VectorIndex` is the narrow interface the retriever consumes. Queries never
raise: any failure, including a dimension mismatch between the query vector
and the stored vectors, degrades to an empty result.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
from pinecone import Pinecone

from config import settings

logger = logging.getLogger(__name__)


@dataclass
class VectorMatch:
    """A single query hit"""
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


def _matches_filter(metadata: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
    if not filter:
        return True
    return all(metadata.get(key) == value for key, value in filter.items())


class VectorIndex(ABC):
    """Abstract vector store"""

    @abstractmethod
    async def upsert(self, id: str, vector: List[float], metadata: Optional[Dict[str, Any]] = None) -> bool:
        pass

    @abstractmethod
    async def query(self, vector: List[float], top_k: int = 5,
                    filter: Optional[Dict[str, Any]] = None) -> List[VectorMatch]:
        pass

    @abstractmethod
    async def delete(self, ids: List[str]) -> int:
        pass


class InMemoryVectorIndex(VectorIndex):
    """Exact cosine search over vectors held in process memory"""

    def __init__(self):
        self._vectors: Dict[str, np.ndarray] = {}
        self._metadata: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    async def upsert(self, id: str, vector: List[float], metadata: Optional[Dict[str, Any]] = None) -> bool:
        array = np.asarray(vector, dtype=float)
        norm = np.linalg.norm(array)
        if norm == 0:
            logger.warning(f"Refusing to index zero vector for {id}")
            return False
        with self._lock:
            self._vectors[id] = array / norm
            self._metadata[id] = dict(metadata or {})
        return True

    async def query(self, vector: List[float], top_k: int = 5,
                    filter: Optional[Dict[str, Any]] = None) -> List[VectorMatch]:
        query = np.asarray(vector, dtype=float)
        norm = np.linalg.norm(query)
        if norm == 0:
            return []
        query = query / norm

        with self._lock:
            items = list(self._vectors.items())
            metadata = dict(self._metadata)

        matches = []
        for doc_id, stored in items:
            if stored.shape != query.shape:
                logger.warning(
                    f"Vector dimension mismatch for {doc_id}: index={stored.shape[0]} query={query.shape[0]}"
                )
                return []
            if not _matches_filter(metadata[doc_id], filter):
                continue
            matches.append(VectorMatch(id=doc_id, score=float(np.dot(stored, query)), metadata=metadata[doc_id]))

        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:top_k]

    async def delete(self, ids: List[str]) -> int:
        removed = 0
        with self._lock:
            for doc_id in ids:
                if self._vectors.pop(doc_id, None) is not None:
                    self._metadata.pop(doc_id, None)
                    removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._vectors)


class PineconeVectorIndex(VectorIndex):
    """
    Pinecone-backed index using the official SDK.

    The SDK client is synchronous, so each call runs in a worker thread under
    the configured timeout. Failures are logged and degrade the same way the
    in-memory index does: no matches, nothing upserted, nothing deleted.
    """

    def __init__(self, index: Any, namespace: str = "", timeout_seconds: int = 30):
        self.index = index
        self.namespace = namespace
        self.timeout_seconds = timeout_seconds

    async def _call(self, fn, **kwargs):
        return await asyncio.wait_for(asyncio.to_thread(fn, **kwargs), timeout=self.timeout_seconds)

    async def upsert(self, id: str, vector: List[float], metadata: Optional[Dict[str, Any]] = None) -> bool:
        try:
            await self._call(
                self.index.upsert,
                vectors=[{"id": id, "values": list(vector), "metadata": metadata or {}}],
                namespace=self.namespace,
            )
            return True
        except Exception as e:
            logger.error(f"Pinecone upsert failed for {id}: {e}")
            return False

    async def query(self, vector: List[float], top_k: int = 5,
                    filter: Optional[Dict[str, Any]] = None) -> List[VectorMatch]:
        kwargs = {
            "vector": list(vector),
            "top_k": top_k,
            "include_metadata": True,
            "namespace": self.namespace,
        }
        if filter:
            kwargs["filter"] = {key: {"$eq": value} for key, value in filter.items()}
        try:
            response = await self._call(self.index.query, **kwargs)
            return [
                VectorMatch(id=m.id, score=float(m.score or 0.0), metadata=dict(m.metadata or {}))
                for m in response.matches
            ]
        except Exception as e:
            logger.warning(f"Pinecone query failed, returning no matches: {e}")
            return []

    async def delete(self, ids: List[str]) -> int:
        try:
            await self._call(self.index.delete, ids=ids, namespace=self.namespace)
            return len(ids)
        except Exception as e:
            logger.error(f"Pinecone delete failed: {e}")
            return 0


def create_vector_index() -> VectorIndex:
    """Build the index selected by VECTOR_INDEX"""
    if settings.VECTOR_INDEX.lower() == "pinecone":
        if settings.PINECONE_HOST and settings.PINECONE_API_KEY:
            pc = Pinecone(api_key=settings.PINECONE_API_KEY)
            return PineconeVectorIndex(
                pc.Index(host=settings.PINECONE_HOST),
                namespace=settings.PINECONE_NAMESPACE,
                timeout_seconds=settings.VECTOR_TIMEOUT_SECONDS,
            )
        logger.warning("VECTOR_INDEX=pinecone but host/key missing, using in-memory index")
    return InMemoryVectorIndex()

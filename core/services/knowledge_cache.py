"""
Knowledge base for retrieval.

Documents are written to the vector index and mirrored in an in-process
cache. The cache is what retrieval falls back to when the index is
unreachable or returns nothing.
"""

import logging
import re
import threading
import uuid
from collections import Counter
from typing import Any, Dict, List, Optional

from models.schemas import KnowledgeDocument
from core.services.embedding_service import EmbeddingProvider, cosine_similarity
from core.services.vector_index import VectorIndex

logger = logging.getLogger(__name__)


DEFAULT_DOCUMENTS: List[Dict[str, Any]] = [
    {
        "id": "decline_patterns_en",
        "category": "decline_patterns",
        "content": (
            "English decline patterns: no, no thanks, don't want, cancel, stop, decline, "
            "refuse, reject, skip, pass, not interested, never mind."
        ),
        "metadata": {"language": "en", "keywords": ["no thanks", "cancel", "never mind", "not interested"]},
    },
    {
        "id": "decline_patterns_vi",
        "category": "decline_patterns",
        "content": (
            "Vietnamese decline patterns: không, không cần, thôi, hủy, dừng lại, "
            "không muốn, bỏ qua, không tạo."
        ),
        "metadata": {"language": "vi", "keywords": ["không cần", "thôi", "hủy", "dừng lại", "bỏ qua"]},
    },
    {
        "id": "task_management_guide",
        "category": "guide",
        "content": (
            "Task management guide: a task has a title, an optional description, a priority "
            "(HIGH, MEDIUM or LOW), an optional deadline and a status (TODO, IN_PROGRESS, DONE). "
            "Create a task by saying 'create task <title>'. Update a task with 'update task <id>' "
            "and delete one with 'delete task <id>'. Ask 'show my tasks' to list them or "
            "'task statistics' for a summary."
        ),
        "metadata": {"keywords": ["task", "priority", "deadline", "status"]},
    },
    {
        "id": "assistant_capabilities",
        "category": "capabilities",
        "content": (
            "Assistant capabilities: I can create tasks, update their title, description, "
            "priority, deadline or status, delete tasks, list your tasks and report task "
            "statistics. Start a command with a wake phrase such as 'TaskFlow,' to run it "
            "without a confirmation step."
        ),
        "metadata": {"keywords": ["can you", "what can you do", "help", "capabilities"]},
    },
]


class KnowledgeBase:
    """Curated knowledge cache backed by a vector index"""

    def __init__(self, embedding_provider: EmbeddingProvider, vector_index: VectorIndex):
        self.embedding_provider = embedding_provider
        self.vector_index = vector_index
        self._documents: Dict[str, KnowledgeDocument] = {}
        self._vectors: Dict[str, List[float]] = {}
        self._lock = threading.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        """Load the default documents once"""
        if self._initialized:
            return
        loaded = await self.bulk_load(DEFAULT_DOCUMENTS)
        self._initialized = True
        logger.info(f"Knowledge base initialized with {loaded} default documents")

    async def store_knowledge(self, content: str, category: str = "general",
                              metadata: Optional[Dict[str, Any]] = None,
                              doc_id: Optional[str] = None) -> KnowledgeDocument:
        """
        Embed and store a document in both the index and the cache.

        Args:
            content: Document text
            category: Category used for filtering and stats
            metadata: Extra attributes; a "keywords" list enables exact matching
            doc_id: Stable identifier, generated when omitted

        Returns:
            The stored document
        """
        if not content or not content.strip():
            raise ValueError("Knowledge content must not be empty")

        document = KnowledgeDocument(
            id=doc_id or f"kb_{uuid.uuid4().hex[:12]}",
            content=content.strip(),
            category=category,
            metadata=dict(metadata or {}),
        )
        vector = await self.embedding_provider.embed(document.content)

        with self._lock:
            self._documents[document.id] = document
            self._vectors[document.id] = vector

        index_metadata = {
            "content": document.content,
            "category": document.category,
        }
        indexed = await self.vector_index.upsert(document.id, vector, index_metadata)
        if not indexed:
            logger.warning(f"Document {document.id} cached but not indexed")
        return document

    async def bulk_load(self, documents: List[Dict[str, Any]]) -> int:
        loaded = 0
        for doc in documents:
            try:
                await self.store_knowledge(
                    doc["content"],
                    category=doc.get("category", "general"),
                    metadata=doc.get("metadata"),
                    doc_id=doc.get("id"),
                )
                loaded += 1
            except Exception as e:
                logger.error(f"Failed to load knowledge document {doc.get('id')}: {e}")
        return loaded

    def get(self, doc_id: str) -> Optional[KnowledgeDocument]:
        return self._documents.get(doc_id)

    def search_by_category(self, category: str, limit: int = 10) -> List[KnowledgeDocument]:
        with self._lock:
            docs = [d for d in self._documents.values() if d.category == category]
        return docs[:limit]

    def search_cache(self, query_vector: List[float], message: str,
                     top_k: int = 5, min_similarity: float = 0.7) -> List[KnowledgeDocument]:
        """
        In-process fallback search.

        Approximate match is cosine similarity over cached vectors. A document
        whose keyword phrase appears verbatim in the message is treated as an
        exact match and scored at least `min_similarity`.
        """
        lowered = message.lower()
        with self._lock:
            items = [(self._documents[i], self._vectors[i]) for i in self._documents]

        results = []
        for document, vector in items:
            score = cosine_similarity(query_vector, vector)
            keywords = document.metadata.get("keywords") or []
            if any(self._contains_phrase(lowered, kw) for kw in keywords):
                score = max(score, min_similarity)
            if score >= min_similarity:
                results.append(document.model_copy(update={"similarity": round(score, 4)}))

        results.sort(key=lambda d: d.similarity, reverse=True)
        return results[:top_k]

    @staticmethod
    def _contains_phrase(text: str, phrase: str) -> bool:
        return re.search(rf"(?<!\w){re.escape(phrase.lower())}(?!\w)", text) is not None

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            categories = Counter(d.category for d in self._documents.values())
        return {
            "total_documents": sum(categories.values()),
            "categories": dict(categories),
            "embedding_dimension": getattr(self.embedding_provider, "dimension", None),
            "index_type": type(self.vector_index).__name__,
        }

"""
Retrieval-augmented context assembly.

Embeds the message, queries the vector index, falls back to the in-process
knowledge cache, and renders recent turns into a context string. Retrieval
is best-effort: any failure produces an empty RAGContext.
"""

import logging
import time
from typing import List, Optional

from config import settings
from models.schemas import KnowledgeDocument, RAGContext
from core.conversation.context.memory import ConversationMemory
from core.conversation.understanding.declining_detector import DecliningIntentDetector
from core.services.embedding_service import EmbeddingProvider
from core.services.knowledge_cache import KnowledgeBase
from core.services.vector_index import VectorIndex

logger = logging.getLogger(__name__)


class ContextRetriever:
    """Builds a RAGContext per request"""

    def __init__(self, embedding_provider: EmbeddingProvider, vector_index: VectorIndex,
                 knowledge_base: KnowledgeBase, memory: ConversationMemory,
                 declining_detector: Optional[DecliningIntentDetector] = None,
                 top_k: Optional[int] = None, min_similarity: Optional[float] = None,
                 history_turns: Optional[int] = None):
        self.embedding_provider = embedding_provider
        self.vector_index = vector_index
        self.knowledge_base = knowledge_base
        self.memory = memory
        self.declining_detector = declining_detector or DecliningIntentDetector()
        self.top_k = top_k or settings.RETRIEVAL_TOP_K
        self.min_similarity = min_similarity if min_similarity is not None else settings.RETRIEVAL_MIN_SIMILARITY
        self.history_turns = history_turns or settings.HISTORY_TURNS

    async def retrieve_context(self, message: str, conversation_id: str,
                               user_id: Optional[str] = None) -> RAGContext:
        """
        Retrieve knowledge and conversation context for a message.

        Args:
            message: Current user message
            conversation_id: Conversation whose turns form the context string
            user_id: Requesting user, for logging only

        Returns:
            RAGContext; empty with quality 0 on any failure
        """
        start_time = time.time()
        try:
            conversation_context = self.memory.build_context_string(conversation_id, self.history_turns)
            query_vector = await self.embedding_provider.embed(message)

            documents = await self._query_index(query_vector)
            source = "vector_index"
            if not documents:
                documents = self.knowledge_base.search_cache(
                    query_vector, message, top_k=self.top_k, min_similarity=self.min_similarity
                )
                source = "knowledge_cache"

            quality = sum(d.similarity for d in documents) / len(documents) if documents else 0.0
            declining = self.declining_detector.analyze_context(conversation_context)
            elapsed_ms = (time.time() - start_time) * 1000

            logger.info(
                f"Retrieved {len(documents)} documents from {source} (quality {quality:.2f})",
                extra={"conversation_id": conversation_id, "user_id": user_id, "retrieval_time_ms": elapsed_ms},
            )
            return RAGContext(
                relevant_documents=documents,
                conversation_context=conversation_context,
                declining_analysis=declining,
                user_message=message,
                context_quality=quality,
                retrieval_time_ms=elapsed_ms,
            )
        except Exception as e:
            logger.error(f"Context retrieval failed for {conversation_id}: {e}")
            return RAGContext.empty(message)

    async def _query_index(self, query_vector: List[float]) -> List[KnowledgeDocument]:
        try:
            matches = await self.vector_index.query(query_vector, top_k=self.top_k)
        except Exception as e:
            logger.warning(f"Vector index unreachable, using knowledge cache: {e}")
            return []

        documents = []
        for match in matches:
            if match.score < self.min_similarity:
                continue
            cached = self.knowledge_base.get(match.id)
            documents.append(KnowledgeDocument(
                id=match.id,
                content=match.metadata.get("content") or (cached.content if cached else ""),
                category=match.metadata.get("category") or (cached.category if cached else "general"),
                metadata=cached.metadata if cached else {},
                similarity=round(match.score, 4),
            ))
        return documents

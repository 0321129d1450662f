"""
Knowledge store endpoints.

Documents added here are embedded and indexed so the context retriever can
surface them in later conversations.
"""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
import logging

from api.routes.chat import orchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


class KnowledgeRequest(BaseModel):
    """Knowledge document to store"""
    content: str
    category: str = "general"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    id: Optional[str] = None


@router.post("/knowledge")
async def store_knowledge(request: KnowledgeRequest):
    """Embed and store a knowledge document"""
    try:
        document = await orchestrator.knowledge_base.store_knowledge(
            content=request.content,
            category=request.category,
            metadata=request.metadata,
            doc_id=request.id,
        )
    except ValueError as e:
        logger.warning(f"Rejected knowledge document: {str(e)}")
        raise HTTPException(status_code=400, detail=str(e))

    return {"id": document.id, "category": document.category, "stored": True}


@router.get("/knowledge/stats")
async def knowledge_stats():
    """Document counts per category"""
    return orchestrator.knowledge_base.get_stats()


@router.get("/knowledge/category/{category}")
async def knowledge_by_category(category: str, limit: int = 10):
    """Stored documents of one category"""
    documents = orchestrator.knowledge_base.search_by_category(category, limit)
    return {"category": category, "documents": [d.model_dump() for d in documents]}

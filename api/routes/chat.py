"""
Chat endpoint for the task assistant.

Messages pass through the request middleware (logging, validation, rate
limiting, moderation) and then the conversation orchestrator.
"""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from typing import Optional, Dict, Any
import logging
import uuid

from core.conversation.pipeline.middleware import create_default_pipeline
from core.conversation.pipeline.orchestrator import ProcessingResult, create_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


class ChatRequest(BaseModel):
    """Chat request model"""
    message: str
    conversation_id: Optional[str] = None
    user_id: Optional[str] = None


class ChatResponse(BaseModel):
    """Chat response model"""
    response: str
    conversation_id: str
    intent: Optional[str] = None
    action: Optional[str] = None
    confidence: float = 0.0
    needs_more_info: bool = False
    metadata: Optional[Dict[str, Any]] = None


orchestrator = create_orchestrator()
middleware_pipeline = create_default_pipeline()
orchestrator.state_store.add_companion_sweep(middleware_pipeline.sweep_idle)


async def _run_orchestrator(data: Dict[str, Any]) -> ProcessingResult:
    return await orchestrator.process_message(
        message=data["message"],
        conversation_id=data["conversation_id"],
        user_id=data.get("user_id"),
    )


process_chat = middleware_pipeline.build(_run_orchestrator)


@router.post("/chat", response_model=ChatResponse)
async def chat_endpoint(request: ChatRequest):
    """
    Main chat endpoint.

    Returns the assistant reply together with the classified intent and
    action, and whether the assistant is waiting for more information.
    """
    conversation_id = request.conversation_id or str(uuid.uuid4())

    logger.info(
        f"Chat request received",
        extra={
            "conversation_id": conversation_id,
            "user_id": request.user_id,
            "message_length": len(request.message)
        }
    )

    try:
        result = await process_chat({
            "message": request.message,
            "conversation_id": conversation_id,
            "user_id": request.user_id,
        })

        metadata = dict(result.metadata)
        metadata["processing_time_ms"] = result.processing_time_ms
        return ChatResponse(
            response=result.response,
            conversation_id=conversation_id,
            intent=result.intent,
            action=result.action,
            confidence=result.confidence,
            needs_more_info=result.needs_more_info,
            metadata=metadata,
        )

    except ValueError as e:
        logger.warning(f"Validation error in chat request: {str(e)}")
        raise HTTPException(status_code=400, detail=str(e))

    except Exception as e:
        logger.error(
            f"Error processing chat request: {str(e)}",
            extra={"conversation_id": conversation_id},
            exc_info=True
        )

        # Return a user-friendly error response
        return ChatResponse(
            response="I apologize, but I encountered an error processing your request. Please try again.",
            conversation_id=conversation_id,
            metadata={"error": True, "error_type": type(e).__name__}
        )


@router.get("/chat/{conversation_id}/state")
async def get_conversation_state(conversation_id: str):
    """Current in-progress flow of a conversation"""
    state = orchestrator.state_store.get(conversation_id)
    if state is None:
        raise HTTPException(status_code=404, detail="No active flow for this conversation")
    return state.to_dict()


@router.delete("/chat/{conversation_id}/state")
async def clear_conversation_state(conversation_id: str):
    """Abandon the in-progress flow of a conversation"""
    cleared = orchestrator.clear_conversation(conversation_id)
    return {"conversation_id": conversation_id, "cleared": cleared}


@router.get("/chat/metrics")
async def get_chat_metrics():
    """Orchestrator and classifier counters"""
    return orchestrator.get_metrics()

"""
Handler for conversational and informational turns.

Covers small talk, off-topic messages and questions that do not map to a
task action. Replies come from the completion service grounded on the
retrieved knowledge; when the model is unavailable a templated reply is
used. While a task flow is active the pending question is repeated so the
flow resumes on the next on-topic message.
"""

import re
import logging
from typing import Optional

from models.schemas import ActionKind, IntentType, RAGContext
from core.conversation.handlers.base import BaseHandler, HandlerRequest, HandlerResponse
from core.services.gemini_service import GeminiService, GeminiServiceError, gemini_service

logger = logging.getLogger(__name__)

GREETING = re.compile(r"^(?:hi|hello|hey|good (?:morning|afternoon|evening)|xin chào|chào)\b", re.IGNORECASE)
THANKS = re.compile(r"\b(?:thanks|thank you|cảm ơn|cám ơn)\b", re.IGNORECASE)

DEFAULT_REPLY = (
    "I'm here to help! I can create, update, delete and list your tasks, "
    "or show task statistics. What would you like to do?"
)
GREETING_REPLY = "Hello! I can help you manage your tasks. Try 'create task write report' or 'show my tasks'."
THANKS_REPLY = "You're welcome! Anything else I can help with?"
OFFTOPIC_REPLY = "I'm mostly useful for managing your tasks, so I can't help much with that one."


class ConversationHandler(BaseHandler):
    """
    Handles turns that execute no tool.

    This handler manages:
    - Greetings and small talk
    - Questions about the assistant and task management
    - Off-topic interruptions of an active flow
    """

    actions = [ActionKind.NONE]

    def __init__(self, service: Optional[GeminiService] = None):
        super().__init__()
        self.gemini = service or gemini_service

    async def handle(self, request: HandlerRequest) -> HandlerResponse:
        """Handle conversation intent"""
        response_type = "gemini_generated"
        try:
            if not self.gemini.is_available:
                raise GeminiServiceError("Completion service not configured")
            message = await self.gemini.complete(self._build_prompt(request), max_tokens=300, temperature=0.7)
            message = message.strip()
            if not message:
                raise GeminiServiceError("Empty conversational reply")
        except GeminiServiceError as e:
            logger.info(f"Using templated reply for {request.conversation_id}: {e}")
            message = self._templated_reply(request)
            response_type = "template"

        if request.pending_question and request.pending_question not in message:
            message = f"{message}\n\nBack to your task: {request.pending_question}"

        response = HandlerResponse(
            success=True,
            message=message,
            metadata={
                "response_type": response_type,
                "flow_preserved": request.pending_question is not None,
            },
            actions=[{"type": "conversational_reply"}],
        )
        self.log_handling(request, response)
        return response

    def _build_prompt(self, request: HandlerRequest) -> str:
        prompt = (
            "You are a friendly task-management assistant. Answer the user's message briefly "
            "(at most three sentences) in the language they used. Do not claim to have created, "
            "changed or deleted anything.\n"
        )
        rag = request.rag_context
        if rag and rag.relevant_documents:
            prompt += "\nRelevant knowledge:\n"
            for doc in rag.relevant_documents[:3]:
                prompt += f"- {doc.content}\n"
        if rag and rag.conversation_context:
            prompt += f"\nRecent conversation:\n{rag.conversation_context}\n"
        if request.pending_question:
            prompt += f"\nThe user is in the middle of a task; the open question is: {request.pending_question}\n"
        prompt += f"\nUser: {request.message}\nAssistant:"
        return prompt

    def _templated_reply(self, request: HandlerRequest) -> str:
        text = request.message.strip()
        if GREETING.match(text):
            return GREETING_REPLY
        if THANKS.search(text):
            return THANKS_REPLY

        is_query = request.intent_result is not None and request.intent_result.intent_type == IntentType.QUERY
        knowledge = self._top_document(request.rag_context)
        if is_query and knowledge:
            return knowledge
        if request.pending_question:
            return OFFTOPIC_REPLY
        return DEFAULT_REPLY

    @staticmethod
    def _top_document(rag_context: Optional[RAGContext]) -> Optional[str]:
        if rag_context is None:
            return None
        for doc in rag_context.relevant_documents:
            if doc.category in ("guide", "capabilities"):
                return doc.content
        return None

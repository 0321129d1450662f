"""
Upstream failure handling and human hand-off.

Classifies exceptions from the completion, embedding and index services
into a small set of categories so the user always receives a contextual
conversational reply, and records hand-offs to a human operator.
"""

import asyncio
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from core.services.gemini_service import CompletionTimeoutError, RateLimitExceededError

logger = logging.getLogger(__name__)


class EscalationService:
    """Turns failures into user-facing messages and tracks hand-offs"""

    HUMAN_REQUEST_PATTERNS = [
        r"\b(talk|speak|chat)\s*(to|with)\s*(a\s*)?(human|person|real person|agent|someone)\b",
        r"\b(human|live)\s*(agent|support|operator)\b",
        r"\b(gặp|nói chuyện với)\s*(nhân viên|người thật)\b",
    ]

    FALLBACK_RESPONSES = {
        "quota": (
            "I'm getting a lot of requests right now, so I'm running in a simpler mode. "
            "I can still create, update, delete and list tasks."
        ),
        "timeout": "That took longer than expected. Please try again in a moment.",
        "auth": "I'm having trouble reaching my language service. Basic task commands still work.",
        "unknown": "I'm sorry, something went wrong on my side. Could you rephrase or try again?",
    }

    HANDOFF_RESPONSE = (
        "I've flagged this conversation for a team member, who will follow up with you. "
        "Anything you've already told me about your task is saved."
    )

    def __init__(self):
        self._human_patterns = [re.compile(p, re.IGNORECASE) for p in self.HUMAN_REQUEST_PATTERNS]
        self._escalations: List[Dict[str, Any]] = []

    def classify_error(self, error: BaseException) -> str:
        if isinstance(error, RateLimitExceededError):
            return "quota"
        if isinstance(error, (CompletionTimeoutError, asyncio.TimeoutError, TimeoutError)):
            return "timeout"
        text = str(error).lower()
        if "quota" in text or "limit" in text or "429" in text:
            return "quota"
        if "timeout" in text or "timed out" in text:
            return "timeout"
        if "unauthorized" in text or "api key" in text or "401" in text or "403" in text:
            return "auth"
        return "unknown"

    def handle_upstream_error(self, error: BaseException, conversation_id: Optional[str] = None) -> str:
        """Contextual apology for an exception that escaped a turn"""
        error_type = self.classify_error(error)
        logger.error(
            f"Upstream error ({error_type}) in conversation {conversation_id}: {error}",
            extra={"conversation_id": conversation_id, "error_type": error_type},
        )
        return self.FALLBACK_RESPONSES[error_type]

    def is_human_request(self, message: str) -> bool:
        return any(p.search(message) for p in self._human_patterns)

    def escalate_to_human(self, conversation_id: str, reason: str,
                          user_message: Optional[str] = None) -> str:
        record = {
            "conversation_id": conversation_id,
            "reason": reason,
            "user_message": user_message,
            "escalated_at": datetime.utcnow().isoformat(),
        }
        self._escalations.append(record)
        logger.warning(f"Escalating conversation {conversation_id} to a human: {reason}", extra=record)
        return self.HANDOFF_RESPONSE

    def get_escalations(self, conversation_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if conversation_id is None:
            return list(self._escalations)
        return [e for e in self._escalations if e["conversation_id"] == conversation_id]

    def sweep(self, max_age: timedelta, now: Optional[datetime] = None) -> int:
        """Forget escalation records older than max_age; returns how many were dropped"""
        cutoff = (now or datetime.utcnow()) - max_age
        kept = [e for e in self._escalations if datetime.fromisoformat(e["escalated_at"]) >= cutoff]
        dropped = len(self._escalations) - len(kept)
        self._escalations = kept
        return dropped

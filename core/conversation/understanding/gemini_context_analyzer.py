"""
Gemini-powered context analysis using structured prompts.

Asks the completion service for a constrained JSON object describing the
active flow and the role of the current message, then validates it against
a strict schema. Any upstream or parse failure is raised so the intent
classifier can switch to the deterministic analyzer.
"""

import logging
from typing import List, Optional

from pydantic import ValidationError

from config import settings
from models.schemas import (
    ContextAnalysis,
    ContextAnalysisPayload,
    ContextIntentType,
    ConversationTurn,
    RAGContext,
)
from core.conversation.understanding.context_analyzer import ContextAnalysisStrategy, FlowClues
from core.conversation.understanding.pattern_context_analyzer import FALLBACK_CONFIDENCE
from core.conversation.understanding.slot_extractor import SlotExtractor
from core.services.gemini_service import GeminiService, MalformedResponseError, gemini_service

logger = logging.getLogger(__name__)


class GeminiContextAnalyzer(ContextAnalysisStrategy):
    """Model-assisted context analysis"""

    name = "gemini"

    def __init__(self, service: Optional[GeminiService] = None,
                 extractor: Optional[SlotExtractor] = None,
                 history_turns: Optional[int] = None):
        self.gemini = service or gemini_service
        self.extractor = extractor or SlotExtractor()
        self.history_turns = history_turns or settings.HISTORY_TURNS

    @property
    def is_available(self) -> bool:
        return self.gemini.is_available

    def _build_prompt(self, message: str, clues: FlowClues,
                      rag_context: Optional[RAGContext]) -> str:
        """Build structured prompt for flow and intent analysis"""
        prompt = """You are the context analyzer of a task-management assistant.

Decide which conversation flow is active and what the user's latest message does within it.
Users may create, update, delete or list tasks, answer a question the assistant asked,
confirm an action, ask something unrelated, or just chat. They may write in English or Vietnamese.

current_flow values: TASK_CREATION, TASK_UPDATE, TASK_DELETION, TASK_QUERY, CONVERSATION, IDLE, SMALL_TALK
intent_type values:
- TASK_CREATION / TASK_UPDATE / TASK_DELETION / TASK_QUERY: the message starts that kind of request
- FIELD_INPUT: the message supplies a value for the active flow (field_mapping names the field)
- CONFIRMATION: the message approves executing the active flow now
- CLARIFICATION: the message asks about the current question or the assistant's capabilities
- OFFTOPIC: unrelated to the active flow (the flow must continue afterwards)
- SMALL_TALK: greetings and chat with no active flow

Fields: title, description, priority (HIGH, MEDIUM, LOW), deadline (ISO date or null), task_id, field, value.
"""
        if clues.has_active_flow:
            prompt += f"\nActive flow: {clues.active_flow.value}"
            prompt += f"\nCollected fields: {clues.filled_slots}"
            prompt += f"\nAssistant is waiting for: {clues.waiting_for or 'nothing specific'}"
        else:
            prompt += "\nNo flow is active."

        history = self._recent_history(clues.relevant_history)
        if history:
            prompt += "\n\nRecent conversation (oldest first):\n"
            for turn in history:
                speaker = "User" if turn.role == "user" else "Assistant"
                prompt += f"{speaker}: {turn.content}\n"

        if rag_context and rag_context.relevant_documents:
            prompt += "\nRelevant knowledge:\n"
            for doc in rag_context.relevant_documents[:3]:
                prompt += f"- {doc.content}\n"

        prompt += f"""
Current user message: {message}

Return only a JSON object with exactly these keys:
{{"current_flow": "...", "intent_type": "...", "field_mapping": "field or null",
"extracted_value": "value or null", "confidence": 0.0, "should_continue_flow": true,
"next_expected_input": "field or null"}}"""
        return prompt

    def _recent_history(self, history: List[ConversationTurn]) -> List[ConversationTurn]:
        return history[-self.history_turns:]

    async def analyze(self, message: str, clues: FlowClues,
                      rag_context: Optional[RAGContext] = None) -> ContextAnalysis:
        """
        Analyze a message with the completion service.

        Raises:
            GeminiServiceError: on unavailability, rate limiting, timeout or unusable output
        """
        prompt = self._build_prompt(message, clues, rag_context)
        raw = await self.gemini.complete(prompt, max_tokens=500, temperature=0.1)
        data = self.gemini.extract_json(raw)

        try:
            payload = ContextAnalysisPayload.model_validate(data)
        except ValidationError as e:
            raise MalformedResponseError(f"Context analysis failed schema validation: {e.error_count()} errors") from e

        analysis = ContextAnalysis(
            current_flow=payload.current_flow,
            intent_type=payload.intent_type,
            field_mapping=payload.field_mapping,
            extracted_value=payload.extracted_value,
            confidence=max(payload.confidence, FALLBACK_CONFIDENCE[payload.intent_type]),
            should_continue_flow=payload.should_continue_flow,
            next_expected_input=payload.next_expected_input,
            relevant_history=self._recent_history(clues.relevant_history),
            metadata={
                "fallback": False,
                "source": self.name,
                "model_confidence": payload.confidence,
                **clues.history_values,
            },
        )
        self._normalize_values(analysis)
        self._enforce_flow_preservation(analysis, clues)
        return analysis

    def _normalize_values(self, analysis: ContextAnalysis) -> None:
        """Bring model-supplied field values into the same vocabulary the extractors produce"""
        value = analysis.extracted_value
        if value is None or not isinstance(value, (str, int, float)):
            return
        text = str(value)
        if analysis.field_mapping == "priority":
            result = self.extractor.extract_priority(text)
            analysis.extracted_value = result.value if result.found else None
        elif analysis.field_mapping == "deadline":
            result = self.extractor.extract_deadline(text)
            if result.found:
                analysis.extracted_value = result.value

    def _enforce_flow_preservation(self, analysis: ContextAnalysis, clues: FlowClues) -> None:
        """An unrelated message never ends an active task flow"""
        if not clues.has_active_flow:
            return
        if analysis.intent_type in (ContextIntentType.OFFTOPIC, ContextIntentType.SMALL_TALK):
            analysis.intent_type = ContextIntentType.OFFTOPIC
            analysis.confidence = max(analysis.confidence, FALLBACK_CONFIDENCE[ContextIntentType.OFFTOPIC])
            analysis.current_flow = clues.active_flow
            analysis.should_continue_flow = True
            analysis.next_expected_input = clues.waiting_for
        elif analysis.intent_type == ContextIntentType.CLARIFICATION:
            analysis.current_flow = clues.active_flow
            analysis.should_continue_flow = True

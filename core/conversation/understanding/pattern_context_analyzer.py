"""
Rule-based context analysis.

Deterministic strategy used whenever the model-assisted analyzer is
unavailable, rate limited or returns unusable output. Rules are evaluated
in a fixed order over the raw message and the flow clues, and every
confidence it reports is deliberately lower than what the model tier
reports for the same classification.
"""

import re
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from models.schemas import (
    ContextAnalysis,
    ContextIntentType,
    ConversationFlow,
    RAGContext,
)
from core.conversation.understanding.context_analyzer import ContextAnalysisStrategy, FlowClues
from core.conversation.understanding.slot_extractor import (
    CREATION_TRIGGER,
    DELETE_TRIGGER,
    UPDATE_TRIGGER,
    SlotExtractor,
)

logger = logging.getLogger(__name__)


# Confidence reported by the rules for each classification. The model tier
# never reports less than this for the same intent.
FALLBACK_CONFIDENCE: Dict[ContextIntentType, float] = {
    ContextIntentType.TASK_CREATION: 0.75,
    ContextIntentType.TASK_UPDATE: 0.7,
    ContextIntentType.TASK_DELETION: 0.7,
    ContextIntentType.TASK_QUERY: 0.7,
    ContextIntentType.CONFIRMATION: 0.7,
    ContextIntentType.FIELD_INPUT: 0.65,
    ContextIntentType.OFFTOPIC: 0.6,
    ContextIntentType.CLARIFICATION: 0.5,
    ContextIntentType.SMALL_TALK: 0.3,
}

CATCH_ALL_CONFIDENCE = 0.5

ADDITIONAL_INFO = "additional_info"


@dataclass
class IntentPattern:
    """A compiled rule pattern"""
    pattern: str
    intent_type: ContextIntentType
    full_match: bool = False

    def __post_init__(self):
        self._regex = re.compile(self.pattern, re.IGNORECASE)

    def matches(self, text: str) -> bool:
        if self.full_match:
            return self._regex.fullmatch(text) is not None
        return self._regex.search(text) is not None


class PatternContextAnalyzer(ContextAnalysisStrategy):
    """Ordered pattern rules over message and flow clues"""

    name = "pattern"

    CREATION_ORDER = ["title", "priority", "deadline"]

    def __init__(self, extractor: Optional[SlotExtractor] = None):
        self.extractor = extractor or SlotExtractor()
        self._initialize_patterns()

    def _initialize_patterns(self):
        """Initialize all rule patterns"""
        self.confirmation_patterns = [
            IntentPattern(r"(?:yes|yeah|yep|ok|okay|oke|sure|confirm(?:ed)?|correct|right)(?: please)?", ContextIntentType.CONFIRMATION, True),
            IntentPattern(
                r"(?:(?:yes|ok|okay|oke|sure)[,\s]+)?(?:please\s+)?(?:go ahead and\s+)?"
                r"(?:create|save|make|add|confirm create|do)(?:\s+(?:it|the task|this|that))?(?:\s+(?:now|please))?",
                ContextIntentType.CONFIRMATION, True,
            ),
            IntentPattern(r"(?:go ahead|do it|that'?s (?:all|it)|done|looks good|sounds good)(?: now)?", ContextIntentType.CONFIRMATION, True),
            IntentPattern(r"(?:tạo ngay|tạo luôn|tạo đi|đồng ý|có|được|xong|ừ|oke luôn)", ContextIntentType.CONFIRMATION, True),
        ]

        self.list_patterns = [
            IntentPattern(r"^(?:show|list|get|display|view|see)\b.*\b(?:tasks?|todos?|to-dos?)\b", ContextIntentType.TASK_QUERY),
            IntentPattern(r"^what (?:are|is) (?:on )?my (?:tasks?|todos?|to-do list)\b", ContextIntentType.TASK_QUERY),
            IntentPattern(r"\b(?:xem|liệt kê)\b.*\b(?:công việc|task)\b", ContextIntentType.TASK_QUERY),
        ]

        self.statistics_patterns = [
            IntentPattern(r"\b(?:task )?(?:statistics|stats|summary|progress report)\b", ContextIntentType.TASK_QUERY),
            IntentPattern(r"\bhow many tasks\b", ContextIntentType.TASK_QUERY),
            IntentPattern(r"\bthống kê\b", ContextIntentType.TASK_QUERY),
        ]

        self.small_talk_patterns = [
            IntentPattern(
                r"\b(?:hello|hi|hey|thanks|thank you|good (?:morning|afternoon|evening|night)|how are you|"
                r"joke|weather|news|lol|haha|bye|xin chào|chào|cảm ơn|thời tiết)\b",
                ContextIntentType.SMALL_TALK,
            ),
        ]

        self.question_pattern = re.compile(
            r"(?:\?\s*$|^(?:what|how|why|when|where|who|which|can|could|would|will|is|are|do|does|"
            r"tell me|explain|bạn có thể|làm sao|tại sao|cái gì)\b)",
            re.IGNORECASE,
        )

        self.clarification_pattern = re.compile(
            r"\b(?:what do you mean|which options|what options|options are there|what (?:priority|priorities|format)|"
            r"what should i (?:say|enter|put)|example|ý bạn là)\b",
            re.IGNORECASE,
        )

    async def analyze(self, message: str, clues: FlowClues,
                      rag_context: Optional[RAGContext] = None) -> ContextAnalysis:
        return self.analyze_sync(message, clues)

    def analyze_sync(self, message: str, clues: FlowClues) -> ContextAnalysis:
        """
        Apply the rules in order and return the first match.

        Args:
            message: Raw user message
            clues: Active flow, awaited slot and values recovered from history

        Returns:
            ContextAnalysis tagged with fallback metadata
        """
        text = message.strip()
        lowered = text.lower().rstrip(".!")

        analysis = (
            self._match_creation(text, clues)
            or self._match_update(text, clues)
            or self._match_deletion(text, clues)
            or self._match_query(lowered, clues)
        )
        if analysis is None and clues.has_active_flow:
            analysis = self._match_in_flow(text, lowered, clues)
        if analysis is None:
            analysis = self._match_idle(lowered)

        analysis.relevant_history = list(clues.relevant_history)
        analysis.metadata.update({
            "fallback": True,
            "pattern_matching": True,
            "context_aware": clues.has_active_flow,
            "source": self.name,
        })
        for key, value in clues.history_values.items():
            analysis.metadata.setdefault(key, value)
        logger.debug(
            f"Pattern analysis: {analysis.intent_type.value} flow={analysis.current_flow.value} "
            f"field={analysis.field_mapping} confidence={analysis.confidence}"
        )
        return analysis

    def _result(self, intent: ContextIntentType, flow: ConversationFlow, **kwargs: Any) -> ContextAnalysis:
        return ContextAnalysis(
            current_flow=flow,
            intent_type=intent,
            confidence=FALLBACK_CONFIDENCE[intent],
            **kwargs,
        )

    # Flow-starting rules

    def _match_creation(self, text: str, clues: FlowClues) -> Optional[ContextAnalysis]:
        if not CREATION_TRIGGER.match(text):
            return None
        title, inline = self.extractor.split_creation_message(text)
        known = {"title": title, **inline}
        next_expected = next((s for s in self.CREATION_ORDER if known.get(s) is None and s not in inline), None)
        metadata: Dict[str, Any] = {"initial_task_creation": True}
        if title:
            metadata["task_title"] = title
        metadata.update(inline)
        return self._result(
            ContextIntentType.TASK_CREATION,
            ConversationFlow.TASK_CREATION,
            field_mapping="title",
            extracted_value=title,
            should_continue_flow=True,
            next_expected_input=next_expected,
            metadata=metadata,
        )

    def _match_update(self, text: str, clues: FlowClues) -> Optional[ContextAnalysis]:
        match = UPDATE_TRIGGER.match(text)
        if not match:
            return None
        remainder = text[match.end():]
        metadata: Dict[str, Any] = {}
        id_match = re.match(r"\s*#?(\d+)\b", remainder)
        if id_match:
            metadata["task_id"] = id_match.group(1)
            remainder = remainder[id_match.end():]
        field_result = self.extractor.extract_field(remainder)
        if field_result.found:
            metadata["field"] = field_result.value
            value_match = re.search(r"\bto\s+(.+)$", remainder, re.IGNORECASE)
            if value_match:
                value = self.extractor.normalize_field_value(field_result.value, value_match.group(1))
                if value.found:
                    metadata["value"] = value.value
        next_expected = next((s for s in ("task_id", "field", "value") if s not in metadata), None)
        return self._result(
            ContextIntentType.TASK_UPDATE,
            ConversationFlow.TASK_UPDATE,
            field_mapping="task_id",
            extracted_value=metadata.get("task_id"),
            should_continue_flow=True,
            next_expected_input=next_expected,
            metadata=metadata,
        )

    def _match_deletion(self, text: str, clues: FlowClues) -> Optional[ContextAnalysis]:
        match = DELETE_TRIGGER.match(text)
        if not match:
            return None
        remainder = text[match.end():].strip()
        task_id = self.extractor.extract_task_id(remainder) if remainder else None
        value = task_id.value if task_id is not None and task_id.found else None
        return self._result(
            ContextIntentType.TASK_DELETION,
            ConversationFlow.TASK_DELETION,
            field_mapping="task_id",
            extracted_value=value,
            should_continue_flow=value is None,
            next_expected_input=None if value else "task_id",
            metadata={"task_id": value} if value else {},
        )

    def _match_query(self, lowered: str, clues: FlowClues) -> Optional[ContextAnalysis]:
        query = None
        if any(p.matches(lowered) for p in self.statistics_patterns):
            query = "statistics"
        elif any(p.matches(lowered) for p in self.list_patterns):
            query = "list"
        if query is None:
            return None
        return self._result(
            ContextIntentType.TASK_QUERY,
            clues.active_flow or ConversationFlow.TASK_QUERY,
            should_continue_flow=clues.has_active_flow,
            next_expected_input=clues.waiting_for,
            metadata={"query": query},
        )

    # Rules that only apply inside an active flow

    def _match_in_flow(self, text: str, lowered: str, clues: FlowClues) -> ContextAnalysis:
        flow = clues.active_flow

        if self.question_pattern.search(lowered) or any(p.matches(lowered) for p in self.small_talk_patterns):
            intent = (
                ContextIntentType.CLARIFICATION
                if self.clarification_pattern.search(lowered)
                else ContextIntentType.OFFTOPIC
            )
            return self._result(
                intent, flow,
                should_continue_flow=True,
                next_expected_input=clues.waiting_for,
            )

        if flow == ConversationFlow.TASK_CREATION:
            priority = self.extractor.extract_priority(text)
            if priority.found:
                return self._field_input(clues, "priority", priority.value)

            deadline = self.extractor.extract_deadline(text)
            if deadline.found and (deadline.value is not None or clues.waiting_for == "deadline"):
                return self._field_input(clues, "deadline", deadline.value)

        if clues.filled_count > 0 and any(p.matches(lowered) for p in self.confirmation_patterns):
            return self._result(
                ContextIntentType.CONFIRMATION, flow,
                extracted_value="yes",
                should_continue_flow=False,
            )

        if clues.waiting_for:
            if clues.waiting_for == "value" and clues.filled_slots.get("field"):
                extraction = self.extractor.normalize_field_value(clues.filled_slots["field"], text)
            else:
                extraction = self.extractor.extract(clues.waiting_for, text)
            if extraction.found:
                return self._field_input(clues, clues.waiting_for, extraction.value)

        # Context-aware catch-all keeps the flow alive on ambiguous input
        return ContextAnalysis(
            current_flow=flow,
            intent_type=ContextIntentType.FIELD_INPUT,
            field_mapping=ADDITIONAL_INFO,
            extracted_value=text,
            confidence=CATCH_ALL_CONFIDENCE,
            should_continue_flow=True,
            next_expected_input=clues.waiting_for,
        )

    def _field_input(self, clues: FlowClues, slot: str, value: Any) -> ContextAnalysis:
        remaining: List[str] = [
            s for s in self.CREATION_ORDER
            if s != slot and s not in clues.filled_slots
        ] if clues.active_flow == ConversationFlow.TASK_CREATION else []
        return self._result(
            ContextIntentType.FIELD_INPUT,
            clues.active_flow,
            field_mapping=slot,
            extracted_value=value,
            should_continue_flow=True,
            next_expected_input=remaining[0] if remaining else None,
        )

    # No active flow

    def _match_idle(self, lowered: str) -> ContextAnalysis:
        if self.question_pattern.search(lowered) and not any(p.matches(lowered) for p in self.small_talk_patterns):
            return self._result(ContextIntentType.CLARIFICATION, ConversationFlow.CONVERSATION)
        return self._result(ContextIntentType.SMALL_TALK, ConversationFlow.IDLE)

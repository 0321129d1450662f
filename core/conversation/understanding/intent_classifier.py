"""
Two-tier intent classification.

A strategy selector runs the model-assisted analyzer when it is usable and
the deterministic analyzer otherwise, including after any upstream or parse
failure. The fine-grained ContextAnalysis is then mapped to the coarse
(intent type, action) pair the orchestrator dispatches on.
"""

import re
import logging
from typing import Any, Dict, List, Optional

from models.schemas import (
    ACTION_FOR_FLOW,
    ActionKind,
    ContextAnalysis,
    ContextIntentType,
    ConversationFlow,
    ConversationTurn,
    FLOW_FOR_ACTION,
    IntentResult,
    IntentType,
    RAGContext,
)
from core.conversation.orchestration.slot_filling import SLOT_SCHEMA, question_for
from core.conversation.orchestration.state_store import ConversationState, ConversationStateStore
from core.conversation.understanding.context_analyzer import (
    ContextAnalysisStrategy,
    ContextAnalyzer,
)
from core.conversation.understanding.pattern_context_analyzer import ADDITIONAL_INFO, PatternContextAnalyzer
from core.services.gemini_service import GeminiServiceError, RateLimitExceededError

logger = logging.getLogger(__name__)

_STATISTICS_HINT = re.compile(r"statist|stats|summary|how many|thống kê", re.IGNORECASE)

ACTION_FOR_CONVERSATION_FLOW = {
    ConversationFlow.TASK_CREATION: ActionKind.CREATE_TASK,
    ConversationFlow.TASK_UPDATE: ActionKind.UPDATE_TASK,
    ConversationFlow.TASK_DELETION: ActionKind.DELETE_TASK,
}

ACTION_FOR_START_INTENT = {
    ContextIntentType.TASK_CREATION: ActionKind.CREATE_TASK,
    ContextIntentType.TASK_UPDATE: ActionKind.UPDATE_TASK,
    ContextIntentType.TASK_DELETION: ActionKind.DELETE_TASK,
}


class IntentClassifier:
    """
    Selects an analysis strategy and maps its output to an IntentResult.

    Both strategies implement ContextAnalysisStrategy. The deterministic
    strategy is always available, so classification never fails.
    """

    def __init__(self, primary: Optional[ContextAnalysisStrategy] = None,
                 fallback: Optional[PatternContextAnalyzer] = None,
                 context_analyzer: Optional[ContextAnalyzer] = None):
        self.primary = primary
        self.fallback = fallback or PatternContextAnalyzer()
        self.context_analyzer = context_analyzer or ContextAnalyzer(self.fallback.extractor)
        self.stats = {"primary": 0, "fallback": 0, "primary_failures": 0}

    def select_strategy(self) -> ContextAnalysisStrategy:
        if self.primary is not None and getattr(self.primary, "is_available", True):
            return self.primary
        return self.fallback

    async def analyze_context(self, message: str, history: List[ConversationTurn],
                              state: Optional[ConversationState] = None,
                              rag_context: Optional[RAGContext] = None) -> ContextAnalysis:
        """
        Run the selected strategy, switching to the deterministic one on failure.

        Args:
            message: Current user message
            history: Recent turns, oldest first
            state: Active conversation state, if any
            rag_context: Retrieved knowledge for prompt grounding

        Returns:
            ContextAnalysis from whichever strategy produced it
        """
        clues = self.context_analyzer.gather(history, state)
        strategy = self.select_strategy()

        if strategy is not self.fallback:
            try:
                analysis = await strategy.analyze(message, clues, rag_context)
                self.stats["primary"] += 1
                return analysis
            except RateLimitExceededError as e:
                reason = "rate_limited"
                logger.info(f"Model tier skipped: {e}")
            except GeminiServiceError as e:
                reason = "model_error"
                logger.warning(f"Model tier failed, using pattern rules: {e}")
            self.stats["primary_failures"] += 1
        else:
            reason = "model_unavailable"

        analysis = self.fallback.analyze_sync(message, clues)
        analysis.metadata["fallback_reason"] = reason
        self.stats["fallback"] += 1
        return analysis

    async def classify(self, message: str, history: List[ConversationTurn],
                       state: Optional[ConversationState] = None,
                       rag_context: Optional[RAGContext] = None) -> IntentResult:
        analysis = await self.analyze_context(message, history, state, rag_context)
        return self.build_intent_result(analysis, state, message)

    def build_intent_result(self, analysis: ContextAnalysis, state: Optional[ConversationState],
                            message: str = "") -> IntentResult:
        has_flow = self._has_active_task_flow(analysis, state)
        intent_type = self.map_context_to_intent_type(analysis, has_flow)
        action = self.map_context_to_action(analysis, state, message)
        slots = self.collect_slots(analysis, action)
        needs_more = self.needs_more_info(action, slots, state, analysis)
        follow_up = self.follow_up_question(action, slots, state) if needs_more else None

        result = IntentResult(
            intent_type=intent_type,
            action=action,
            confidence=analysis.confidence,
            slots=slots,
            needs_more_info=needs_more,
            follow_up_question=follow_up,
            context_analysis=analysis,
        )
        logger.info(
            f"Classified as {intent_type.value}/{action.value} ({analysis.intent_type.value}, "
            f"confidence {analysis.confidence:.2f}, source {analysis.metadata.get('source')})"
        )
        return result

    @staticmethod
    def _has_active_task_flow(analysis: ContextAnalysis, state: Optional[ConversationState]) -> bool:
        if state is not None and state.flow_type in ContextAnalyzer.TASK_FLOW_TYPES:
            return True
        return analysis.is_task_flow and analysis.should_continue_flow

    def map_context_to_intent_type(self, analysis: ContextAnalysis, has_active_flow: bool) -> IntentType:
        intent = analysis.intent_type
        if intent in ACTION_FOR_START_INTENT or intent == ContextIntentType.CONFIRMATION:
            return IntentType.COMMAND
        if intent == ContextIntentType.FIELD_INPUT:
            return IntentType.COMMAND if has_active_flow else IntentType.QUERY
        if intent in (ContextIntentType.TASK_QUERY, ContextIntentType.CLARIFICATION):
            return IntentType.QUERY
        return IntentType.CHITCHAT

    def map_context_to_action(self, analysis: ContextAnalysis, state: Optional[ConversationState],
                              message: str = "") -> ActionKind:
        intent = analysis.intent_type
        if intent in ACTION_FOR_START_INTENT:
            return ACTION_FOR_START_INTENT[intent]
        if intent == ContextIntentType.TASK_QUERY:
            query = analysis.metadata.get("query")
            if query == "statistics" or (query is None and _STATISTICS_HINT.search(message)):
                return ActionKind.GET_STATISTICS
            return ActionKind.GET_TASKS
        if intent in (ContextIntentType.FIELD_INPUT, ContextIntentType.CONFIRMATION):
            if state is not None and state.flow_type in ContextAnalyzer.TASK_FLOW_TYPES:
                return ACTION_FOR_FLOW[state.flow_type]
            return ACTION_FOR_CONVERSATION_FLOW.get(analysis.current_flow, ActionKind.NONE)
        return ActionKind.NONE

    def collect_slots(self, analysis: ContextAnalysis, action: ActionKind) -> Dict[str, Any]:
        """Slots carried by this message alone"""
        slots: Dict[str, Any] = {}
        intent = analysis.intent_type
        metadata = analysis.metadata

        if intent == ContextIntentType.TASK_CREATION:
            title = analysis.extracted_value if analysis.field_mapping == "title" else None
            title = title or metadata.get("task_title")
            if title:
                slots["title"] = str(title)
            for key in ("priority", "deadline"):
                if key in metadata:
                    slots[key] = metadata[key]
        elif intent in (ContextIntentType.TASK_UPDATE, ContextIntentType.TASK_DELETION):
            for key in SLOT_SCHEMA[FLOW_FOR_ACTION[action]].prompted:
                if metadata.get(key) is not None:
                    slots[key] = metadata[key]
            if analysis.field_mapping == "task_id" and analysis.extracted_value is not None:
                slots["task_id"] = str(analysis.extracted_value)
        elif intent == ContextIntentType.FIELD_INPUT and analysis.field_mapping:
            slots[analysis.field_mapping] = analysis.extracted_value
        return slots

    def needs_more_info(self, action: ActionKind, slots: Dict[str, Any],
                        state: Optional[ConversationState], analysis: ContextAnalysis) -> bool:
        flow_type = FLOW_FOR_ACTION[action]
        schema = SLOT_SCHEMA.get(flow_type)
        if schema is None or not schema.prompted:
            return False
        merged = self._merged_slots(flow_type, slots, state)
        if analysis.intent_type == ContextIntentType.CONFIRMATION:
            return not ConversationStateStore.slots_satisfy(flow_type, merged)
        return any(slot not in merged for slot in schema.prompted)

    def follow_up_question(self, action: ActionKind, slots: Dict[str, Any],
                           state: Optional[ConversationState]) -> Optional[str]:
        flow_type = FLOW_FOR_ACTION[action]
        schema = SLOT_SCHEMA.get(flow_type)
        if schema is None:
            return None
        merged = self._merged_slots(flow_type, slots, state)
        missing = next((s for s in schema.prompted if s not in merged), None)
        return question_for(missing, flow_type) if missing else None

    @staticmethod
    def _merged_slots(flow_type, slots: Dict[str, Any], state: Optional[ConversationState]) -> Dict[str, Any]:
        merged: Dict[str, Any] = {}
        if state is not None and state.flow_type == flow_type:
            merged.update(state.collected_slots)
        merged.update({k: v for k, v in slots.items() if k != ADDITIONAL_INFO})
        return merged

"""
Main conversation processing pipeline.

This module sequences one turn through decline detection, escalation,
pending confirmations, context retrieval, intent classification and
dispatch to slot filling, confirmation or direct execution. Every call
returns a well-formed ProcessingResult, including during a complete
upstream outage.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Optional

from config import settings
from models.schemas import (
    ActionKind,
    ContextIntentType,
    FLOW_FOR_ACTION,
    IntentResult,
    IntentType,
    RAGContext,
    SlotFillingResult,
)
from core.conversation.context.memory import ConversationMemory
from core.conversation.handlers.base import HandlerRegistry, HandlerRequest, HandlerResponse
from core.conversation.handlers.conversation import ConversationHandler
from core.conversation.handlers.task_commands import (
    CreateTaskHandler,
    DeleteTaskHandler,
    TaskQueryHandler,
    UpdateTaskHandler,
)
from core.conversation.orchestration.confirmation import (
    ConfirmationController,
    ConfirmationDecision,
    ConfirmationOutcome,
)
from core.conversation.orchestration.slot_filling import SLOT_SCHEMA, SlotFillingEngine
from core.conversation.orchestration.state_store import ConversationState, ConversationStateStore, StoreConfig
from core.conversation.understanding.context_analyzer import ContextAnalyzer
from core.conversation.understanding.declining_detector import DecliningIntentDetector
from core.conversation.understanding.gemini_context_analyzer import GeminiContextAnalyzer
from core.conversation.understanding.intent_classifier import IntentClassifier
from core.conversation.understanding.slot_extractor import SlotExtractor
from core.services.audit_log import AuditLog, create_audit_log
from core.services.context_retriever import ContextRetriever
from core.services.embedding_service import create_embedding_provider
from core.services.escalation import EscalationService
from core.services.knowledge_cache import KnowledgeBase
from core.services.task_tools import ToolExecutor, create_tool_executor
from core.services.vector_index import create_vector_index

logger = logging.getLogger(__name__)

# Slots for which "no" is a valid answer rather than a refusal
NULLABLE_SLOTS = {"deadline"}

START_INTENTS = {ContextIntentType.TASK_CREATION, ContextIntentType.TASK_UPDATE, ContextIntentType.TASK_DELETION}

WAKE_ONLY_REPLY = "I'm listening! What would you like me to do with your tasks?"
CANCELLED_REPLY = "No problem, I've cancelled that and nothing was changed."


@dataclass
class ProcessingResult:
    """Result of pipeline processing"""
    success: bool
    response: str
    conversation_id: str
    intent: Optional[str] = None
    action: str = ActionKind.NONE.value
    confidence: float = 0.0
    needs_more_info: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
    processing_time_ms: float = 0.0
    error: Optional[str] = None


class ConversationOrchestrator:
    """
    Main conversation processing pipeline.

    This class coordinates all components to process user messages through:
    1. Short-term memory and decline detection
    2. Human escalation and pending confirmations
    3. Context retrieval and intent classification
    4. Slot filling, confirmation or direct execution
    5. Turn persistence to memory and the audit log
    """

    def __init__(self, state_store: Optional[ConversationStateStore] = None,
                 memory: Optional[ConversationMemory] = None,
                 retriever: Optional[ContextRetriever] = None,
                 classifier: Optional[IntentClassifier] = None,
                 tool_executor: Optional[ToolExecutor] = None,
                 audit_log: Optional[AuditLog] = None,
                 escalation: Optional[EscalationService] = None,
                 declining_detector: Optional[DecliningIntentDetector] = None,
                 knowledge_base: Optional[KnowledgeBase] = None,
                 conversation_handler: Optional[ConversationHandler] = None):
        self.state_store = state_store or ConversationStateStore()
        self.memory = memory or ConversationMemory()
        self.declining_detector = declining_detector or DecliningIntentDetector()
        self.escalation = escalation or EscalationService()
        self.state_store.add_companion_sweep(self.memory.sweep_idle)
        self.state_store.add_companion_sweep(self.escalation.sweep)
        self.audit_log = audit_log or create_audit_log()
        self.tool_executor = tool_executor or create_tool_executor()

        if retriever is None:
            embedding_provider = create_embedding_provider()
            vector_index = create_vector_index()
            knowledge_base = knowledge_base or KnowledgeBase(embedding_provider, vector_index)
            retriever = ContextRetriever(embedding_provider, vector_index, knowledge_base,
                                         self.memory, self.declining_detector)
        self.retriever = retriever
        self.knowledge_base = knowledge_base or retriever.knowledge_base

        extractor = SlotExtractor()
        self.classifier = classifier or IntentClassifier(primary=GeminiContextAnalyzer(extractor=extractor))
        self.slot_filling = SlotFillingEngine(self.state_store, extractor)
        self.confirmation = ConfirmationController(self.state_store)

        self.handler_registry = HandlerRegistry()
        self._register_handlers(conversation_handler or ConversationHandler())

        # Processing metrics
        self.metrics = {
            "total_processed": 0,
            "successful": 0,
            "failed": 0,
            "declined": 0,
            "escalated": 0,
            "executed": 0,
            "avg_processing_time": 0.0,
        }

    def _register_handlers(self, conversation_handler: ConversationHandler):
        """Register one handler per action and check none is missing"""
        self.handler_registry.register(CreateTaskHandler(self.tool_executor))
        self.handler_registry.register(UpdateTaskHandler(self.tool_executor))
        self.handler_registry.register(DeleteTaskHandler(self.tool_executor))
        self.handler_registry.register(TaskQueryHandler(self.tool_executor))
        self.handler_registry.register(conversation_handler)
        self.handler_registry.validate()

    async def process_message(self, message: str, conversation_id: str,
                              user_id: Optional[str] = None) -> ProcessingResult:
        """
        Process a user message through the conversation pipeline.

        Args:
            message: User's message
            conversation_id: Conversation identifier
            user_id: Optional user identifier

        Returns:
            Processing result with response and metadata
        """
        start_time = time.time()
        previous_assistant = self.memory.last_assistant_turn(conversation_id)
        self.memory.add_turn(conversation_id, "user", message)

        try:
            result = await self._process(
                message, conversation_id, user_id,
                previous_assistant.content if previous_assistant else None,
            )
        except Exception as e:
            logger.error(f"Error processing message in {conversation_id}: {str(e)}", exc_info=True)
            result = ProcessingResult(
                success=False,
                response=self.escalation.handle_upstream_error(e, conversation_id),
                conversation_id=conversation_id,
                metadata={"error": True, "error_type": self.escalation.classify_error(e)},
                error=str(e),
            )

        result.processing_time_ms = (time.time() - start_time) * 1000
        self._update_metrics(result)
        self._record_turn(conversation_id, user_id, message, result)

        logger.info(
            f"Processed message in {conversation_id}: {result.intent}/{result.action}",
            extra={
                "conversation_id": conversation_id,
                "intent": result.intent,
                "confidence": result.confidence,
                "processing_time_ms": result.processing_time_ms,
            }
        )
        return result

    async def _process(self, message: str, conversation_id: str, user_id: Optional[str],
                       previous_assistant: Optional[str]) -> ProcessingResult:
        state = self.state_store.get(conversation_id)

        wake_phrase_used, text = self.confirmation.strip_wake_phrase(message)
        if wake_phrase_used and not text:
            return self._reply(conversation_id, WAKE_ONLY_REPLY, metadata={"wake_phrase": True})

        decline = self.declining_detector.detect(
            text,
            previous_assistant_text=previous_assistant,
            flow_pending=state is not None,
            bare_negative_declines=not (state is not None and state.waiting_for in NULLABLE_SLOTS),
        )
        if decline.is_declining:
            self.state_store.clear(conversation_id)
            self.metrics["declined"] += 1
            logger.info(f"Decline ({decline.decline_type}) in {conversation_id}, flow cleared")
            return self._reply(
                conversation_id,
                self.declining_detector.build_response(decline),
                intent="DECLINING",
                confidence=decline.confidence,
                metadata={"declined": True, "decline_type": decline.decline_type},
            )

        if self.escalation.is_human_request(text):
            self.metrics["escalated"] += 1
            response = self.escalation.escalate_to_human(conversation_id, "user_request", message)
            return self._reply(conversation_id, response, metadata={"escalated": True, "reason": "user_request"})

        if self.confirmation.is_pending(conversation_id):
            decision = self.confirmation.handle_reply(conversation_id, text)
            return await self._apply_confirmation(decision, text, conversation_id, user_id)

        rag_context = await self.retriever.retrieve_context(text, conversation_id, user_id)
        history = self.memory.get_recent(conversation_id, settings.HISTORY_TURNS)
        intent = await self.classifier.classify(text, history, state, rag_context)

        in_flow = state is not None and state.flow_type in ContextAnalyzer.TASK_FLOW_TYPES
        if not in_flow:
            capability_action = self.confirmation.capability_action(text)
            action = capability_action or intent.action
            if self.confirmation.needs_confirmation(action, self._gate_confidence(intent), text, wake_phrase_used):
                question = self.confirmation.begin(conversation_id, action, text, intent.slots)
                return self._reply(
                    conversation_id, question,
                    intent=intent.intent_type.value, action=action.value,
                    confidence=intent.confidence, needs_more_info=True,
                    metadata=self._intent_metadata(intent, rag_context, confirmation_step=1),
                )

        if intent.intent_type == IntentType.COMMAND:
            return await self._handle_command(text, conversation_id, user_id, intent,
                                              rag_context, state, wake_phrase_used)
        return await self._handle_conversational(text, conversation_id, user_id, intent, rag_context, in_flow)

    async def _handle_command(self, text: str, conversation_id: str, user_id: Optional[str],
                              intent: IntentResult, rag_context: RAGContext,
                              state: Optional[ConversationState], wake_phrase_used: bool) -> ProcessingResult:
        """COMMAND: continue or start slot filling, or execute directly"""
        if intent.action == ActionKind.NONE:
            in_flow = state is not None and state.flow_type in ContextAnalyzer.TASK_FLOW_TYPES
            return await self._handle_conversational(text, conversation_id, user_id, intent, rag_context, in_flow)

        analysis = intent.context_analysis
        starts_new = analysis is not None and analysis.intent_type in START_INTENTS
        in_flow = state is not None and state.flow_type in ContextAnalyzer.TASK_FLOW_TYPES

        if in_flow and not starts_new:
            filling = self.slot_filling.continue_slot_filling(conversation_id, text, intent)
        elif intent.needs_more_info:
            if wake_phrase_used:
                # An explicit trigger only waits for the slots the action cannot run without
                schema = SLOT_SCHEMA[FLOW_FOR_ACTION[intent.action]]
                intent = intent.model_copy(update={"slots": {**schema.defaults, **intent.slots}})
            filling = self.slot_filling.start_slot_filling(intent, conversation_id)
        else:
            return await self._execute(intent.action, intent.slots, text, conversation_id, user_id,
                                       intent, rag_context)

        return await self._apply_slot_filling(filling, text, conversation_id, user_id, intent, rag_context)

    async def _apply_slot_filling(self, filling: SlotFillingResult, text: str, conversation_id: str,
                                  user_id: Optional[str], intent: IntentResult,
                                  rag_context: Optional[RAGContext]) -> ProcessingResult:
        if filling.escalate:
            self.metrics["escalated"] += 1
            reason = f"could not understand '{filling.waiting_for}' after {self.slot_filling.max_attempts} attempts"
            response = self.escalation.escalate_to_human(conversation_id, reason, text)
            return self._reply(
                conversation_id, response,
                intent=intent.intent_type.value, action=filling.action.value,
                confidence=intent.confidence, needs_more_info=True,
                metadata={**self._intent_metadata(intent, rag_context), "escalated": True, "reason": reason},
            )

        if filling.is_complete:
            return await self._execute(filling.action, filling.current_slots, text, conversation_id,
                                       user_id, intent, rag_context)

        return self._reply(
            conversation_id, filling.next_question,
            intent=intent.intent_type.value, action=filling.action.value,
            confidence=intent.confidence, needs_more_info=True,
            metadata={
                **self._intent_metadata(intent, rag_context),
                "waiting_for": filling.waiting_for,
                "collected_slots": filling.current_slots,
            },
        )

    async def _apply_confirmation(self, decision: ConfirmationDecision, text: str,
                                  conversation_id: str, user_id: Optional[str]) -> ProcessingResult:
        outcome = decision.outcome
        metadata = {"confirmation_outcome": outcome.value}

        if outcome == ConfirmationOutcome.EXECUTE:
            intent = IntentResult(intent_type=IntentType.COMMAND, action=decision.action,
                                  confidence=1.0, slots=decision.slots)
            return await self._execute(decision.action, decision.slots, text, conversation_id, user_id, intent)

        if outcome == ConfirmationOutcome.SLOT_FILL:
            intent = IntentResult(intent_type=IntentType.COMMAND, action=decision.action,
                                  confidence=1.0, slots=decision.slots, needs_more_info=True)
            filling = self.slot_filling.start_slot_filling(intent, conversation_id)
            return await self._apply_slot_filling(filling, text, conversation_id, user_id, intent, None)

        if outcome == ConfirmationOutcome.CANCEL:
            return self._reply(conversation_id, CANCELLED_REPLY, intent="DECLINING",
                               action=decision.action.value, metadata=metadata)

        intent_type = IntentType.QUERY if outcome == ConfirmationOutcome.EXPLAIN else IntentType.COMMAND
        return self._reply(
            conversation_id, decision.response,
            intent=intent_type.value, action=decision.action.value,
            needs_more_info=outcome == ConfirmationOutcome.ASK,
            metadata=metadata,
        )

    async def _handle_conversational(self, text: str, conversation_id: str, user_id: Optional[str],
                                     intent: IntentResult, rag_context: RAGContext,
                                     in_flow: bool) -> ProcessingResult:
        """QUERY and CHITCHAT: direct lookups or a conversational reply; an active flow is left intact"""
        pending_question = self.slot_filling.current_question(conversation_id) if in_flow else None
        action = intent.action if intent.action in (ActionKind.GET_TASKS, ActionKind.GET_STATISTICS) \
            else ActionKind.NONE

        request = HandlerRequest(
            conversation_id=conversation_id,
            message=text,
            action=action,
            slots=intent.slots,
            user_id=user_id,
            intent_result=intent,
            rag_context=rag_context,
            pending_question=pending_question,
        )
        response = await self.handler_registry.get_handler(action).handle(request)

        metadata = {**self._intent_metadata(intent, rag_context), **response.metadata}
        state = self.state_store.get(conversation_id)
        if in_flow and state is not None:
            metadata["should_continue_flow"] = True
            metadata["waiting_for"] = state.waiting_for
        return self._reply(
            conversation_id, response.message,
            intent=intent.intent_type.value, action=action.value,
            confidence=intent.confidence, success=response.success,
            metadata=metadata,
        )

    async def _execute(self, action: ActionKind, slots: Dict[str, Any], text: str, conversation_id: str,
                       user_id: Optional[str], intent: IntentResult,
                       rag_context: Optional[RAGContext] = None) -> ProcessingResult:
        """Run the handler for a fully specified action"""
        request = HandlerRequest(
            conversation_id=conversation_id,
            message=text,
            action=action,
            slots=dict(slots),
            user_id=user_id,
            intent_result=intent,
            rag_context=rag_context,
        )
        response: HandlerResponse = await self.handler_registry.get_handler(action).handle(request)
        if response.success:
            self.metrics["executed"] += 1
        return self._reply(
            conversation_id, response.message,
            intent=intent.intent_type.value, action=action.value,
            confidence=intent.confidence, success=response.success,
            metadata={
                **self._intent_metadata(intent, rag_context),
                **response.metadata,
                "executed": response.success,
                "slots": dict(slots),
            },
            error=response.error,
        )

    @staticmethod
    def _gate_confidence(intent: IntentResult) -> float:
        """Model's own confidence when it classified the turn; the reported value is floored"""
        analysis = intent.context_analysis
        if analysis is not None and "model_confidence" in analysis.metadata:
            return analysis.metadata["model_confidence"]
        return intent.confidence

    @staticmethod
    def _intent_metadata(intent: IntentResult, rag_context: Optional[RAGContext],
                         **extra: Any) -> Dict[str, Any]:
        metadata: Dict[str, Any] = dict(extra)
        analysis = intent.context_analysis
        if analysis is not None:
            metadata.update({
                "context_intent": analysis.intent_type.value,
                "current_flow": analysis.current_flow.value,
                "should_continue_flow": analysis.should_continue_flow,
                "next_expected_input": analysis.next_expected_input,
                "analysis_source": analysis.metadata.get("source"),
            })
            if "fallback_reason" in analysis.metadata:
                metadata["fallback_reason"] = analysis.metadata["fallback_reason"]
        if rag_context is not None:
            metadata["context_quality"] = rag_context.context_quality
            metadata["documents_retrieved"] = len(rag_context.relevant_documents)
        return metadata

    @staticmethod
    def _reply(conversation_id: str, response: str, intent: Optional[str] = IntentType.CHITCHAT.value,
               action: str = ActionKind.NONE.value, confidence: float = 1.0,
               needs_more_info: bool = False, success: bool = True,
               metadata: Optional[Dict[str, Any]] = None, error: Optional[str] = None) -> ProcessingResult:
        return ProcessingResult(
            success=success,
            response=response,
            conversation_id=conversation_id,
            intent=intent,
            action=action,
            confidence=confidence,
            needs_more_info=needs_more_info,
            metadata=metadata or {},
            error=error,
        )

    def _record_turn(self, conversation_id: str, user_id: Optional[str], message: str,
                     result: ProcessingResult):
        """Persist the assistant reply to memory and the audit log"""
        self.memory.add_turn(conversation_id, "assistant", result.response, intent=result.intent)
        self.audit_log.record_turn(
            conversation_id, user_id, message, result.response,
            {"intent": result.intent, "action": result.action, "success": result.success},
        )

    def _update_metrics(self, result: ProcessingResult):
        """Update processing metrics"""
        self.metrics["total_processed"] += 1
        if result.success:
            self.metrics["successful"] += 1
        else:
            self.metrics["failed"] += 1

        total = self.metrics["total_processed"]
        current_avg = self.metrics["avg_processing_time"]
        self.metrics["avg_processing_time"] = (current_avg * (total - 1) + result.processing_time_ms) / total

    def get_metrics(self) -> Dict[str, Any]:
        """Get processing metrics"""
        return {
            **self.metrics,
            "active_flows": self.state_store.active_count(),
            "classifier": dict(self.classifier.stats),
        }

    def clear_conversation(self, conversation_id: str) -> bool:
        """Drop the active flow of a conversation; its turn history is kept"""
        return self.state_store.clear(conversation_id)


def create_orchestrator() -> ConversationOrchestrator:
    """Build an orchestrator wired from settings"""
    store = ConversationStateStore(StoreConfig(
        max_idle=timedelta(minutes=settings.STATE_MAX_IDLE_MINUTES),
        sweep_interval=timedelta(minutes=settings.STATE_SWEEP_INTERVAL_MINUTES),
    ))
    return ConversationOrchestrator(state_store=store)

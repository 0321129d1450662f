"""
Slot-filling engine.

Drives the multi-turn collection of action parameters. A `waiting_for`
pointer on the conversation state names the slot the last question asked
for; each reply is run through that slot's extractor, stored, and the next
missing slot is asked for until the action can execute.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from config import settings
from models.schemas import ACTION_FOR_FLOW, ActionKind, ContextIntentType, FLOW_FOR_ACTION, FlowType, IntentResult, SlotFillingResult
from core.conversation.orchestration.state_store import ConversationState, ConversationStateStore
from core.conversation.understanding.slot_extractor import SlotExtractor

logger = logging.getLogger(__name__)

ADDITIONAL_INFO = "additional_info"


@dataclass
class SlotSchema:
    """Slots an action needs. `prompted` is the ask order; `defaults` covers optional slots."""
    required: List[str]
    prompted: List[str]
    defaults: Dict[str, Any] = field(default_factory=dict)


SLOT_SCHEMA: Dict[FlowType, SlotSchema] = {
    FlowType.CREATE_TASK: SlotSchema(
        required=["title"],
        prompted=["title", "priority", "deadline"],
        defaults={"priority": "MEDIUM", "deadline": None},
    ),
    FlowType.UPDATE_TASK: SlotSchema(required=["task_id", "field", "value"], prompted=["task_id", "field", "value"]),
    FlowType.DELETE_TASK: SlotSchema(required=["task_id"], prompted=["task_id"]),
    FlowType.LIST_TASKS: SlotSchema(required=[], prompted=[]),
}

QUESTION_TEMPLATES = {
    "title": "What should I name this task?",
    "priority": "What priority should this task have? Options: HIGH (cao), MEDIUM (trung bình), LOW (thấp)",
    "deadline": "When should this task be completed? Examples: tomorrow, next week, 2025-10-01, no deadline",
    "field": "What would you like to update? title/description/priority/deadline/status",
    "value": "What should be the new value?",
}

TASK_ID_QUESTIONS = {
    FlowType.UPDATE_TASK: "Which task would you like to update? Provide the task ID or name",
    FlowType.DELETE_TASK: "Which task would you like to delete? Provide the task ID or name",
}


def question_for(slot: str, flow_type: Optional[FlowType] = None) -> str:
    """Question text asking for a slot"""
    if slot == "task_id":
        return TASK_ID_QUESTIONS.get(flow_type, "Which task do you mean? Provide the task ID or name")
    return QUESTION_TEMPLATES.get(slot, f"Could you tell me the {slot.replace('_', ' ')}?")


class SlotFillingEngine:
    """
    Per-conversation slot-filling state machine.

    Slots supplied by the classifier take precedence over what the raw-text
    extractor finds, and a slot whose key is already present is never
    asked for again in the same flow.
    """

    def __init__(self, state_store: ConversationStateStore,
                 extractor: Optional[SlotExtractor] = None,
                 max_attempts: Optional[int] = None):
        self.state_store = state_store
        self.extractor = extractor or SlotExtractor()
        self.max_attempts = max_attempts or settings.MAX_SLOT_ATTEMPTS

    def start_slot_filling(self, intent_result: IntentResult, conversation_id: str) -> SlotFillingResult:
        """
        Begin collecting slots for a new command.

        Any previous flow in this conversation is replaced.

        Args:
            intent_result: Classification carrying the target action and known slots
            conversation_id: Conversation to attach the flow to

        Returns:
            SlotFillingResult with the first question, or complete when nothing is missing
        """
        flow_type = FLOW_FOR_ACTION[intent_result.action]
        self.state_store.clear(conversation_id)
        self.state_store.create_or_update(conversation_id, flow_type, "COLLECTING")
        self._merge_slots(conversation_id, flow_type, intent_result.slots)
        logger.info(f"Started slot filling for {intent_result.action.value} in {conversation_id}")
        return self._advance(conversation_id, intent_result.action, confirmed=False)

    def continue_slot_filling(self, conversation_id: str, user_message: str,
                              intent_result: IntentResult) -> SlotFillingResult:
        """
        Apply a reply to the active flow and decide what comes next.

        Args:
            conversation_id: Conversation with an active flow
            user_message: Raw reply
            intent_result: Classification of the reply

        Returns:
            SlotFillingResult; complete when the action can execute
        """
        state = self.state_store.get(conversation_id)
        if state is None or state.flow_type not in SLOT_SCHEMA:
            logger.warning(f"No active slot-filling flow for {conversation_id}, starting one")
            return self.start_slot_filling(intent_result, conversation_id)

        action = ACTION_FOR_FLOW[state.flow_type]
        slots = dict(intent_result.slots)
        note = slots.pop(ADDITIONAL_INFO, None)
        self._merge_slots(conversation_id, state.flow_type, slots)

        confirmed = intent_result.context_analysis is not None and \
            intent_result.context_analysis.intent_type == ContextIntentType.CONFIRMATION

        awaited = state.waiting_for
        reprompt = False
        escalate = False
        answering = bool(awaited) and not state.has_slot(awaited)
        if answering and not confirmed:
            found, value = self._extract_awaited(state, awaited, user_message)
            if found:
                self.state_store.update_slot(conversation_id, awaited, value)
            else:
                reprompt, escalate = self._record_failed_attempt(state, awaited)
        if note and not answering:
            # Text that fails the open question is an attempt, never a note
            self._append_description(conversation_id, note)

        result = self._advance(conversation_id, action, confirmed=confirmed, reprompt=reprompt)
        result.escalate = escalate
        return result

    def current_question(self, conversation_id: str) -> Optional[str]:
        """The question the flow is currently waiting on, for re-asking after an interruption"""
        state = self.state_store.get(conversation_id)
        if state is None or not state.waiting_for:
            return None
        return question_for(state.waiting_for, state.flow_type)

    def _merge_slots(self, conversation_id: str, flow_type: FlowType, slots: Dict[str, Any]) -> None:
        schema = SLOT_SCHEMA[flow_type]
        for key, value in slots.items():
            if key == ADDITIONAL_INFO:
                self._append_description(conversation_id, value)
            elif key in schema.prompted or key == "description":
                if key in schema.required and (value is None or (isinstance(value, str) and not value.strip())):
                    continue
                self.state_store.update_slot(conversation_id, key, value)

    def _append_description(self, conversation_id: str, note: Any) -> None:
        if not note:
            return
        current = self.state_store.get_slot(conversation_id, "description")
        text = f"{current}\n{note}" if current else str(note)
        self.state_store.update_slot(conversation_id, "description", text)

    def _extract_awaited(self, state: ConversationState, slot: str, message: str) -> Tuple[bool, Any]:
        if slot == "value" and state.collected_slots.get("field"):
            extraction = self.extractor.normalize_field_value(state.collected_slots["field"], message)
        elif self.extractor.has_extractor(slot):
            extraction = self.extractor.extract(slot, message)
        else:
            logger.warning(f"No extractor for awaited slot '{slot}' in {state.conversation_id}, re-asking")
            return False, None
        if not extraction.found:
            return False, None
        # None answers an optional slot ("no deadline") but never a required one
        if extraction.value is None and slot in SLOT_SCHEMA[state.flow_type].required:
            return False, None
        return True, extraction.value

    def _record_failed_attempt(self, state: ConversationState, slot: str):
        """Count a failed extraction. Returns (reprompt, escalate)."""
        attempts = dict(state.metadata.get("attempts", {}))
        attempts[slot] = attempts.get(slot, 0) + 1
        self.state_store.update_metadata(state.conversation_id, attempts=attempts)
        if attempts[slot] < self.max_attempts:
            return True, False

        schema = SLOT_SCHEMA[state.flow_type]
        if slot in schema.defaults:
            logger.info(f"Using default for '{slot}' after {attempts[slot]} attempts in {state.conversation_id}")
            self.state_store.update_slot(state.conversation_id, slot, schema.defaults[slot])
            return False, False
        logger.warning(f"Could not fill required slot '{slot}' after {attempts[slot]} attempts")
        return True, True

    def _advance(self, conversation_id: str, action: ActionKind, confirmed: bool,
                 reprompt: bool = False) -> SlotFillingResult:
        state = self.state_store.get(conversation_id)
        schema = SLOT_SCHEMA[state.flow_type]
        required_met = ConversationStateStore.slots_satisfy(state.flow_type, state.collected_slots)
        missing = next((s for s in schema.prompted if not state.has_slot(s)), None)

        if required_met and (confirmed or missing is None):
            slots = dict(state.collected_slots)
            self.state_store.clear(conversation_id)
            logger.info(f"Slot filling complete for {action.value} in {conversation_id}")
            return SlotFillingResult(is_complete=True, current_slots=slots, action=action)

        if missing is None:
            # Every prompted slot is present but a required one is blank
            missing = next(s for s in schema.required if not state.collected_slots.get(s))

        previous = state.waiting_for
        self.state_store.set_waiting_for(conversation_id, missing)
        self.state_store.create_or_update(conversation_id, state.flow_type, f"COLLECTING_{missing.upper()}")

        question = question_for(missing, state.flow_type)
        if reprompt and missing == previous:
            question = f"Sorry, I didn't catch that. {question}"
        return SlotFillingResult(
            is_complete=False,
            next_question=question,
            current_slots=dict(state.collected_slots),
            action=action,
            waiting_for=missing,
        )

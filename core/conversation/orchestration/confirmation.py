"""
Two-step confirmation for ambiguous commands.

A command that arrives without a wake phrase and either reads as a
capability question ("can you create a task?") or was classified with low
confidence is not executed straight away. STEP_1 asks whether the user is
just asking or wants the action performed; STEP_2 shows what will be done
and waits for an explicit confirmation.
"""

import re
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from config import settings
from models.schemas import ActionKind, FLOW_FOR_ACTION
from core.conversation.orchestration.state_store import ConversationStateStore

logger = logging.getLogger(__name__)

CONFIRMATION_STEP_1 = "CONFIRMATION_STEP_1"
CONFIRMATION_STEP_2 = "CONFIRMATION_STEP_2"

LOW_CONFIDENCE_THRESHOLD = 0.6

STEP_1_MESSAGE = (
    "Step 1/2: Are you asking about my capabilities, or do you want me to perform this action? "
    "Reply 'just asking' or 'perform action'"
)
STEP_1_REASK = (
    "Sorry, I need a clear answer before doing anything. "
    "Reply 'just asking' if you only wanted to know what I can do, "
    "'perform action' if you want me to do it now, or 'cancel'."
)

CAPABILITY_EXPLANATIONS = {
    ActionKind.CREATE_TASK: (
        "Yes, I can create tasks. Tell me the title, and optionally a priority (HIGH, MEDIUM, LOW) "
        "and a deadline, e.g. 'create task write report, high priority, due tomorrow'."
    ),
    ActionKind.UPDATE_TASK: (
        "Yes, I can update a task's title, description, priority, deadline or status, "
        "e.g. 'update task 3 priority to HIGH'."
    ),
    ActionKind.DELETE_TASK: "Yes, I can delete tasks by ID or name, e.g. 'delete task 3'.",
    ActionKind.GET_TASKS: "Yes, I can list your tasks, filtered by status or priority, e.g. 'show my tasks'.",
    ActionKind.GET_STATISTICS: "Yes, I can summarize your tasks by status and priority, e.g. 'task statistics'.",
}

CAPABILITY_QUESTION = re.compile(
    r"^(?:can|could|would) you\b|^are you able to\b|^is it possible to\b|^do you (?:know how to|support)\b|"
    r"^bạn có thể\b|^có thể\b",
    re.IGNORECASE,
)

CAPABILITY_ACTIONS: List[Tuple[re.Pattern, ActionKind]] = [
    (re.compile(r"\b(?:create|add|make|tạo|thêm)\b", re.IGNORECASE), ActionKind.CREATE_TASK),
    (re.compile(r"\b(?:update|edit|change|modify|sửa|cập nhật)\b", re.IGNORECASE), ActionKind.UPDATE_TASK),
    (re.compile(r"\b(?:delete|remove|xóa|xoá)\b", re.IGNORECASE), ActionKind.DELETE_TASK),
    (re.compile(r"\b(?:statistic\w*|stats|thống kê)\b", re.IGNORECASE), ActionKind.GET_STATISTICS),
    (re.compile(r"\b(?:list|show|see|view|xem)\b", re.IGNORECASE), ActionKind.GET_TASKS),
]

_TASK_WORD = re.compile(r"\b(?:tasks?|todos?|to-dos?|công việc|task)\b", re.IGNORECASE)

JUST_ASKING = re.compile(
    r"^(?:just|only)?\s*(?:asking|curious|wondering)\b|^just asking|^no,? just (?:asking|curious)|"
    r"^chỉ hỏi|^hỏi thôi",
    re.IGNORECASE,
)
PERFORM = re.compile(
    r"^(?:please )?(?:perform(?: (?:the |this )?action)?|do it|go ahead|execute|yes|yeah|yep|ok(?:ay)?|sure|"
    r"thực hiện|làm đi|có)\b",
    re.IGNORECASE,
)
CONFIRM = re.compile(
    r"^(?:confirm(?: (?:create|update|delete|it))?|yes|yep|ok(?:ay)?|go ahead|do it|xác nhận|đồng ý)\b",
    re.IGNORECASE,
)
CANCEL = re.compile(r"^(?:cancel|stop|abort|never ?mind|hủy|huỷ|thôi)\b", re.IGNORECASE)
CHANGE_TITLE = re.compile(r"^(?:change|rename)(?: the)? title(?: to)?\s+(.+)$|^đổi tên(?: thành)?\s+(.+)$",
                          re.IGNORECASE)


class ConfirmationOutcome(str, Enum):
    ASK = "ask"
    EXPLAIN = "explain"
    EXECUTE = "execute"
    SLOT_FILL = "slot_fill"
    CANCEL = "cancel"


@dataclass
class ConfirmationDecision:
    """What the orchestrator should do with a reply to a pending confirmation"""
    outcome: ConfirmationOutcome
    action: ActionKind = ActionKind.NONE
    response: Optional[str] = None
    slots: Dict[str, Any] = field(default_factory=dict)


class ConfirmationController:
    """
    Guards ambiguous commands behind an explicit two-step confirmation.

    Pending confirmations live in the conversation state store under the
    CONFIRMATION_STEP_* steps, so they expire with the rest of the state.
    """

    def __init__(self, state_store: ConversationStateStore,
                 wake_phrases: Optional[List[str]] = None,
                 confidence_threshold: float = LOW_CONFIDENCE_THRESHOLD):
        self.state_store = state_store
        phrases = wake_phrases if wake_phrases is not None else settings.wake_phrases
        # Longest first so "Hey TaskFlow" wins over "TaskFlow"
        self.wake_phrases = sorted((p.strip() for p in phrases if p.strip()), key=len, reverse=True)
        self.confidence_threshold = confidence_threshold

    def strip_wake_phrase(self, message: str) -> Tuple[bool, str]:
        """
        Detect and remove a leading wake phrase.

        Returns:
            (found, message without the phrase and its trailing punctuation)
        """
        text = message.strip()
        lowered = text.lower()
        for phrase in self.wake_phrases:
            if lowered.startswith(phrase.lower()):
                rest = text[len(phrase):]
                if rest and rest[0].isalnum():
                    continue
                return True, rest.lstrip(" ,:;!-").strip()
        return False, text

    def capability_action(self, message: str) -> Optional[ActionKind]:
        """Action a capability-style question is about, e.g. 'can you create a task?'"""
        text = message.strip()
        if not CAPABILITY_QUESTION.search(text) or not _TASK_WORD.search(text):
            return None
        for pattern, action in CAPABILITY_ACTIONS:
            if pattern.search(text):
                return action
        return None

    def needs_confirmation(self, action: ActionKind, confidence: float, message: str,
                           wake_phrase_used: bool) -> bool:
        if wake_phrase_used or action == ActionKind.NONE:
            return False
        if self.capability_action(message) is not None:
            return True
        return confidence < self.confidence_threshold

    def is_pending(self, conversation_id: str) -> bool:
        state = self.state_store.get(conversation_id)
        return state is not None and state.current_step in (CONFIRMATION_STEP_1, CONFIRMATION_STEP_2)

    def begin(self, conversation_id: str, action: ActionKind, original_message: str,
              slots: Optional[Dict[str, Any]] = None) -> str:
        """Open STEP_1 for an action and return the question to send"""
        self.state_store.clear(conversation_id)
        self.state_store.create_or_update(conversation_id, FLOW_FOR_ACTION[action], CONFIRMATION_STEP_1)
        self.state_store.update_metadata(
            conversation_id,
            pending_action=action.value,
            original_message=original_message,
            slots=dict(slots or {}),
        )
        logger.info(f"Confirmation STEP_1 opened for {action.value} in {conversation_id}")
        return STEP_1_MESSAGE

    def handle_reply(self, conversation_id: str, message: str) -> ConfirmationDecision:
        """
        Advance a pending confirmation with the user's reply.

        Args:
            conversation_id: Conversation with a pending confirmation
            message: Raw reply

        Returns:
            ConfirmationDecision for the orchestrator to act on
        """
        state = self.state_store.get(conversation_id)
        if state is None:
            return ConfirmationDecision(outcome=ConfirmationOutcome.CANCEL)

        action = ActionKind(state.metadata.get("pending_action", ActionKind.NONE.value))
        slots = dict(state.metadata.get("slots", {}))
        text = message.strip()

        if CANCEL.match(text):
            self.state_store.clear(conversation_id)
            return ConfirmationDecision(outcome=ConfirmationOutcome.CANCEL, action=action)

        if state.current_step == CONFIRMATION_STEP_1:
            return self._handle_step_1(conversation_id, action, slots, text)
        return self._handle_step_2(conversation_id, action, slots, text)

    def _handle_step_1(self, conversation_id: str, action: ActionKind,
                       slots: Dict[str, Any], text: str) -> ConfirmationDecision:
        if JUST_ASKING.match(text):
            self.state_store.clear(conversation_id)
            return ConfirmationDecision(
                outcome=ConfirmationOutcome.EXPLAIN,
                action=action,
                response=CAPABILITY_EXPLANATIONS.get(action, "I can create, update, delete and list tasks."),
            )

        if not PERFORM.match(text):
            return ConfirmationDecision(outcome=ConfirmationOutcome.ASK, action=action, response=STEP_1_REASK)

        if action in (ActionKind.GET_TASKS, ActionKind.GET_STATISTICS):
            self.state_store.clear(conversation_id)
            return ConfirmationDecision(outcome=ConfirmationOutcome.EXECUTE, action=action, slots=slots)

        if not ConversationStateStore.slots_satisfy(FLOW_FOR_ACTION[action], slots):
            # The missing parameter is collected by slot filling
            self.state_store.clear(conversation_id)
            return ConfirmationDecision(outcome=ConfirmationOutcome.SLOT_FILL, action=action, slots=slots)

        self.state_store.create_or_update(conversation_id, FLOW_FOR_ACTION[action], CONFIRMATION_STEP_2)
        return ConfirmationDecision(
            outcome=ConfirmationOutcome.ASK,
            action=action,
            response=self.summarize(action, slots),
            slots=slots,
        )

    def _handle_step_2(self, conversation_id: str, action: ActionKind,
                       slots: Dict[str, Any], text: str) -> ConfirmationDecision:
        rename = CHANGE_TITLE.match(text)
        if rename and action == ActionKind.CREATE_TASK:
            slots["title"] = (rename.group(1) or rename.group(2)).strip()
            self.state_store.update_metadata(conversation_id, slots=slots)
            return ConfirmationDecision(outcome=ConfirmationOutcome.ASK, action=action,
                                        response=self.summarize(action, slots), slots=slots)

        if CONFIRM.match(text):
            self.state_store.clear(conversation_id)
            logger.info(f"Confirmed {action.value} in {conversation_id}")
            return ConfirmationDecision(outcome=ConfirmationOutcome.EXECUTE, action=action, slots=slots)

        return ConfirmationDecision(outcome=ConfirmationOutcome.ASK, action=action,
                                    response=self.summarize(action, slots), slots=slots)

    def summarize(self, action: ActionKind, slots: Dict[str, Any]) -> str:
        """STEP_2 text describing exactly what will happen"""
        if action == ActionKind.CREATE_TASK:
            deadline = slots.get("deadline") or "no deadline"
            return (
                "Step 2/2: I'll create this task:\n"
                f"- Title: {slots.get('title')}\n"
                f"- Priority: {slots.get('priority') or 'MEDIUM'}\n"
                f"- Deadline: {deadline}\n"
                "Reply 'confirm create' to proceed, 'change title <new title>' to rename it, or 'cancel'."
            )
        if action == ActionKind.UPDATE_TASK:
            return (
                f"Step 2/2: I'll update task {slots.get('task_id')}: set {slots.get('field')} "
                f"to {slots.get('value')}. Reply 'confirm update' to proceed or 'cancel'."
            )
        return (
            f"Step 2/2: I'll delete task {slots.get('task_id')}. "
            "Reply 'confirm delete' to proceed or 'cancel'."
        )

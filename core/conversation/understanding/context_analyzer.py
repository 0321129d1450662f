"""
Context clues for message understanding.

Collects what both analyzers need to know about the surroundings of a
message: the active flow and awaited slot (from the state store, which is
authoritative) and values recoverable from earlier turns (evidence only).
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from models.schemas import (
    CONVERSATION_FLOW_FOR_FLOW,
    ContextAnalysis,
    ConversationFlow,
    ConversationTurn,
    FlowType,
    RAGContext,
)
from core.conversation.orchestration.state_store import ConversationState
from core.conversation.understanding.slot_extractor import CREATION_TRIGGER, SlotExtractor

logger = logging.getLogger(__name__)


@dataclass
class FlowClues:
    """What is known about the conversation around the current message"""
    active_flow: Optional[ConversationFlow] = None
    flow_type: Optional[FlowType] = None
    waiting_for: Optional[str] = None
    filled_slots: Dict[str, Any] = field(default_factory=dict)
    history_values: Dict[str, Any] = field(default_factory=dict)
    relevant_history: List[ConversationTurn] = field(default_factory=list)

    @property
    def has_active_flow(self) -> bool:
        return self.active_flow is not None

    @property
    def filled_count(self) -> int:
        return len(self.filled_slots)


class ContextAnalyzer:
    """
    Derives FlowClues from the conversation state and recent turns.

    Only task flows (create, update, delete) count as active. A list flow
    exists briefly during confirmation and never collects fields.
    """

    TASK_FLOW_TYPES = {FlowType.CREATE_TASK, FlowType.UPDATE_TASK, FlowType.DELETE_TASK}

    def __init__(self, extractor: Optional[SlotExtractor] = None):
        self.extractor = extractor or SlotExtractor()

    def gather(self, history: List[ConversationTurn],
               state: Optional[ConversationState] = None) -> FlowClues:
        """
        Build clues for the current message.

        Args:
            history: Recent turns, oldest first, possibly including the current message
            state: Active conversation state, if any

        Returns:
            FlowClues
        """
        clues = FlowClues(relevant_history=list(history))
        if state is not None and state.flow_type in self.TASK_FLOW_TYPES:
            clues.active_flow = CONVERSATION_FLOW_FOR_FLOW[state.flow_type]
            clues.flow_type = state.flow_type
            clues.waiting_for = state.waiting_for
            clues.filled_slots = dict(state.collected_slots)

        if clues.flow_type in (None, FlowType.CREATE_TASK):
            clues.history_values = self._creation_values_from_history(history)
        return clues

    def _creation_values_from_history(self, history: List[ConversationTurn]) -> Dict[str, Any]:
        """Title, priority and deadline mentioned since the latest creation command"""
        user_turns = [t for t in history if t.role == "user"]
        start = None
        for i in range(len(user_turns) - 1, -1, -1):
            if CREATION_TRIGGER.match(user_turns[i].content.strip()):
                start = i
                break
        if start is None:
            return {}

        values: Dict[str, Any] = {}
        title, inline = self.extractor.split_creation_message(user_turns[start].content)
        if title:
            values["task_title"] = title
        values.update(inline)

        for turn in user_turns[start + 1:]:
            priority = self.extractor.extract_priority(turn.content)
            if priority.found:
                values["priority"] = priority.value
            deadline = self.extractor.extract_deadline(turn.content)
            if deadline.found and deadline.value is not None:
                values["deadline"] = deadline.value
        return values


class ContextAnalysisStrategy(ABC):
    """Common interface of the model-assisted and deterministic analyzers"""

    name: str = "strategy"

    @abstractmethod
    async def analyze(self, message: str, clues: FlowClues,
                      rag_context: Optional[RAGContext] = None) -> ContextAnalysis:
        """
        Analyze a message against its flow clues.

        Raises:
            GeminiServiceError: model-assisted strategies only, on any upstream or parse failure
        """
        pass

"""Data models for the task-management assistant"""
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from enum import Enum
from datetime import datetime


class FlowType(str, Enum):
    """Multi-turn flows persisted in the conversation state store"""
    CREATE_TASK = "create_task"
    UPDATE_TASK = "update_task"
    DELETE_TASK = "delete_task"
    LIST_TASKS = "list_tasks"
    GENERAL_CHAT = "general_chat"


class ConversationFlow(str, Enum):
    """Flow labels emitted by context analysis"""
    TASK_CREATION = "TASK_CREATION"
    TASK_UPDATE = "TASK_UPDATE"
    TASK_DELETION = "TASK_DELETION"
    TASK_QUERY = "TASK_QUERY"
    CONVERSATION = "CONVERSATION"
    IDLE = "IDLE"
    SMALL_TALK = "SMALL_TALK"


class ContextIntentType(str, Enum):
    """Fine-grained intent of a single message relative to the active flow"""
    TASK_CREATION = "TASK_CREATION"
    TASK_UPDATE = "TASK_UPDATE"
    TASK_DELETION = "TASK_DELETION"
    TASK_QUERY = "TASK_QUERY"
    FIELD_INPUT = "FIELD_INPUT"
    OFFTOPIC = "OFFTOPIC"
    SMALL_TALK = "SMALL_TALK"
    CLARIFICATION = "CLARIFICATION"
    CONFIRMATION = "CONFIRMATION"


class IntentType(str, Enum):
    """Coarse intent consumed by the orchestrator"""
    COMMAND = "COMMAND"
    QUERY = "QUERY"
    CHITCHAT = "CHITCHAT"


class ActionKind(str, Enum):
    """Closed set of actions the assistant can perform"""
    CREATE_TASK = "CREATE_TASK"
    UPDATE_TASK = "UPDATE_TASK"
    DELETE_TASK = "DELETE_TASK"
    GET_TASKS = "GET_TASKS"
    GET_STATISTICS = "GET_STATISTICS"
    NONE = "NONE"


class Priority(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


# Flow <-> action correspondences shared by the classifier, slot filling and confirmation
FLOW_FOR_ACTION: Dict[ActionKind, FlowType] = {
    ActionKind.CREATE_TASK: FlowType.CREATE_TASK,
    ActionKind.UPDATE_TASK: FlowType.UPDATE_TASK,
    ActionKind.DELETE_TASK: FlowType.DELETE_TASK,
    ActionKind.GET_TASKS: FlowType.LIST_TASKS,
    ActionKind.GET_STATISTICS: FlowType.LIST_TASKS,
    ActionKind.NONE: FlowType.GENERAL_CHAT,
}

ACTION_FOR_FLOW: Dict[FlowType, ActionKind] = {
    FlowType.CREATE_TASK: ActionKind.CREATE_TASK,
    FlowType.UPDATE_TASK: ActionKind.UPDATE_TASK,
    FlowType.DELETE_TASK: ActionKind.DELETE_TASK,
    FlowType.LIST_TASKS: ActionKind.GET_TASKS,
    FlowType.GENERAL_CHAT: ActionKind.NONE,
}

CONVERSATION_FLOW_FOR_FLOW: Dict[FlowType, ConversationFlow] = {
    FlowType.CREATE_TASK: ConversationFlow.TASK_CREATION,
    FlowType.UPDATE_TASK: ConversationFlow.TASK_UPDATE,
    FlowType.DELETE_TASK: ConversationFlow.TASK_DELETION,
    FlowType.LIST_TASKS: ConversationFlow.TASK_QUERY,
    FlowType.GENERAL_CHAT: ConversationFlow.CONVERSATION,
}

TASK_FLOWS = {
    ConversationFlow.TASK_CREATION,
    ConversationFlow.TASK_UPDATE,
    ConversationFlow.TASK_DELETION,
}


class ConversationTurn(BaseModel):
    """A single recorded turn, used as retrieval evidence"""
    role: str  # user or assistant
    content: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    intent: Optional[str] = None
    similarity: Optional[float] = None

    model_config = {"frozen": True}


class DecliningAnalysis(BaseModel):
    """Result of decline-pattern detection"""
    is_declining: bool = False
    decline_type: str = "unknown"
    confidence: float = 0.0
    matched_pattern: Optional[str] = None


class KnowledgeDocument(BaseModel):
    """A knowledge snippet stored in the vector index or the curated cache"""
    id: str
    content: str
    category: str = "general"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    similarity: float = 0.0


class RAGContext(BaseModel):
    """Retrieved context for one request. Built once, never mutated."""
    relevant_documents: List[KnowledgeDocument] = Field(default_factory=list)
    conversation_context: str = ""
    declining_analysis: DecliningAnalysis = Field(default_factory=DecliningAnalysis)
    user_message: str = ""
    context_quality: float = 0.0
    retrieval_time_ms: float = 0.0

    model_config = {"frozen": True}

    @classmethod
    def empty(cls, user_message: str = "") -> "RAGContext":
        return cls(user_message=user_message)


class ContextAnalysis(BaseModel):
    """Output of context-aware message understanding"""
    current_flow: ConversationFlow = ConversationFlow.IDLE
    intent_type: ContextIntentType = ContextIntentType.SMALL_TALK
    field_mapping: Optional[str] = None
    extracted_value: Optional[Any] = None
    confidence: float = 0.5
    should_continue_flow: bool = False
    next_expected_input: Optional[str] = None
    relevant_history: List[ConversationTurn] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_task_flow(self) -> bool:
        return self.current_flow in TASK_FLOWS


class ContextAnalysisPayload(BaseModel):
    """
    Schema the completion service must satisfy.

    Validation rejects unknown flow or intent labels so malformed output
    routes to the deterministic analyzer.
    """
    current_flow: ConversationFlow
    intent_type: ContextIntentType
    field_mapping: Optional[str] = None
    extracted_value: Optional[Any] = None
    confidence: float = 0.5
    should_continue_flow: bool = False
    next_expected_input: Optional[str] = None

    @field_validator("current_flow", "intent_type", mode="before")
    @classmethod
    def _upper(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value):
        if value is None:
            return 0.5
        return max(0.0, min(1.0, float(value)))

    @field_validator("field_mapping", "next_expected_input", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and value.strip().lower() in ("", "null", "none"):
            return None
        return value


class IntentResult(BaseModel):
    """Per-message classification consumed by the orchestrator"""
    intent_type: IntentType
    action: ActionKind = ActionKind.NONE
    confidence: float = 0.0
    slots: Dict[str, Any] = Field(default_factory=dict)
    needs_more_info: bool = False
    follow_up_question: Optional[str] = None
    context_analysis: Optional[ContextAnalysis] = None


class SlotFillingResult(BaseModel):
    """Outcome of one slot-filling step"""
    is_complete: bool
    next_question: Optional[str] = None
    current_slots: Dict[str, Any] = Field(default_factory=dict)
    action: ActionKind = ActionKind.NONE
    waiting_for: Optional[str] = None
    escalate: bool = False

"""
Base handler interface for action dispatch.

Every ActionKind has exactly one handler. The registry refuses to start
until that holds, so routing never falls through to a default branch.
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field
import logging

from models.schemas import ActionKind, IntentResult, RAGContext

logger = logging.getLogger(__name__)


@dataclass
class HandlerRequest:
    """Everything a handler needs to act on one turn"""
    conversation_id: str
    message: str
    action: ActionKind
    slots: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    intent_result: Optional[IntentResult] = None
    rag_context: Optional[RAGContext] = None
    pending_question: Optional[str] = None


@dataclass
class HandlerResponse:
    """Response from a handler"""
    success: bool
    message: str
    metadata: Dict[str, Any] = None
    actions: List[Dict[str, Any]] = None
    error: Optional[str] = None

    def __post_init__(self):
        if self.metadata is None:
            self.metadata = {}
        if self.actions is None:
            self.actions = []


class BaseHandler(ABC):
    """
    Abstract base class for action handlers.

    Subclasses declare the actions they serve in `actions` and turn a
    HandlerRequest into a HandlerResponse.
    """

    actions: List[ActionKind] = []

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    def can_handle(self, action: ActionKind) -> bool:
        return action in self.actions

    @abstractmethod
    async def handle(self, request: HandlerRequest) -> HandlerResponse:
        """
        Handle the request and generate a response.

        Args:
            request: The action, its slots and the surrounding context

        Returns:
            Handler response with message and executed actions
        """
        pass

    def log_handling(self, request: HandlerRequest, response: HandlerResponse):
        """Log handler processing for debugging"""
        self.logger.info(
            f"Handled {request.action.value}",
            extra={
                "conversation_id": request.conversation_id,
                "slots": list(request.slots.keys()),
                "response_success": response.success,
                "has_error": response.error is not None,
            }
        )


class HandlerRegistry:
    """Maps each ActionKind to the handler that serves it"""

    def __init__(self):
        self._handlers: Dict[ActionKind, BaseHandler] = {}

    def register(self, handler: BaseHandler, actions: Optional[List[ActionKind]] = None):
        """
        Register a handler.

        Args:
            handler: Handler instance
            actions: Actions to route to it, defaults to the handler's own list
        """
        for action in actions or handler.actions:
            if action in self._handlers:
                raise ValueError(f"Action {action.value} already has a handler")
            self._handlers[action] = handler

    def validate(self) -> None:
        """Raise unless every ActionKind has a handler"""
        missing = [action.value for action in ActionKind if action not in self._handlers]
        if missing:
            raise ValueError(f"No handler registered for: {', '.join(missing)}")

    def get_handler(self, action: ActionKind) -> BaseHandler:
        return self._handlers[action]

    def get_all_handlers(self) -> List[BaseHandler]:
        """Get all registered handlers"""
        unique: List[BaseHandler] = []
        for handler in self._handlers.values():
            if handler not in unique:
                unique.append(handler)
        return unique

"""
Core conversation handling system.

This package provides the conversational task-management engine:
- Conversation state, slot filling and two-step confirmation
- Intent understanding with a model tier and a deterministic fallback
- Short-term conversation memory
- Action handlers, one per ActionKind
- The orchestrator and its request middleware (see the pipeline package)
"""

from .orchestration import (
    ConversationStateStore,
    SlotFillingEngine,
    ConfirmationController,
)
from .understanding import (
    SlotExtractor,
    DecliningIntentDetector,
)
from .context import ConversationMemory

__all__ = [
    # Orchestration
    'ConversationStateStore',
    'SlotFillingEngine',
    'ConfirmationController',

    # Understanding
    'SlotExtractor',
    'DecliningIntentDetector',

    # Context
    'ConversationMemory',
]

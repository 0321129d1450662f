"""Conversation orchestration components"""

from .state_store import ConversationState, ConversationStateStore, StoreConfig
from .slot_filling import SlotFillingEngine, SlotSchema, SLOT_SCHEMA, question_for
from .confirmation import ConfirmationController, ConfirmationDecision, ConfirmationOutcome

__all__ = [
    'ConversationState',
    'ConversationStateStore',
    'StoreConfig',
    'SlotFillingEngine',
    'SlotSchema',
    'SLOT_SCHEMA',
    'question_for',
    'ConfirmationController',
    'ConfirmationDecision',
    'ConfirmationOutcome',
]

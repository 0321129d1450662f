"""Context management components"""

from .memory import ConversationMemory

__all__ = [
    'ConversationMemory',
]

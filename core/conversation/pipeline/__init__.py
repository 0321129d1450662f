"""Conversation processing pipeline components"""

from .orchestrator import ConversationOrchestrator, ProcessingResult, create_orchestrator
from .middleware import (
    Middleware,
    LoggingMiddleware,
    ValidationMiddleware,
    ModerationMiddleware,
    RateLimitingMiddleware,
    MiddlewarePipeline,
    create_default_pipeline,
)

__all__ = [
    'ConversationOrchestrator',
    'ProcessingResult',
    'create_orchestrator',
    'Middleware',
    'LoggingMiddleware',
    'ValidationMiddleware',
    'ModerationMiddleware',
    'RateLimitingMiddleware',
    'MiddlewarePipeline',
    'create_default_pipeline',
]

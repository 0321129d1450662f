"""Action handlers, one per ActionKind"""

from .base import BaseHandler, HandlerRequest, HandlerResponse, HandlerRegistry
from .task_commands import CreateTaskHandler, UpdateTaskHandler, DeleteTaskHandler, TaskQueryHandler
from .conversation import ConversationHandler

__all__ = [
    'BaseHandler',
    'HandlerRequest',
    'HandlerResponse',
    'HandlerRegistry',
    'CreateTaskHandler',
    'UpdateTaskHandler',
    'DeleteTaskHandler',
    'TaskQueryHandler',
    'ConversationHandler',
]
